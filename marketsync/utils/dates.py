"""Timestamp parsing for upstream payloads.

Upstream records carry ISO-8601 strings (sometimes with a trailing ``Z``),
epoch numbers, or nothing at all. Everything is normalized to timezone-aware
UTC datetimes, and anything unparsable becomes ``None`` so callers can
rank it as epoch-0.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        # Millisecond epochs are what browsers emit
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch(value: Optional[datetime]) -> float:
    """Seconds since epoch; missing timestamps rank lowest."""
    if value is None:
        return 0.0
    return value.timestamp()


def format_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")
