"""Merge position lists from overlapping sources into one canonical set.

Positions arrive from several status-partitioned queries, and the same
position can show up in more than one of them with slightly different
contents. Records are keyed by ``resolve_canonical_key`` and the most
recently updated one wins; on equal timestamps the one processed last
wins, so later sources supersede earlier ones.

Merged records are then tagged from their market state (``not_filled``,
``won``, ``lost``) so consumers never see a closed market's position in an
ambiguous open state.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

from marketsync.config.constants import RESOLVED_PRICE
from marketsync.core.models import MarketRef, OutcomeRef, PositionRecord
from marketsync.utils.dates import to_epoch


def resolve_canonical_key(position: PositionRecord) -> str:
    """Deduplication identity for a position.

    Fallback order:
        1. ``id``
        2. ``"{market}|{outcome}"`` where market is the market slug, the
           market ref id, the record's ``market_id``, or ``"m"``; and
           outcome is ``outcome_id``, the outcome ref id, the outcome
           index, or the outcome value.
    """
    if position.id:
        return position.id

    market = position.market.slug or position.market.id or position.market_id or "m"
    outcome: object = None
    for candidate in (position.outcome_id, position.outcome.id, position.outcome.index, position.outcome.value):
        if candidate is not None:
            outcome = candidate
            break
    return f"{market}|{'' if outcome is None else outcome}"


def record_time(position: PositionRecord) -> float:
    """``updated_at``, else ``created_at``, else epoch-0."""
    return to_epoch(position.updated_at or position.created_at)


def resolved_outcome(market: MarketRef) -> Optional[OutcomeRef]:
    """The outcome whose price has settled to 1.0, if any."""
    for outcome in market.outcomes:
        settled = outcome.price if outcome.price is not None else outcome.probability
        if settled is not None and math.isclose(settled, RESOLVED_PRICE):
            return outcome
    return None


def _matches(position: PositionRecord, outcome: OutcomeRef) -> bool:
    own_id = position.outcome_id or position.outcome.id
    if outcome.id is not None and own_id is not None:
        return outcome.id == own_id
    if outcome.index is not None and position.outcome.index is not None:
        return outcome.index == position.outcome.index
    return False


def tag_status(position: PositionRecord) -> PositionRecord:
    if not position.market.is_closed:
        return position

    if not position.volume and not position.entry_price:
        if position.status == "not_filled":
            return position
        return replace(position, status="not_filled")

    winner = resolved_outcome(position.market)
    if winner is None:
        return position
    result = "won" if _matches(position, winner) else "lost"
    if position.status == result and position.resolved_status == result:
        return position
    return replace(position, status=result, resolved_status=result)


def reconcile(sources: Iterable[Sequence[PositionRecord]]) -> List[PositionRecord]:
    """Merge ``sources`` in order into a duplicate-free, tagged list.

    The returned order follows first appearance and carries no meaning;
    callers that need ordering must sort explicitly.
    """
    merged: Dict[str, PositionRecord] = {}
    for source in sources:
        for position in source:
            key = resolve_canonical_key(position)
            previous = merged.get(key)
            if previous is None or record_time(position) >= record_time(previous):
                merged[key] = position
    return [tag_status(p) for p in merged.values()]


def dedupe(positions: Sequence[PositionRecord]) -> List[PositionRecord]:
    return reconcile([positions])
