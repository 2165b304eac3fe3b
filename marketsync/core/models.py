"""Core data models for quotes, positions and portfolio valuation.

This module defines the records shared by the cache, the fetchers, the
reconciler and the valuator. Upstream payloads are loose JSON with several
spellings per field; ``from_dict`` constructors normalize them once so the
rest of the package works with typed, immutable records.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Mapping, Optional, Tuple, TypeVar

from marketsync.config.constants import CLOSED_MARKET_STATUSES
from marketsync.utils.dates import format_dt, parse_dt
from marketsync.utils.validation import optional_float

Side = Literal["BUY", "SELL"]
T = TypeVar("T")


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        val = data.get(k)
        if val is not None and val != "":
            return val
    return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class QuoteKey:
    """Cache identity of a price: one CLOB token on one book side."""
    instrument_id: str
    side: Side = "BUY"

    def __str__(self) -> str:
        return f"{self.instrument_id}-{self.side}"


@dataclass(frozen=True)
class Quote:
    instrument_id: str
    side: Side
    price: float  # 0..1
    fetched_at: float  # unix seconds

    @property
    def key(self) -> QuoteKey:
        return QuoteKey(self.instrument_id, self.side)


@dataclass(frozen=True)
class OutcomeRef:
    id: Optional[str] = None
    index: Optional[int] = None
    value: Optional[str] = None
    clob_id: Optional[str] = None
    probability: Optional[float] = None
    price: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> "OutcomeRef":
        if isinstance(data, str):
            return cls(value=data)
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            id=_opt_str(data.get("id")),
            index=_opt_int(_first(data, "index", "outcomeIndex", "outcome_index")),
            value=_opt_str(_first(data, "value", "name", "outcome")),
            clob_id=_opt_str(_first(data, "clob_id", "clobId", "token_id", "asset")),
            probability=optional_float(data.get("probability")),
            price=optional_float(_first(data, "price", "current_price")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "value": self.value,
            "clob_id": self.clob_id,
            "probability": self.probability,
            "price": self.price,
        }


@dataclass(frozen=True)
class MarketRef:
    id: Optional[str] = None
    slug: Optional[str] = None
    status: Optional[str] = None
    name: Optional[str] = None
    outcomes: Tuple[OutcomeRef, ...] = ()

    @property
    def is_closed(self) -> bool:
        return (self.status or "").lower() in CLOSED_MARKET_STATUSES

    @classmethod
    def from_dict(cls, data: Any) -> "MarketRef":
        if not isinstance(data, Mapping):
            return cls()
        outcomes = data.get("outcomes")
        refs: Tuple[OutcomeRef, ...] = ()
        if isinstance(outcomes, list):
            refs = tuple(OutcomeRef.from_dict(o) for o in outcomes if isinstance(o, Mapping))
        status = _opt_str(data.get("status"))
        return cls(
            id=_opt_str(data.get("id")),
            slug=_opt_str(data.get("slug")),
            status=status.lower() if status else None,
            name=_opt_str(_first(data, "name", "question", "title")),
            outcomes=refs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "status": self.status,
            "name": self.name,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class PositionRecord:
    """One position as reported by an upstream source.

    ``raw`` keeps the original payload so records survive a persistence
    round-trip; it does not take part in equality.
    """

    id: Optional[str] = None
    market_id: Optional[str] = None
    outcome_id: Optional[str] = None
    status: str = "open"
    entry_price: Optional[float] = None
    volume: Optional[float] = None
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    market: MarketRef = field(default_factory=MarketRef)
    outcome: OutcomeRef = field(default_factory=OutcomeRef)
    current_price: Optional[float] = None
    probability: Optional[float] = None
    current_value: Optional[float] = None
    resolved_status: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def slug(self) -> Optional[str]:
        return self.market.slug or _opt_str(self.raw.get("slug"))

    @property
    def market_name(self) -> str:
        return self.market.name or _opt_str(self.raw.get("title")) or ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PositionRecord":
        market = MarketRef.from_dict(data.get("market"))
        outcome = OutcomeRef.from_dict(data.get("outcome"))
        if outcome.index is None:
            outcome = replace(outcome, index=_opt_int(_first(data, "outcomeIndex", "outcome_index")))
        if outcome.clob_id is None:
            outcome = replace(outcome, clob_id=_opt_str(_first(data, "asset", "clob_id")))
        if market.slug is None:
            market = replace(market, slug=_opt_str(data.get("slug")))
        if market.name is None:
            market = replace(market, name=_opt_str(data.get("title")))

        status = _opt_str(data.get("status"))
        resolved = _opt_str(data.get("resolved_status"))
        return cls(
            id=_opt_str(data.get("id")),
            market_id=_opt_str(_first(data, "market_id", "marketId", "conditionId")) or market.id,
            outcome_id=_opt_str(_first(data, "outcome_id", "outcomeId")) or outcome.id,
            status=status.lower() if status else "open",
            entry_price=optional_float(_first(data, "entry_price", "entryPrice", "avgPrice")),
            volume=optional_float(_first(data, "volume", "size")),
            updated_at=parse_dt(_first(data, "updated_at", "updatedAt")),
            created_at=parse_dt(_first(data, "created_at", "createdAt")),
            market=market,
            outcome=outcome,
            current_price=optional_float(_first(data, "current_price", "currentPrice", "curPrice")),
            probability=optional_float(data.get("probability")),
            current_value=optional_float(_first(data, "current_value", "currentValue")),
            resolved_status=resolved.lower() if resolved else None,
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.raw)
        payload.update(
            {
                "id": self.id,
                "market_id": self.market_id,
                "outcome_id": self.outcome_id,
                "status": self.status,
                "entry_price": self.entry_price,
                "volume": self.volume,
                "updated_at": format_dt(self.updated_at),
                "created_at": format_dt(self.created_at),
                "market": self.market.to_dict(),
                "outcome": self.outcome.to_dict(),
                "current_price": self.current_price,
                "probability": self.probability,
                "current_value": self.current_value,
                "resolved_status": self.resolved_status,
            }
        )
        return payload


@dataclass(frozen=True)
class PortfolioSnapshot:
    balance: float
    positions_value: float
    total_value: float
    computed_at: float
    open_positions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "positions_value": self.positions_value,
            "total_value": self.total_value,
            "computed_at": self.computed_at,
            "open_positions": self.open_positions,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PortfolioSnapshot":
        return cls(
            balance=float(data.get("balance") or 0.0),
            positions_value=float(data.get("positions_value") or 0.0),
            total_value=float(data.get("total_value") or 0.0),
            computed_at=float(data.get("computed_at") or 0.0),
            open_positions=int(data.get("open_positions") or 0),
        )


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A TTL-bounded value in the persisted cache."""
    data: T
    expires_at: float  # unix seconds
    meta: Optional[Dict[str, Any]] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "expires_at": self.expires_at, "meta": self.meta}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry[Any]":
        # KeyError/TypeError/ValueError on malformed entries is the caller's eviction signal
        return cls(data=data["data"], expires_at=float(data["expires_at"]), meta=data.get("meta"))


def positions_from_payload(payload: Any) -> List[PositionRecord]:
    """Parse a list-shaped upstream body; non-dict items are skipped."""
    if isinstance(payload, Mapping):
        for key in ("positions", "data", "result"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        return []
    return [PositionRecord.from_dict(item) for item in payload if isinstance(item, Mapping)]
