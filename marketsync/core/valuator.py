"""Portfolio valuation from balance, positions and live prices.

``compute_snapshot`` is the pure derivation. ``PortfolioValuator`` keeps the
``portfolio`` entry of the state store in step with its three inputs and
recomputes only when one of them is replaced, once per store transaction.
"""

from __future__ import annotations

import time
from typing import Any, Callable, FrozenSet, Mapping, Optional, Sequence

from marketsync.config.constants import DEFAULT_CURRENT_PRICE, OPEN_POSITION_STATUSES
from marketsync.core.models import PortfolioSnapshot, PositionRecord
from marketsync.core.store import StateStore, use_store
from marketsync.utils.logging import get_logger


logger = get_logger("valuator")

INPUT_KEYS = frozenset({"balance", "positions", "prices"})


def resolve_current_price(position: PositionRecord, prices: Mapping[str, float]) -> float:
    """Current price of a position's outcome.

    Precedence: live price for ``outcome_id``, the record's embedded
    ``current_price``, its ``probability``, the outcome ref's probability,
    then 0.5.
    """
    if position.outcome_id is not None:
        live = prices.get(position.outcome_id)
        if live is not None:
            return live
    for embedded in (position.current_price, position.probability, position.outcome.probability):
        if embedded is not None:
            return embedded
    return DEFAULT_CURRENT_PRICE


def position_value(position: PositionRecord, prices: Mapping[str, float]) -> float:
    if position.volume is not None:
        return position.volume * resolve_current_price(position, prices)
    if position.current_value is not None:
        return position.current_value
    return 0.0


def is_open(position: PositionRecord, prices: Mapping[str, float]) -> bool:
    if position.status not in OPEN_POSITION_STATUSES:
        return False
    if position.resolved_status == "lost" or position.market.is_closed:
        return False
    if position.volume is not None and position.volume == 0:
        return False
    return position_value(position, prices) != 0


def compute_snapshot(
    balance: Optional[float],
    positions: Sequence[PositionRecord],
    prices: Mapping[str, float],
    now: Optional[float] = None,
) -> PortfolioSnapshot:
    cash = float(balance or 0.0)
    open_positions = [p for p in positions if is_open(p, prices)]
    positions_value = sum(position_value(p, prices) for p in open_positions)
    return PortfolioSnapshot(
        balance=cash,
        positions_value=positions_value,
        total_value=cash + positions_value,
        computed_at=time.time() if now is None else now,
        open_positions=len(open_positions),
    )


class PortfolioValuator:
    def __init__(self, store: Optional[StateStore] = None, clock: Callable[[], float] = time.time):
        self.store = store if store is not None else use_store()
        self.recomputes = 0
        self._clock = clock
        self._inputs: Optional[tuple] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_change)
        self.recompute()

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, changed: FrozenSet[str]) -> None:
        if changed & INPUT_KEYS:
            self.recompute()

    def _same_inputs(self, balance: Any, positions: Any, prices: Any) -> bool:
        if self._inputs is None:
            return False
        last_balance, last_positions, last_prices = self._inputs
        return last_balance == balance and last_positions is positions and last_prices is prices

    def recompute(self) -> Optional[PortfolioSnapshot]:
        """Recompute if an input changed; returns the new snapshot or ``None``."""
        balance = self.store.get("balance")
        positions = self.store.get("positions", [])
        prices = self.store.get("prices", {})
        if self._same_inputs(balance, positions, prices):
            return None

        self._inputs = (balance, positions, prices)
        snapshot = compute_snapshot(balance, positions, prices, now=self._clock())
        self.recomputes += 1
        logger.debug(
            "Portfolio recomputed: balance=%.2f positions=%.2f total=%.2f (%d open)",
            snapshot.balance,
            snapshot.positions_value,
            snapshot.total_value,
            snapshot.open_positions,
        )
        self.store.set("portfolio", snapshot)
        return snapshot
