"""Wires pricing, reconciliation and valuation onto the poll scheduler.

``SyncEngine`` owns three polling loops (prices, balance, positions). Each
loop fetches, degrades silently on upstream failure, and publishes into the
state store; the attached ``PortfolioValuator`` derives the portfolio from
whatever the store holds. ``refresh_now`` is the user-triggered variant: it
raises the ``refreshing`` flag, publishes everything in one transaction and
reports failures instead of only logging them.

Positions come from one query per status, reconciled; with no statuses the
engine reads the backend's merged list instead and only deduplicates it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from marketsync.config.constants import POSITION_STATUSES
from marketsync.config.settings import PollIntervals
from marketsync.connectors.base import PositionSource, UpstreamError
from marketsync.core.models import PortfolioSnapshot, PositionRecord
from marketsync.core.pricing import BatchPriceFetcher
from marketsync.core.reconciler import dedupe, reconcile
from marketsync.core.scheduler import PollScheduler
from marketsync.core.store import StateStore, use_store
from marketsync.core.valuator import PortfolioValuator
from marketsync.utils.logging import get_logger


logger = get_logger("engine")

PRICES_TASK = "prices"
BALANCE_TASK = "balance"
POSITIONS_TASK = "positions"


@dataclass(frozen=True)
class RefreshResult:
    ok: bool
    error: Optional[str] = None
    snapshot: Optional[PortfolioSnapshot] = None


class SyncEngine:
    def __init__(
        self,
        pricer: BatchPriceFetcher,
        backend: PositionSource,
        store: Optional[StateStore] = None,
        scheduler: Optional[PollScheduler] = None,
        intervals: Optional[PollIntervals] = None,
        statuses: Sequence[str] = POSITION_STATUSES,
    ):
        self.store = store if store is not None else use_store()
        self.pricer = pricer
        self.backend = backend
        self.scheduler = scheduler if scheduler is not None else PollScheduler()
        self.intervals = intervals or PollIntervals()
        self.statuses = tuple(statuses)
        self.valuator = PortfolioValuator(self.store)
        self.valuator.attach()

    # Fetch steps; these raise UpstreamError

    async def _load_positions(self) -> List[PositionRecord]:
        if not self.statuses:
            merged = dedupe(await self.backend.fetch_merged_positions())
            logger.debug("Deduplicated %d merged positions", len(merged))
            return merged
        sources = await asyncio.gather(*(self.backend.fetch_positions(s) for s in self.statuses))
        merged = reconcile(sources)
        logger.debug(
            "Reconciled %d positions from %s",
            len(merged),
            ", ".join(f"{s}={len(src)}" for s, src in zip(self.statuses, sources)),
        )
        return merged

    async def _load_balance(self) -> Optional[float]:
        return await self.backend.fetch_balance()

    async def _load_prices(self, positions: Sequence[PositionRecord]) -> Dict[str, float]:
        """Prices for the outcomes in ``positions`` only.

        An outcome whose lookup failed this round keeps its previous price;
        outcomes no longer held are dropped.
        """
        fetched = await self.pricer.prices_for_positions(positions)
        held = {p.outcome_id or p.outcome.id for p in positions} - {None}
        previous = self.store.get("prices", {})
        prices = {k: v for k, v in previous.items() if k in held}
        prices.update(fetched)
        return prices

    # Background polls; failures are logged and retried on the next tick

    async def refresh_positions(self) -> bool:
        try:
            positions = await self._load_positions()
        except UpstreamError as exc:
            logger.warning("Positions poll failed, keeping previous positions: %s", exc)
            return False
        self.store.set("positions", positions)
        return True

    async def refresh_balance(self) -> bool:
        try:
            balance = await self._load_balance()
        except UpstreamError as exc:
            logger.warning("Balance poll failed: %s", exc)
            return False
        if balance is None:
            return False
        self.store.set("balance", balance)
        return True

    async def refresh_prices(self) -> bool:
        positions = self.store.get("positions", [])
        if not positions:
            self.store.set("prices", {})
            return True
        self.store.set("prices", await self._load_prices(positions))
        return True

    async def refresh_now(self) -> RefreshResult:
        """Refresh everything once and publish it in a single store update."""
        self.store.set("refreshing", True)
        errors: List[str] = []
        changes: Dict[str, object] = {}
        try:
            positions_res, balance_res = await asyncio.gather(
                self._load_positions(), self._load_balance(), return_exceptions=True
            )
            for label, res in (("positions", positions_res), ("balance", balance_res)):
                if isinstance(res, UpstreamError):
                    errors.append(f"{label}: {res}")
                elif isinstance(res, BaseException):
                    raise res

            positions = self.store.get("positions", [])
            if not isinstance(positions_res, BaseException):
                positions = changes["positions"] = positions_res
            if balance_res is not None and not isinstance(balance_res, BaseException):
                changes["balance"] = balance_res

            failed_before = self.pricer.failed_batches
            changes["prices"] = await self._load_prices(positions)
            if self.pricer.failed_batches > failed_before:
                errors.append("prices: upstream price lookup failed, showing last known prices")
        except BaseException:
            self.store.set("refreshing", False)
            raise

        error = "; ".join(errors) or None
        changes["refreshing"] = False
        changes["last_error"] = error
        self.store.update(changes)
        if error:
            logger.warning("Manual refresh completed with errors: %s", error)
        return RefreshResult(ok=error is None, error=error, snapshot=self.store.get("portfolio"))

    # Lifecycle

    def start(self, immediate: bool = True) -> None:
        self.valuator.attach()
        self.scheduler.schedule(POSITIONS_TASK, self.intervals.positions, self.refresh_positions, immediate)
        self.scheduler.schedule(BALANCE_TASK, self.intervals.balance, self.refresh_balance, immediate)
        self.scheduler.schedule(PRICES_TASK, self.intervals.prices, self.refresh_prices, immediate)

    async def stop(self) -> None:
        """Stop polling; fetches already running still land in the store."""
        await self.scheduler.shutdown()
        await self.pricer.drain()

    async def aclose(self) -> None:
        await self.stop()
        self.valuator.detach()
        await self.pricer.source.close()
        if self.backend is not self.pricer.source:
            await self.backend.close()
