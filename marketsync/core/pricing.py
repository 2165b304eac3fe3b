"""Batched, cached, coalesced price resolution.

``BatchPriceFetcher.resolve_prices`` serves fresh quotes from the
``QuoteCache`` and sends everything else upstream in one bulk request.
Keys requested by concurrent callers within the same event-loop tick are
pooled into that single request, and keys already in flight are awaited
rather than fetched again.

Failures never raise to the caller: a failed batch or a key missing from
the response is simply absent from the result. The previously cached
(stale) price stays reachable through ``resolve_price(key, allow_stale=True)``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from marketsync.config.constants import DEFAULT_QUOTE_SIDE
from marketsync.connectors.base import PriceSource, UpstreamError
from marketsync.core.models import PositionRecord, QuoteKey, Side
from marketsync.core.quote_cache import QuoteCache
from marketsync.utils.logging import get_logger


logger = get_logger("pricing")


def resolve_token(position: PositionRecord) -> Optional[Tuple[str, str]]:
    """Return ``(clob_token_id, outcome_id)`` for a position, if derivable.

    Order: the position's own outcome ref, then the outcome in
    ``market.outcomes`` with the position's outcome id, then the only
    outcome of a single-outcome market.
    """
    outcome_id = position.outcome_id or position.outcome.id
    if position.outcome.clob_id and outcome_id:
        return position.outcome.clob_id, outcome_id

    outcomes = position.market.outcomes
    for candidate in outcomes:
        if candidate.id is not None and candidate.id == outcome_id and candidate.clob_id:
            return candidate.clob_id, candidate.id
    if len(outcomes) == 1 and outcomes[0].clob_id and outcomes[0].id:
        return outcomes[0].clob_id, outcomes[0].id
    return None


class BatchPriceFetcher:
    def __init__(self, source: PriceSource, cache: Optional[QuoteCache] = None):
        self.source = source
        self.cache = cache if cache is not None else QuoteCache()
        self.batches_issued = 0
        self.failed_batches = 0
        self._queue: List[QuoteKey] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        # Detached so a cancelled caller cannot cancel a fetch other callers share
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def resolve_prices(self, keys: Iterable[QuoteKey]) -> Dict[str, float]:
        """Resolve prices for ``keys``; returns ``{instrument_id: price}``."""
        results: Dict[str, float] = {}
        waiting: Dict[QuoteKey, "asyncio.Future[Optional[float]]"] = {}

        for key in dict.fromkeys(keys):
            quote = self.cache.get(key)
            if quote is not None:
                results[key.instrument_id] = quote.price
                continue
            pending = self.cache.inflight(key)
            if pending is None:
                pending = self.cache.begin(key)
                self._enqueue(key)
            waiting[key] = pending

        if waiting:
            await asyncio.wait(list(waiting.values()))
            for key, pending in waiting.items():
                price = pending.result()
                if price is not None:
                    results[key.instrument_id] = price
        return results

    async def resolve_price(self, key: QuoteKey, allow_stale: bool = False) -> Optional[float]:
        """Single-key lookup, coalesced with any batch already fetching ``key``."""
        quote = self.cache.get(key)
        if quote is not None:
            return quote.price

        pending = self.cache.inflight(key)
        if pending is None:
            pending = self.cache.begin(key)
            self._spawn(self._fetch_single(key))
        await asyncio.wait([pending])
        price = pending.result()

        if price is None and allow_stale:
            stale = self.cache.peek(key)
            if stale is not None:
                logger.debug("Serving stale price for %s (age %.1fs)", key, self.cache.now() - stale.fetched_at)
                return stale.price
        return price

    async def prices_for_positions(
        self, positions: Sequence[PositionRecord], side: Side = DEFAULT_QUOTE_SIDE
    ) -> Dict[str, float]:
        """Live prices for positions, keyed by outcome id."""
        token_to_outcomes: Dict[str, List[str]] = {}
        for position in positions:
            resolved = resolve_token(position)
            if resolved is None:
                continue
            token_id, outcome_id = resolved
            token_to_outcomes.setdefault(token_id, []).append(outcome_id)

        if not token_to_outcomes:
            return {}

        prices = await self.resolve_prices(QuoteKey(token_id, side) for token_id in token_to_outcomes)
        by_outcome: Dict[str, float] = {}
        for token_id, outcome_ids in token_to_outcomes.items():
            price = prices.get(token_id)
            if price is None:
                continue
            for outcome_id in outcome_ids:
                by_outcome[outcome_id] = price
        return by_outcome

    async def drain(self) -> None:
        """Wait for every detached fetch to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _enqueue(self, key: QuoteKey) -> None:
        self._queue.append(key)
        if self._flush_task is None:
            self._flush_task = self._spawn(self._flush())
            self._flush_task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task) -> None:
        # Still set only if the flush ended before taking the queue, i.e. it was cancelled
        if self._flush_task is not task:
            return
        self._flush_task = None
        queued, self._queue = self._queue, []
        for key in queued:
            self.cache.settle(key, None)

    async def _flush(self) -> None:
        # Yield once so every caller scheduled in this tick can enqueue first
        await asyncio.sleep(0)
        keys, self._queue = self._queue, []
        self._flush_task = None
        if keys:
            await self._fetch_batch(keys)

    async def _fetch_batch(self, keys: List[QuoteKey]) -> None:
        self.batches_issued += 1
        prices: Dict[QuoteKey, float] = {}
        try:
            prices = await self.source.fetch_prices(keys)
        except UpstreamError as exc:
            self.failed_batches += 1
            logger.warning("Bulk price fetch failed for %d keys: %s", len(keys), exc)
        except Exception as exc:  # noqa: BLE001
            self.failed_batches += 1
            logger.warning("Bulk price fetch raised unexpectedly for %d keys: %r", len(keys), exc)
        finally:
            for key in keys:
                price = prices.get(key)
                if price is not None:
                    self.cache.record(key, price)
                self.cache.settle(key, price)

        missing = len(keys) - len(prices)
        if prices and missing:
            logger.debug("Bulk price response missing %d of %d keys", missing, len(keys))

    async def _fetch_single(self, key: QuoteKey) -> None:
        price: Optional[float] = None
        try:
            price = await self.source.fetch_price(key)
        except UpstreamError as exc:
            logger.warning("Price fetch failed for %s: %s", key, exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Price fetch raised unexpectedly for %s: %r", key, exc)
        finally:
            if price is not None:
                self.cache.record(key, price)
            self.cache.settle(key, price)
