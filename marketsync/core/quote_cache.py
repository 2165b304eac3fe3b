"""Short-lived price cache keyed by (instrument, side).

The cache bounds request volume against the rate-limited CLOB: a quote is
served from memory while younger than the TTL, and anything older reads as
a miss. Stale quotes are kept (never swept) so callers can ask for them
explicitly via ``peek``.

The cache also tracks in-flight fetches per key, so the batch and the
single-key fetch paths share one pending future per key instead of racing
each other upstream.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional

from marketsync.config.constants import DEFAULT_PRICE_TTL
from marketsync.core.models import Quote, QuoteKey
from marketsync.utils.logging import get_logger


logger = get_logger("quote_cache")


def is_fresh(quote: Quote, now: float, ttl: float) -> bool:
    return now - quote.fetched_at < ttl


class QuoteCache:
    def __init__(self, ttl: float = DEFAULT_PRICE_TTL, clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._quotes: Dict[QuoteKey, Quote] = {}
        self._inflight: Dict[QuoteKey, "asyncio.Future[Optional[float]]"] = {}

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._quotes)

    def get(self, key: QuoteKey) -> Optional[Quote]:
        """Return the quote for ``key`` if it is still fresh, else ``None``."""
        quote = self._quotes.get(key)
        if quote is None:
            return None
        if not is_fresh(quote, self.now(), self.ttl):
            return None
        return quote

    def peek(self, key: QuoteKey) -> Optional[Quote]:
        """Return the stored quote regardless of age."""
        return self._quotes.get(key)

    def put(self, key: QuoteKey, quote: Quote) -> None:
        self._quotes[key] = quote

    def record(self, key: QuoteKey, price: float) -> Quote:
        """Store a freshly fetched price stamped with the current time."""
        quote = Quote(instrument_id=key.instrument_id, side=key.side, price=price, fetched_at=self.now())
        self.put(key, quote)
        return quote

    def clear(self) -> None:
        self._quotes.clear()

    # In-flight bookkeeping

    def inflight(self, key: QuoteKey) -> "Optional[asyncio.Future[Optional[float]]]":
        return self._inflight.get(key)

    def begin(self, key: QuoteKey) -> "asyncio.Future[Optional[float]]":
        """Register a pending fetch for ``key`` and return its future."""
        pending = self._inflight.get(key)
        if pending is not None:
            return pending
        future: "asyncio.Future[Optional[float]]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        return future

    def settle(self, key: QuoteKey, price: Optional[float]) -> None:
        """Resolve the pending fetch for ``key``; ``None`` means price unknown."""
        future = self._inflight.pop(key, None)
        if future is None:
            logger.debug("settle for %s without a pending fetch", key)
            return
        if not future.done():
            future.set_result(price)
