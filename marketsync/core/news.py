from __future__ import annotations

from typing import List, Optional

from marketsync.config.constants import DEFAULT_NEWS_TTL
from marketsync.connectors.base import PositionSource, UpstreamError
from marketsync.utils.kv_cache import MemoryKeyValueStore, TTLCache
from marketsync.utils.logging import get_logger


logger = get_logger("news")

NEWS = "news"


class NewsCache:
    """Market news served from the persisted TTL cache, fetched on miss."""

    def __init__(self, source: PositionSource, cache: Optional[TTLCache] = None, ttl: float = DEFAULT_NEWS_TTL):
        self.source = source
        self.cache = cache if cache is not None else TTLCache(MemoryKeyValueStore())
        self.ttl = ttl

    async def get_market_news(self, market_id: str, force: bool = False) -> List[dict]:
        if not force:
            entry = self.cache.get(NEWS, market_id)
            if entry is not None:
                return list(entry.data)

        try:
            articles = await self.source.fetch_market_news(market_id)
        except UpstreamError as exc:
            logger.warning("News fetch failed for market %s: %s", market_id, exc)
            return []

        self.cache.set(NEWS, market_id, articles, self.ttl, meta={"count": len(articles)})
        return articles

    def invalidate(self, market_id: str) -> None:
        self.cache.invalidate(NEWS, market_id)
