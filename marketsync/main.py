from __future__ import annotations

import asyncio
import os
from typing import Optional, Tuple

from marketsync.config.constants import POSITION_STATUSES
from marketsync.config.settings import Settings, settings
from marketsync.connectors.base import PositionSource, PriceSource
from marketsync.connectors.demo import DemoUpstream
from marketsync.core.engine import SyncEngine
from marketsync.core.models import PortfolioSnapshot
from marketsync.core.news import NewsCache
from marketsync.core.pricing import BatchPriceFetcher
from marketsync.core.quote_cache import QuoteCache
from marketsync.core.scheduler import PollScheduler
from marketsync.core.store import StateStore
from marketsync.utils.kv_cache import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore, TTLCache
from marketsync.utils.logging import get_logger


logger = get_logger("main")


def build_persistence(cfg: Settings) -> KeyValueStore:
    if cfg.cache.cache_dir:
        return FileKeyValueStore(cfg.cache.cache_dir)
    return MemoryKeyValueStore()


def build_sources(cfg: Settings) -> Tuple[PriceSource, PositionSource]:
    if cfg.live:
        # Lazy import to avoid opening HTTP clients in demo mode
        from marketsync.connectors.backend import BackendClient
        from marketsync.connectors.polymarket import PolymarketPriceClient

        prices = PolymarketPriceClient(cfg.api.clob_url, timeout=cfg.api.timeout)
        backend = BackendClient(cfg.api.base_url, timeout=cfg.api.timeout, bearer_token=cfg.api.bearer_token)
    else:
        prices = backend = DemoUpstream()
    return prices, backend


def build_engine(cfg: Settings, store: StateStore) -> SyncEngine:
    prices, backend = build_sources(cfg)
    pricer = BatchPriceFetcher(prices, QuoteCache(ttl=cfg.cache.price_ttl))
    return SyncEngine(
        pricer,
        backend,
        store=store,
        scheduler=PollScheduler(timeout=cfg.api.timeout),
        intervals=cfg.polling,
        statuses=() if cfg.merged_positions else POSITION_STATUSES,
    )


def build_news_store(cfg: Settings) -> TTLCache:
    """The persisted news cache; build once per process and reuse it."""
    return TTLCache(build_persistence(cfg))


async def market_news(market_id: str, store: TTLCache, cfg: Optional[Settings] = None) -> list:
    # Sources are per call since HTTP clients are bound to one event loop
    cfg = cfg or settings
    prices, backend = build_sources(cfg)
    try:
        news = NewsCache(backend, store, ttl=cfg.cache.news_ttl)
        return await news.get_market_news(market_id)
    finally:
        await backend.close()
        if prices is not backend:
            await prices.close()


def log_snapshot(snapshot: Optional[PortfolioSnapshot]) -> None:
    if snapshot is None:
        logger.info("No portfolio snapshot yet.")
        return
    logger.info(
        "Portfolio: balance=$%.2f positions=$%.2f total=$%.2f (%d open)",
        snapshot.balance,
        snapshot.positions_value,
        snapshot.total_value,
        snapshot.open_positions,
    )


async def run_once(cfg: Optional[Settings] = None) -> Optional[PortfolioSnapshot]:
    cfg = cfg or settings
    store = StateStore.load(build_persistence(cfg))
    with store.provide():
        engine = build_engine(cfg, store)
        try:
            result = await engine.refresh_now()
        finally:
            await engine.aclose()
    if result.error:
        logger.warning("Refresh reported: %s", result.error)
    log_snapshot(result.snapshot)
    return result.snapshot


async def run_for(seconds: float, cfg: Optional[Settings] = None) -> Optional[PortfolioSnapshot]:
    cfg = cfg or settings
    store = StateStore.load(build_persistence(cfg))
    store.subscribe(lambda changed: log_snapshot(store.get("portfolio")) if "portfolio" in changed else None)
    with store.provide():
        engine = build_engine(cfg, store)
        engine.start()
        try:
            await asyncio.sleep(seconds)
        finally:
            await engine.aclose()
    return store.get("portfolio")


def cli():
    seconds = float(os.environ.get("RUN_SECONDS", "0") or 0)
    if seconds > 0:
        asyncio.run(run_for(seconds))
    else:
        asyncio.run(run_once())


if __name__ == "__main__":
    cli()
