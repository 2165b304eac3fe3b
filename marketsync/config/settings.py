from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from marketsync.config import constants


@dataclass
class ApiConfig:
    base_url: str = constants.DEFAULT_API_URL
    clob_url: str = constants.DEFAULT_CLOB_URL
    timeout: float = constants.UPSTREAM_TIMEOUT_SECONDS
    bearer_token: Optional[str] = None


@dataclass
class PollIntervals:
    prices: float = constants.DEFAULT_PRICE_INTERVAL
    balance: float = constants.DEFAULT_BALANCE_INTERVAL
    positions: float = constants.DEFAULT_POSITIONS_INTERVAL


@dataclass
class CacheConfig:
    price_ttl: float = constants.DEFAULT_PRICE_TTL
    news_ttl: float = constants.DEFAULT_NEWS_TTL
    cache_dir: Optional[str] = None  # None keeps the persisted cache in memory


@dataclass
class Settings:
    api: ApiConfig = field(default_factory=ApiConfig)
    polling: PollIntervals = field(default_factory=PollIntervals)
    cache: CacheConfig = field(default_factory=CacheConfig)
    live: bool = False
    merged_positions: bool = False  # poll /positions/merged instead of one query per status
    env: str = "dev"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    """Build settings from the environment, falling back to defaults."""
    return Settings(
        api=ApiConfig(
            base_url=os.environ.get("MARKETSYNC_API_URL", constants.DEFAULT_API_URL),
            clob_url=os.environ.get("POLYMARKET_CLOB_URL", constants.DEFAULT_CLOB_URL),
            timeout=_env_float("MARKETSYNC_TIMEOUT", constants.UPSTREAM_TIMEOUT_SECONDS),
            bearer_token=os.environ.get("MARKETSYNC_BEARER") or None,
        ),
        polling=PollIntervals(
            prices=_env_float("MARKETSYNC_PRICE_INTERVAL", constants.DEFAULT_PRICE_INTERVAL),
            balance=_env_float("MARKETSYNC_BALANCE_INTERVAL", constants.DEFAULT_BALANCE_INTERVAL),
            positions=_env_float("MARKETSYNC_POSITIONS_INTERVAL", constants.DEFAULT_POSITIONS_INTERVAL),
        ),
        cache=CacheConfig(
            price_ttl=_env_float("MARKETSYNC_PRICE_TTL", constants.DEFAULT_PRICE_TTL),
            news_ttl=_env_float("MARKETSYNC_NEWS_TTL", constants.DEFAULT_NEWS_TTL),
            cache_dir=os.environ.get("MARKETSYNC_CACHE_DIR") or None,
        ),
        live=os.environ.get("LIVE", "0") in {"1", "true", "TRUE", "yes"},
        merged_positions=os.environ.get("MARKETSYNC_MERGED_POSITIONS", "0") in {"1", "true", "TRUE", "yes"},
        env=os.environ.get("MARKETSYNC_ENV", "dev"),
    )


settings = load_settings()
