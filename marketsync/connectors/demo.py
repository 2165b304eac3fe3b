from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from marketsync.connectors.base import PositionSource, PriceSource
from marketsync.core.models import PositionRecord, QuoteKey


EVENTS = [
    ("us-cpi-oct-2025", "US CPI YoY Oct 2025 >= 3.0?"),
    ("fed-cut-dec-2025", "Will Fed cut rates in Dec 2025?"),
    ("btc-100k-2025", "BTC to close > $100k in 2025?"),
]


def _clip_price(p: float) -> float:
    return max(0.01, min(0.99, p))


def _demo_positions() -> List[dict]:
    now = datetime.now(timezone.utc)
    positions: List[dict] = []
    for idx, (slug, question) in enumerate(EVENTS):
        outcomes = [
            {"id": f"{slug}-yes", "value": "Yes", "clob_id": f"tok-{idx}-yes", "index": 0},
            {"id": f"{slug}-no", "value": "No", "clob_id": f"tok-{idx}-no", "index": 1},
        ]
        held = outcomes[idx % 2]
        positions.append(
            {
                "id": f"pos-{idx}",
                "market_id": f"mkt-{idx}",
                "outcome_id": held["id"],
                "status": "filled",
                "entry_price": round(random.uniform(0.2, 0.8), 2),
                "volume": float(random.randint(10, 200)),
                "updated_at": (now - timedelta(minutes=idx)).isoformat(),
                "created_at": (now - timedelta(days=idx + 1)).isoformat(),
                "market": {"id": f"mkt-{idx}", "slug": slug, "name": question, "status": "open", "outcomes": outcomes},
                "outcome": held,
            }
        )
    return positions


class DemoUpstream(PriceSource, PositionSource):
    """Offline stand-in for the CLOB and the trading backend.

    Prices random-walk on every lookup so polling produces visible churn.
    """

    name = "demo"

    def __init__(self, balance: float = 1000.0, seed: Optional[int] = None):
        if seed is not None:
            random.seed(seed)
        self.balance = balance
        self.positions = _demo_positions()
        self._prices: Dict[str, float] = {}
        self.price_calls = 0
        self.news_calls = 0

    def _price(self, token_id: str) -> float:
        base = self._prices.get(token_id, random.uniform(0.2, 0.8))
        price = _clip_price(base + random.uniform(-0.02, 0.02))
        self._prices[token_id] = price
        return round(price, 3)

    async def fetch_prices(self, keys: Sequence[QuoteKey]) -> Dict[QuoteKey, float]:
        self.price_calls += 1
        return {key: self._price(key.instrument_id) for key in keys}

    async def fetch_price(self, key: QuoteKey) -> Optional[float]:
        self.price_calls += 1
        return self._price(key.instrument_id)

    async def fetch_positions(self, status: str) -> List[PositionRecord]:
        return [PositionRecord.from_dict(p) for p in self.positions if p["status"] == status]

    async def fetch_merged_positions(self) -> List[PositionRecord]:
        return [PositionRecord.from_dict(p) for p in self.positions]

    async def fetch_balance(self) -> Optional[float]:
        return self.balance

    async def fetch_market_news(self, market_id: str) -> List[dict]:
        self.news_calls += 1
        return [{"id": f"{market_id}-news-0", "title": f"Demo headline for {market_id}"}]
