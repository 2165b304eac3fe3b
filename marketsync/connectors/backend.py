from __future__ import annotations

from typing import List, Optional

import httpx

from marketsync.config.constants import DEFAULT_API_URL, UPSTREAM_TIMEOUT_SECONDS
from marketsync.connectors.base import HttpConnector, PositionSource, UpstreamError
from marketsync.core.models import PositionRecord, positions_from_payload
from marketsync.utils.logging import get_logger
from marketsync.utils.validation import ValidationError, validate_amount


logger = get_logger("backend")


class BackendClient(HttpConnector, PositionSource):
    """Positions, wallet balance and market news from the trading backend."""

    name = "backend"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        bearer_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        super().__init__(base_url or DEFAULT_API_URL, timeout=timeout, headers=headers, client=client)

    async def fetch_positions(self, status: str) -> List[PositionRecord]:
        data = await self._request("GET", "/positions", params={"status": status})
        if not isinstance(data, (list, dict)):
            raise UpstreamError(f"positions ({status}) body is a {type(data).__name__}")
        positions = positions_from_payload(data)
        logger.debug("Fetched %d positions with status=%s", len(positions), status)
        return positions

    async def fetch_merged_positions(self) -> List[PositionRecord]:
        data = await self._request("GET", "/positions/merged")
        if not isinstance(data, (list, dict)):
            raise UpstreamError(f"merged positions body is a {type(data).__name__}")
        return positions_from_payload(data)

    async def fetch_balance(self) -> Optional[float]:
        """Current USDC balance, or ``None`` when the body carries no number."""
        data = await self._request("GET", "/wallet/balance/usdc")
        raw = data.get("balance") if isinstance(data, dict) else None
        if raw is None:
            return None
        try:
            return validate_amount(raw, label="balance")
        except ValidationError as exc:
            logger.warning("Ignoring wallet balance: %s", exc)
            return None

    async def fetch_market_news(self, market_id: str) -> List[dict]:
        data = await self._request("GET", f"/news/markets/{market_id}/news")
        if isinstance(data, dict):
            for key in ("articles", "news", "data"):
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
        if not isinstance(data, list):
            raise UpstreamError(f"news body for market {market_id} is a {type(data).__name__}")
        return [item for item in data if isinstance(item, dict)]
