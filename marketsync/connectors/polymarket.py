from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import httpx

from marketsync.config.constants import DEFAULT_CLOB_URL, UPSTREAM_TIMEOUT_SECONDS
from marketsync.connectors.base import HttpConnector, PriceSource, UpstreamError
from marketsync.core.models import QuoteKey
from marketsync.utils.logging import get_logger
from marketsync.utils.validation import ValidationError, validate_price


logger = get_logger("polymarket")


class PolymarketPriceClient(HttpConnector, PriceSource):
    """Read-only price lookups against the Polymarket CLOB.

    The bulk endpoint takes ``[{token_id, side}]`` and answers
    ``{token_id: {side: price}}``; tokens it has no book for are simply
    absent from the body.
    """

    name = "polymarket"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url or DEFAULT_CLOB_URL, timeout=timeout, client=client)

    async def fetch_prices(self, keys: Sequence[QuoteKey]) -> Dict[QuoteKey, float]:
        if not keys:
            return {}
        body: List[dict] = [{"token_id": k.instrument_id, "side": k.side} for k in keys]
        data = await self._request("POST", "/prices", json=body)
        if not isinstance(data, dict):
            raise UpstreamError(f"bulk price body is a {type(data).__name__}, expected an object")

        prices: Dict[QuoteKey, float] = {}
        for key in keys:
            token_data = data.get(key.instrument_id)
            if not isinstance(token_data, dict):
                continue
            raw = token_data.get(key.side)
            if raw is None:
                continue
            try:
                prices[key] = validate_price(raw, label=f"price for {key}")
            except ValidationError as exc:
                logger.debug("Dropping bulk price: %s", exc)
        logger.debug("Bulk prices: requested=%d, returned=%d", len(keys), len(prices))
        return prices

    async def fetch_price(self, key: QuoteKey) -> Optional[float]:
        data = await self._request("GET", "/price", params={"token_id": key.instrument_id, "side": key.side})
        raw = data.get("price") if isinstance(data, dict) else None
        if raw is None:
            return None
        try:
            return validate_price(raw, label=f"price for {key}")
        except ValidationError as exc:
            raise UpstreamError(str(exc)) from exc
