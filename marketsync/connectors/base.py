from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from marketsync.core.models import PositionRecord, QuoteKey


class UpstreamError(Exception):
    """An upstream call failed: transport error, non-2xx, or a malformed body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PriceSource(ABC):
    name: str

    @abstractmethod
    async def fetch_prices(self, keys: Sequence[QuoteKey]) -> Dict[QuoteKey, float]:
        """Bulk lookup. Keys missing from the result are unknown, not errors."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_price(self, key: QuoteKey) -> Optional[float]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class PositionSource(ABC):
    name: str

    @abstractmethod
    async def fetch_positions(self, status: str) -> List[PositionRecord]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_merged_positions(self) -> List[PositionRecord]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_balance(self) -> Optional[float]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_market_news(self, market_id: str) -> List[dict]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpConnector:
    """Shared ``httpx.AsyncClient`` plumbing for the REST connectors.

    Every failure mode is surfaced as ``UpstreamError`` so callers only have
    one exception type to degrade on.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = dict(headers or {})

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._url(path)
        try:
            # Overall deadline: httpx timeouts apply per read, not to the whole exchange
            resp = await asyncio.wait_for(
                self._client.request(method, url, headers=self._headers, **kwargs), timeout=self.timeout
            )
            resp.raise_for_status()
        except asyncio.TimeoutError as exc:
            raise UpstreamError(f"{self.name} {method} {url} timed out after {self.timeout:.1f}s") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UpstreamError(f"{self.name} {method} {url} returned {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{self.name} {method} {url} failed: {exc!r}") from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.name} {method} {url} returned a malformed body") from exc
