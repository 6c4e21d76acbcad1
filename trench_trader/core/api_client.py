"""
Provider API plumbing
Shared aiohttp session handling and the provider contracts used by the engine
"""

import asyncio
import aiohttp
from typing import Any, Dict, List, Optional
import logging

from .errors import DataUnavailable
from .models import Candidate

logger = logging.getLogger(__name__)


class MarketDataProvider:
    """Source of candidates and fresh prices"""

    name = "market_data"

    async def fetch_candidates(self, chain: str) -> List[Candidate]:
        raise NotImplementedError

    async def fetch_fresh_price(self, chain: str, asset_id: str) -> Optional[float]:
        raise NotImplementedError

    async def fetch_prices(self, chain: str, asset_ids: List[str]) -> Dict[str, float]:
        """Bulk price lookup; default falls back to one request per asset"""
        prices = {}
        for asset_id in asset_ids:
            price = await self.fetch_fresh_price(chain, asset_id)
            if price:
                prices[asset_id] = price
        return prices


class SwapProvider:
    """Builds and broadcasts swap transactions"""

    name = "swap"

    async def quote(
        self,
        chain: str,
        from_asset: str,
        to_asset: str,
        amount: float,
        wallet: str,
        slippage_bps: int
    ) -> str:
        """Return a base64 serialized, unsigned transaction"""
        raise NotImplementedError

    async def submit(self, chain: str, signed_tx: str) -> Dict[str, Any]:
        """Broadcast a base64 signed transaction, returns {success, tx_hash}"""
        raise NotImplementedError


class BaseApiClient:
    """aiohttp JSON client with a reusable session and explicit timeouts"""

    name = "api"

    def __init__(self, base_url: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Dict = None,
        json_body: Dict = None,
        timeout: float = None
    ) -> Any:
        """
        Make a request and decode the JSON body

        Raises:
            DataUnavailable: on HTTP >= 400, transport errors or timeout
        """
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout_seconds)

        try:
            async with session.request(
                method, url, params=params, json=json_body, timeout=client_timeout
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.debug(f"{self.name} API Error {response.status}: {text[:200]}")
                    raise DataUnavailable(f"{self.name} HTTP {response.status}: {text[:200]}")
                return await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataUnavailable(f"{self.name} request failed: {e or type(e).__name__}") from e


def as_float(value: Any, default: float = 0.0) -> float:
    """Lenient numeric parsing for provider payloads"""
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
