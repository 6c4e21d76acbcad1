"""
DexScreener API Client
Trending listings and live pair prices (no API key, ~300 req/min)
"""

import asyncio
from typing import Any, Dict, List, Optional
import logging

from .api_client import BaseApiClient, MarketDataProvider, as_float, as_optional_float
from .errors import DataUnavailable
from .models import Candidate

logger = logging.getLogger(__name__)

PAIR_BATCH_SIZE = 5
PAIR_BATCH_DELAY = 0.2
BULK_TOKENS_PER_REQUEST = 30


def pair_to_candidate(pair: Dict[str, Any], fallback_address: str = "") -> Optional[Candidate]:
    """Map a DexScreener pair payload to a Candidate"""
    base = pair.get("baseToken") or {}
    price = as_float(pair.get("priceUsd"))
    if price <= 0:
        return None

    change = pair.get("priceChange") or {}
    volume = pair.get("volume") or {}
    txns = pair.get("txns") or {}
    liquidity = pair.get("liquidity") or {}

    h1 = txns.get("h1") or {}
    m5 = txns.get("m5") or {}
    buys_1h, sells_1h = int(as_float(h1.get("buys"))), int(as_float(h1.get("sells")))
    buys_5m, sells_5m = int(as_float(m5.get("buys"))), int(as_float(m5.get("sells")))

    # Buy/sell volume split approximated by transaction count share
    buy_share_1h = buys_1h / (buys_1h + sells_1h) if buys_1h + sells_1h > 0 else None
    buy_share_5m = buys_5m / (buys_5m + sells_5m) if buys_5m + sells_5m > 0 else None
    vol_1h = as_float(volume.get("h1"))
    vol_5m = as_float(volume.get("m5"))

    change_24h = as_optional_float(change.get("h24"))
    if change_24h is None:
        change_24h = as_float(change.get("h6"))

    return Candidate(
        asset_id=base.get("address") or fallback_address,
        symbol=base.get("symbol") or "?",
        name=base.get("name") or "",
        price=price,
        change_24h=change_24h,
        change_1h=as_optional_float(change.get("h1")),
        change_5m=as_optional_float(change.get("m5")),
        volume_24h=as_float(volume.get("h24")),
        liquidity=as_float(liquidity.get("usd")),
        buy_volume_1h=vol_1h * buy_share_1h if buy_share_1h is not None else 0.0,
        sell_volume_1h=vol_1h * (1 - buy_share_1h) if buy_share_1h is not None else 0.0,
        buy_volume_5m=vol_5m * buy_share_5m if buy_share_5m is not None else 0.0,
        sell_volume_5m=vol_5m * (1 - buy_share_5m) if buy_share_5m is not None else 0.0,
        buy_pressure=buy_share_1h,
        num_buyers_1h=buys_1h,
        num_buyers_5m=buys_5m,
        source="dexscreener",
    )


class DexScreenerClient(BaseApiClient, MarketDataProvider):
    """
    DexScreener market data

    Candidates come from the latest boosts, community takeovers and ads,
    enriched with pair data in small batches.
    """

    name = "dexscreener"

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com",
        timeout_seconds: float = 10.0,
        candidate_limit: int = 150
    ):
        super().__init__(base_url, timeout_seconds)
        self.candidate_limit = candidate_limit

    async def _listing(self, path: str, chain: str) -> List[Dict]:
        data = await self._request("GET", path)
        if not isinstance(data, list):
            return []
        return [t for t in data if (t.get("chainId") or "").lower() == chain.lower()]

    async def fetch_listed_addresses(self, chain: str) -> List[str]:
        """Token addresses from boosts, takeovers and ads, first seen wins"""
        boosts, takeovers, ads = await asyncio.gather(
            self._listing("/token-boosts/latest/v1", chain),
            self._listing("/community-takeovers/latest/v1", chain),
            self._listing("/ads/latest/v1", chain),
            return_exceptions=True
        )
        if isinstance(boosts, BaseException):
            raise boosts

        addresses: List[str] = []
        seen = set()
        for listing in (boosts, takeovers, ads):
            if isinstance(listing, BaseException):
                logger.debug(f"DexScreener listing failed: {listing}")
                continue
            for item in listing:
                address = item.get("tokenAddress")
                if address and address not in seen:
                    seen.add(address)
                    addresses.append(address)
        return addresses

    async def fetch_token_pair(self, chain: str, address: str) -> Optional[Candidate]:
        """Most relevant pair for a token"""
        data = await self._request("GET", f"/token-pairs/v1/{chain}/{address}")
        if not isinstance(data, list) or not data:
            return None
        return pair_to_candidate(data[0], address)

    async def fetch_candidates(self, chain: str) -> List[Candidate]:
        addresses = (await self.fetch_listed_addresses(chain))[:self.candidate_limit]

        candidates: List[Candidate] = []
        for i in range(0, len(addresses), PAIR_BATCH_SIZE):
            chunk = addresses[i:i + PAIR_BATCH_SIZE]
            pairs = await asyncio.gather(
                *(self.fetch_token_pair(chain, address) for address in chunk),
                return_exceptions=True
            )
            for pair in pairs:
                if isinstance(pair, Candidate) and pair.price > 0:
                    candidates.append(pair)
            if i + PAIR_BATCH_SIZE < len(addresses):
                await asyncio.sleep(PAIR_BATCH_DELAY)

        logger.debug(f"DexScreener: {len(candidates)}/{len(addresses)} listed tokens priced")
        return candidates

    async def fetch_fresh_price(self, chain: str, asset_id: str) -> Optional[float]:
        try:
            pair = await self.fetch_token_pair(chain, asset_id)
        except DataUnavailable as e:
            logger.debug(f"Fresh price for {asset_id} unavailable: {e}")
            return None
        return pair.price if pair and pair.price > 0 else None

    async def fetch_prices(self, chain: str, asset_ids: List[str]) -> Dict[str, float]:
        """Bulk prices, keeping the most liquid pair per token"""
        prices: Dict[str, float] = {}
        best_liquidity: Dict[str, float] = {}

        for i in range(0, len(asset_ids), BULK_TOKENS_PER_REQUEST):
            chunk = asset_ids[i:i + BULK_TOKENS_PER_REQUEST]
            data = await self._request("GET", f"/tokens/v1/{chain}/{','.join(chunk)}")
            if not isinstance(data, list):
                continue
            for pair in data:
                address = (pair.get("baseToken") or {}).get("address")
                price = as_float(pair.get("priceUsd"))
                liquidity = as_float((pair.get("liquidity") or {}).get("usd"))
                if not address or price <= 0:
                    continue
                if address not in prices or liquidity > best_liquidity[address]:
                    prices[address] = price
                    best_liquidity[address] = liquidity

        return prices
