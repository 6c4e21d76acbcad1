"""
Mobula API Client
Trending tokens, holder-distribution checks and Jupiter-routed swaps
"""

import asyncio
from typing import Any, Dict, List, Optional
import logging

from .api_client import BaseApiClient, MarketDataProvider, SwapProvider, as_float, as_optional_float
from .candidate_aggregator import MarketCheck
from .errors import DataUnavailable, ExecutionFailure
from .models import Candidate

logger = logging.getLogger(__name__)

TRENDING_PLATFORMS = ["Dexscreener", "LamboTrendings", "CoinGecko"]
MAX_ENRICHED = 25
CHAIN_IDS = {"solana": "solana:solana"}


class MobulaClient(BaseApiClient, MarketDataProvider, SwapProvider):
    """
    Mobula data and swap API

    Features:
    - Trending lists from several platforms, enriched with market data
    - Token holder distribution for rug filtering
    - Swap quoting (Jupiter routing) and signed transaction broadcast
    """

    name = "mobula"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = None,
        timeout_seconds: float = 10.0,
        swap_timeout_seconds: float = 30.0
    ):
        if not base_url:
            base_url = "https://api.mobula.io/api" if api_key else "https://demo-api.mobula.io/api"
        super().__init__(base_url, timeout_seconds)
        self.api_key = api_key
        self.swap_timeout_seconds = swap_timeout_seconds

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = self.api_key
        return headers

    @staticmethod
    def _chain_id(chain: str) -> str:
        return CHAIN_IDS.get(chain, chain)

    # ==================== Market data ====================

    async def _trending(self, chain: str, platform: str) -> List[Dict]:
        data = await self._request(
            "GET", "/1/metadata/trendings",
            params={"blockchain": chain, "platform": platform}
        )
        if isinstance(data, dict):
            data = data.get("data")
        return data if isinstance(data, list) else []

    async def fetch_candidates(self, chain: str) -> List[Candidate]:
        results = await asyncio.gather(
            *(self._trending(chain, p) for p in TRENDING_PLATFORMS),
            return_exceptions=True
        )
        if all(isinstance(r, BaseException) for r in results):
            raise DataUnavailable(f"mobula trendings failed: {results[0]}")

        candidates: Dict[str, Candidate] = {}
        for platform, items in zip(TRENDING_PLATFORMS, results):
            if isinstance(items, BaseException):
                logger.debug(f"Mobula {platform} trendings failed: {items}")
                continue
            for item in items:
                address = self._contract_address(item, chain)
                price = as_float(item.get("price"))
                if not address or price <= 0 or address in candidates:
                    continue
                candidates[address] = Candidate(
                    asset_id=address,
                    symbol=item.get("symbol") or "?",
                    name=item.get("name") or "",
                    price=price,
                    change_24h=as_float(item.get("price_change_24h")),
                    volume_24h=as_float(item.get("volume")),
                    liquidity=as_float(item.get("liquidity")),
                    source="mobula",
                )

        enriched = list(candidates.values())[:MAX_ENRICHED]
        markets = await asyncio.gather(
            *(self.get_token_markets(chain, c.asset_id) for c in enriched),
            return_exceptions=True
        )
        for candidate, market in zip(enriched, markets):
            if isinstance(market, MarketCheck):
                self._apply_market(candidate, market)

        return list(candidates.values())

    @staticmethod
    def _contract_address(item: Dict, chain: str) -> Optional[str]:
        for contract in item.get("contracts") or []:
            if (contract.get("blockchain") or "").lower() == chain.lower():
                return contract.get("address")
        return None

    @staticmethod
    def _apply_market(candidate: Candidate, market: MarketCheck) -> None:
        if market.liquidity_usd > 0:
            candidate.liquidity = market.liquidity_usd
        if market.change_1h is not None:
            candidate.change_1h = market.change_1h
        candidate.buy_volume_1h = market.buy_volume_1h
        candidate.sell_volume_1h = market.sell_volume_1h
        total = market.buy_volume_1h + market.sell_volume_1h
        if total > 0:
            candidate.buy_pressure = market.buy_volume_1h / total

    async def get_token_markets(self, chain: str, address: str) -> Optional[MarketCheck]:
        """
        Market and holder-distribution data for one token

        Returns:
            MarketCheck, or None when Mobula has no market for the token
        """
        data = await self._request(
            "GET", "/2/token/markets",
            params={"blockchain": chain, "address": address, "limit": 1}
        )
        markets = data.get("data") if isinstance(data, dict) else data
        if not isinstance(markets, list) or not markets:
            return None

        m = markets[0]
        base = m.get("base") if isinstance(m.get("base"), dict) else m

        def pick(key: str) -> Any:
            value = base.get(key)
            return value if value is not None else m.get(key)

        top10 = as_float(pick("top10HoldingsPercentage"), 100.0)
        # Some payloads report fractions
        if top10 <= 1:
            top10 *= 100

        return MarketCheck(
            liquidity_usd=as_float(pick("liquidityUSD")),
            top10_holdings_pct=top10,
            insiders_count=int(as_float(pick("insidersCount"))),
            bundlers_count=int(as_float(pick("bundlersCount"))),
            snipers_count=int(as_float(pick("snipersCount"))),
            dev_holdings_pct=as_float(pick("devHoldingsPercentage")),
            insiders_holdings_pct=as_float(pick("insidersHoldingsPercentage")),
            change_1h=as_optional_float(pick("priceChange1hPercentage")),
            buy_volume_1h=as_float(pick("volumeBuy1hUSD")),
            sell_volume_1h=as_float(pick("volumeSell1hUSD")),
        )

    async def fetch_fresh_price(self, chain: str, asset_id: str) -> Optional[float]:
        try:
            data = await self._request(
                "GET", "/1/market/data",
                params={"asset": asset_id, "blockchain": chain}
            )
        except DataUnavailable as e:
            logger.debug(f"Mobula price for {asset_id} unavailable: {e}")
            return None
        payload = data.get("data") if isinstance(data, dict) else None
        price = as_float((payload or {}).get("price"))
        return price if price > 0 else None

    # ==================== Swaps ====================

    async def quote(
        self,
        chain: str,
        from_asset: str,
        to_asset: str,
        amount: float,
        wallet: str,
        slippage_bps: int
    ) -> str:
        try:
            data = await self._request(
                "GET", "/2/swap/quoting",
                params={
                    "chainId": self._chain_id(chain),
                    "tokenIn": from_asset,
                    "tokenOut": to_asset,
                    "amount": f"{amount:.9f}",
                    "walletAddress": wallet,
                    "slippage": f"{slippage_bps / 100:g}",
                    "onlyRouters": "jupiter",
                    "priorityFee": "high",
                },
                timeout=self.swap_timeout_seconds
            )
        except DataUnavailable as e:
            raise ExecutionFailure(f"Swap quote failed: {e}") from e

        payload = (data.get("data") if isinstance(data, dict) else None) or {}
        serialized = ((payload.get("solana") or {}).get("transaction") or {}).get("serialized")
        if not serialized:
            raise ExecutionFailure(f"Swap quote returned no transaction: {payload.get('error') or data}")
        return serialized

    async def submit(self, chain: str, signed_tx: str) -> Dict[str, Any]:
        try:
            data = await self._request(
                "POST", "/2/swap/send",
                json_body={"chainId": self._chain_id(chain), "signedTransaction": signed_tx},
                timeout=self.swap_timeout_seconds
            )
        except DataUnavailable as e:
            raise ExecutionFailure(f"Swap send failed: {e}") from e

        payload = (data.get("data") if isinstance(data, dict) else None) or {}
        return {
            "success": bool(payload.get("success")),
            "tx_hash": payload.get("transactionHash"),
            "error": payload.get("error"),
        }
