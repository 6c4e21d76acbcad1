"""
Candidate Aggregator

Merges trending-token feeds from several market data providers, hard-filters
obvious wash trading and rugs, and ranks the rest by a deterministic quality
score. Results are cached per strategy with a short TTL.
"""

from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field
import asyncio
import time
import numpy as np
import logging

from .models import Candidate
from .errors import DataUnavailable
from ..utils.config_loader import Settings, StrategyProfile, SCALPING, MEMECOIN

logger = logging.getLogger(__name__)

REJECTED = -1.0
MAX_SCORE = 100.0


def _short_change(c: Candidate, hourly_divisor: float = 1.0) -> float:
    """Shortest-horizon price change available: 5m, then 1h, then 24h/24"""
    if c.change_5m is not None:
        return c.change_5m
    if c.change_1h is not None:
        return c.change_1h / hourly_divisor
    if c.change_24h > 0:
        return c.change_24h / 24
    return 0.0


def _short_volume(c: Candidate):
    """(total, buy) volume over the shortest window with data"""
    if c.volume_5m > 0:
        return c.volume_5m, c.buy_volume_5m
    return c.volume_1h, c.buy_volume_1h


def score_scalping(c: Candidate) -> float:
    """
    Quality score for scalping entries

    Rejects (returns -1) weak, parabolic or wash-traded tokens and scores the
    rest on short-term momentum backed by real buy volume.

    Args:
        c: Candidate snapshot

    Returns:
        Score in [0, 100], or -1 when hard-rejected
    """
    change = c.change_24h or 0.0
    vol = c.volume_24h or 0.0
    liq = c.liquidity or 0.0
    buy_pressure = c.buy_pressure if c.buy_pressure is not None else 0.5
    vol_liq_ratio = vol / liq if liq > 0 else 0.0
    change_short = _short_change(c)

    # Safety filters
    if change > 500 or change < -25:
        return REJECTED
    if vol < 25_000 or liq < 50_000:
        return REJECTED
    # Holder count 0 means unknown
    if 0 < c.holder_count < 500:
        return REJECTED
    if vol_liq_ratio > 25:
        return REJECTED

    # Must be actively pumping
    if change_short < 1.0:
        return REJECTED
    if buy_pressure < 0.5:
        return REJECTED

    vol_short, buy_vol_short = _short_volume(c)
    vol_velocity = vol_short / liq if liq > 0 else 0.0
    buy_dominance = buy_vol_short / vol_short if vol_short > 0 else buy_pressure

    # Parabolic moves usually dump
    if change_short > 80 and change > 300:
        return REJECTED
    if change_short > 50 and change > 150:
        return REJECTED
    if change_short > 60:
        return REJECTED

    # Price up without volume backing
    if change_short > 5 and buy_dominance < 0.45 and vol_short > 0:
        return REJECTED

    score = 0.0

    if 10 <= change_short <= 40:
        score += 40
    elif 5 <= change_short < 10:
        score += 35
    elif 40 < change_short <= 80:
        score += 25
    elif 2 <= change_short < 5:
        score += 20
    elif 1 <= change_short < 2:
        score += 12

    if vol_velocity >= 2:
        score += 20
    elif vol_velocity >= 1:
        score += 15
    elif vol_velocity >= 0.5:
        score += 10
    elif vol_velocity >= 0.2:
        score += 5

    # 1h volume against the 24h hourly average
    avg_hourly = vol / 24
    vol_surge = c.volume_1h / avg_hourly if avg_hourly > 0 else 0.0
    if vol_surge >= 3:
        score += 15
    elif vol_surge >= 2:
        score += 10
    elif vol_surge >= 1.5:
        score += 5

    effective_bp = max(buy_pressure, buy_dominance)
    if effective_bp >= 0.65:
        score += 25
    elif effective_bp >= 0.60:
        score += 20
    elif effective_bp >= 0.55:
        score += 15
    elif effective_bp >= 0.50:
        score += 8

    if buy_dominance >= 0.65:
        score += 10
    elif buy_dominance >= 0.55:
        score += 6
    elif buy_dominance >= 0.50:
        score += 3

    buyers = c.num_buyers_5m if c.num_buyers_5m > 0 else c.num_buyers_1h
    if buyers >= 50:
        score += 15
    elif buyers >= 20:
        score += 10
    elif buyers >= 5:
        score += 5

    if vol >= 200_000:
        score += 10
    elif vol >= 100_000:
        score += 8
    elif vol >= 50_000:
        score += 6
    elif vol >= 25_000:
        score += 4

    if liq >= 100_000:
        score += 8
    elif liq >= 75_000:
        score += 6
    elif liq >= 50_000:
        score += 4

    # Moderate 24h pumps make better entries
    if 5 <= change <= 50:
        score += 8
    elif 50 < change <= 150:
        score += 5
    elif 150 < change <= 300:
        score += 2
    elif 0 <= change < 5:
        score += 4

    if c.organic_score >= 80:
        score += 6
    elif c.organic_score >= 50:
        score += 4
    elif c.organic_score >= 20:
        score += 2

    if c.holder_count >= 1000:
        score += 5
    elif c.holder_count >= 500:
        score += 2
    if c.is_verified:
        score += 3
    if c.source_count >= 3:
        score += 5
    elif c.source_count >= 2:
        score += 3

    return min(score, MAX_SCORE)


def score_pump_start(c: Candidate) -> float:
    """
    Loose quality score for memecoin pump-start entries

    Only obvious rugs and dumps are rejected; exits do the filtering.
    """
    vol = c.volume_24h or 0.0
    liq = c.liquidity or 0.0
    buy_pressure = c.buy_pressure if c.buy_pressure is not None else 0.5
    vol_short, buy_vol_short = _short_volume(c)
    buy_dominance = buy_vol_short / vol_short if vol_short > 0 else buy_pressure
    vol_velocity = vol_short / liq if liq > 0 else 0.0
    avg_hourly = vol / 24
    vol_surge = c.volume_1h / avg_hourly if avg_hourly > 0 else 0.0

    if vol < 1000 or liq < 3000:
        return REJECTED
    if liq > 0 and vol / liq > 150:
        return REJECTED
    if vol_short > 0 and buy_dominance < 0.25:
        return REJECTED

    # 1h change spread over 5m buckets when no 5m data
    if c.change_5m is not None:
        change_short = c.change_5m
    elif c.change_1h is not None:
        change_short = c.change_1h / 12
    else:
        change_short = 0.0
    if change_short > 150 or change_short < -40:
        return REJECTED

    score = 25.0

    if 0.5 <= change_short <= 10:
        score += 30
    elif 10 < change_short <= 25:
        score += 20
    elif 0 <= change_short < 0.5:
        score += 15
    elif 25 < change_short <= 80:
        score += 10
    elif -5 <= change_short < 0:
        score += 5
    elif -25 <= change_short < -5:
        score += 2
    elif -40 <= change_short < -25:
        score += 1

    if vol_surge >= 1.5:
        score += 15
    elif vol_surge >= 1:
        score += 10
    elif vol_surge >= 0.5:
        score += 5

    if buy_dominance >= 0.55:
        score += 15
    elif buy_dominance >= 0.48:
        score += 10
    elif buy_dominance >= 0.40:
        score += 5

    if vol_velocity >= 0.5:
        score += 10
    elif vol_velocity >= 0.2:
        score += 5

    if c.source == "geckoterminal" or c.source_count <= 1:
        score += 5
    buyers = c.num_buyers_5m if c.num_buyers_5m > 0 else c.num_buyers_1h
    if buyers >= 5:
        score += 5
    if liq >= 50_000:
        score += 5

    return min(score, MAX_SCORE)


SCORERS: Dict[str, Callable[[Candidate], float]] = {
    SCALPING: score_scalping,
    MEMECOIN: score_pump_start,
}


@dataclass
class MarketCheck:
    """Token holder-distribution data used by the rug filters"""
    liquidity_usd: float = 0.0
    top10_holdings_pct: float = 100.0
    insiders_count: int = 0
    bundlers_count: int = 0
    snipers_count: int = 0
    dev_holdings_pct: float = 0.0
    insiders_holdings_pct: float = 0.0
    change_1h: Optional[float] = None
    buy_volume_1h: float = 0.0
    sell_volume_1h: float = 0.0


def passes_entry_filters(
    candidate: Candidate,
    settings: Settings,
    blacklist: Optional[List[str]] = None,
    market: Optional[MarketCheck] = None
) -> bool:
    """
    Per-account entry filters and rug checks

    Args:
        candidate: Candidate about to be bought
        settings: Account settings
        blacklist: Asset ids the account never trades
        market: Token market data, None when unavailable (checks skipped)

    Returns:
        True if the candidate may be bought
    """
    if not settings.use_entry_filters:
        return True
    if blacklist and candidate.asset_id in blacklist:
        return False
    if (candidate.change_24h or 0) >= settings.max_price_change_24h_pct:
        return False
    if market is None:
        return True

    if settings.min_liquidity_usd > 0 and market.liquidity_usd < settings.min_liquidity_usd:
        return False
    if settings.max_top10_holders_pct < 100 and market.top10_holdings_pct > settings.max_top10_holders_pct:
        return False

    # Insider / sniper / bundler concentration
    if market.insiders_count > 5:
        return False
    if market.bundlers_count > 10:
        return False
    if market.snipers_count > 15:
        return False
    if market.dev_holdings_pct > 15:
        return False
    if market.insiders_holdings_pct > 20:
        return False

    return True


@dataclass
class _CacheEntry:
    candidates: List[Candidate] = field(default_factory=list)
    fetched_at: float = 0.0


class CandidateAggregator:
    """
    Merges, filters and scores candidates from all providers

    Features:
    - Concurrent provider fetch with per-provider timeout
    - First-seen-wins merge with corroboration counting
    - Strategy-specific scoring and minimum score
    - TTL cache with single-flight refresh
    """

    def __init__(
        self,
        providers: List[Any],
        profile: StrategyProfile,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.providers = providers
        self.profile = profile
        self.score_fn = SCORERS[profile.name]
        self.timeout_seconds = timeout_seconds
        self._clock = clock

        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self, entry: Optional[_CacheEntry]) -> bool:
        return entry is not None and (self._clock() - entry.fetched_at) < self.profile.cache_ttl_seconds

    def cached(self, chain: str) -> List[Candidate]:
        """Last refresh result regardless of age"""
        entry = self._cache.get(chain)
        return list(entry.candidates) if entry else []

    async def refresh(self, chain: str = "solana") -> List[Candidate]:
        """
        Get scored candidates, fetching only when the cache is stale

        Concurrent callers share one fetch. Never raises: provider failures
        yield an empty list.

        Args:
            chain: Chain identifier

        Returns:
            Candidates sorted by quality score, highest first
        """
        entry = self._cache.get(chain)
        if self._is_fresh(entry):
            return list(entry.candidates)

        async with self._lock:
            # Another caller may have refreshed while we waited
            entry = self._cache.get(chain)
            if self._is_fresh(entry):
                return list(entry.candidates)

            merged, succeeded = await self._fetch_all(chain)
            if not succeeded:
                logger.warning(f"All candidate providers failed for {chain}")
                return []

            scored = self._score(merged)
            self._cache[chain] = _CacheEntry(candidates=scored, fetched_at=self._clock())
            self.refresh_count += 1
            return list(scored)

    async def _fetch_all(self, chain: str):
        """Fetch all providers concurrently and merge by asset id"""
        results = await asyncio.gather(
            *(self._fetch_one(provider, chain) for provider in self.providers),
            return_exceptions=True
        )

        merged: Dict[str, Candidate] = {}
        succeeded = 0
        for provider, result in zip(self.providers, results):
            name = getattr(provider, "name", type(provider).__name__)
            if isinstance(result, BaseException):
                logger.warning(f"Provider {name} failed: {result}")
                continue

            succeeded += 1
            seen_here = set()
            for raw in result:
                if not raw.asset_id or raw.price <= 0 or raw.asset_id in seen_here:
                    continue
                seen_here.add(raw.asset_id)
                existing = merged.get(raw.asset_id)
                if existing is None:
                    raw.source_count = 1
                    merged[raw.asset_id] = raw
                else:
                    existing.source_count += 1

        return list(merged.values()), succeeded > 0

    async def _fetch_one(self, provider, chain: str) -> List[Candidate]:
        try:
            return await asyncio.wait_for(provider.fetch_candidates(chain), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise DataUnavailable(f"timed out after {self.timeout_seconds}s")

    def _score(self, candidates: List[Candidate]) -> List[Candidate]:
        """Score, drop rejects and below-minimum, sort descending"""
        for c in candidates:
            c.quality_score = self.score_fn(c)

        passed = [c for c in candidates if c.quality_score >= self.profile.min_score]
        passed.sort(key=lambda c: c.quality_score, reverse=True)

        if passed:
            scores = np.array([c.quality_score for c in passed])
            logger.info(
                f"{len(candidates)} tokens, {len(passed)} pass {self.profile.name} "
                f"(score>={self.profile.min_score:g}, median={np.median(scores):.0f}, max={scores.max():.0f})"
            )
        else:
            logger.info(f"{len(candidates)} tokens, 0 pass {self.profile.name} (score>={self.profile.min_score:g})")

        return passed
