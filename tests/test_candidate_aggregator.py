import asyncio
import copy

import pytest

from trench_trader.core.candidate_aggregator import (
    CandidateAggregator,
    MarketCheck,
    passes_entry_filters,
    score_pump_start,
    score_scalping,
)
from trench_trader.core.errors import DataUnavailable
from trench_trader.core.models import Candidate
from trench_trader.utils.config_loader import STRATEGY_PROFILES, Settings


def strong_candidate(asset_id="STRONG"):
    return Candidate(
        asset_id=asset_id,
        symbol="STR",
        price=0.01,
        change_24h=30,
        change_5m=12,
        volume_24h=240_000,
        liquidity=120_000,
        buy_volume_1h=40_000,
        sell_volume_1h=20_000,
        buy_volume_5m=30_000,
        sell_volume_5m=10_000,
        buy_pressure=0.7,
        num_buyers_5m=60,
    )


def moderate_candidate(asset_id="MOD"):
    return Candidate(
        asset_id=asset_id,
        symbol="MOD",
        price=0.02,
        change_24h=10,
        change_5m=3,
        volume_24h=60_000,
        liquidity=60_000,
        buy_volume_1h=3_000,
        sell_volume_1h=2_000,
        buy_volume_5m=6_000,
        sell_volume_5m=4_000,
        buy_pressure=0.6,
        num_buyers_5m=25,
    )


def thin_candidate(asset_id="THIN"):
    return Candidate(asset_id=asset_id, symbol="THIN", price=0.5, change_5m=5, volume_24h=5_000, liquidity=2_000)


class FakeProvider:
    def __init__(self, candidates, name="fake", fail=False, gate=None):
        self.name = name
        self.candidates = candidates
        self.fail = fail
        self.gate = gate
        self.calls = 0

    async def fetch_candidates(self, chain):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise DataUnavailable(f"{self.name} down")
        return [copy.copy(c) for c in self.candidates]


def test_thin_token_is_rejected_by_both_scorers():
    c = thin_candidate()
    assert score_scalping(c) == -1
    assert score_pump_start(c) == -1


def test_scalping_score_ranks_strong_momentum_higher():
    assert score_scalping(strong_candidate()) == 100
    assert score_scalping(moderate_candidate()) == 84


def test_scalping_rejects_parabolic_and_dumping_tokens():
    parabolic = strong_candidate()
    parabolic.change_5m = 65
    assert score_scalping(parabolic) == -1

    dumping = strong_candidate()
    dumping.change_24h = -40
    assert score_scalping(dumping) == -1

    sold_into = strong_candidate()
    sold_into.buy_volume_5m = 2_000
    sold_into.sell_volume_5m = 8_000
    assert score_scalping(sold_into) == -1


def test_short_change_falls_back_to_hourly_data():
    c = strong_candidate()
    c.change_5m = None
    c.change_1h = 0.5
    assert score_scalping(c) == -1
    c.change_1h = 15
    assert score_scalping(c) > 0


@pytest.mark.asyncio
async def test_refresh_filters_and_sorts_by_score():
    provider = FakeProvider([thin_candidate(), moderate_candidate(), strong_candidate()])
    aggregator = CandidateAggregator([provider], STRATEGY_PROFILES["scalping"])

    result = await aggregator.refresh("solana")

    assert [c.asset_id for c in result] == ["STRONG", "MOD"]
    assert result[0].quality_score >= result[1].quality_score


@pytest.mark.asyncio
async def test_refresh_is_deterministic_for_the_same_inputs():
    candidates = [moderate_candidate(), strong_candidate(), thin_candidate()]
    first = await CandidateAggregator([FakeProvider(candidates)], STRATEGY_PROFILES["scalping"]).refresh()
    second = await CandidateAggregator([FakeProvider(candidates)], STRATEGY_PROFILES["scalping"]).refresh()

    assert [(c.asset_id, c.quality_score) for c in first] == [(c.asset_id, c.quality_score) for c in second]


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_fetch():
    gate = asyncio.Event()
    provider = FakeProvider([strong_candidate()], gate=gate)
    aggregator = CandidateAggregator([provider], STRATEGY_PROFILES["scalping"])

    first = asyncio.create_task(aggregator.refresh())
    second = asyncio.create_task(aggregator.refresh())
    await asyncio.sleep(0.01)
    gate.set()
    a, b = await asyncio.gather(first, second)

    assert provider.calls == 1
    assert aggregator.refresh_count == 1
    assert [c.asset_id for c in a] == [c.asset_id for c in b] == ["STRONG"]


@pytest.mark.asyncio
async def test_cache_expires_after_ttl():
    now = [1000.0]
    provider = FakeProvider([strong_candidate()])
    aggregator = CandidateAggregator([provider], STRATEGY_PROFILES["scalping"], clock=lambda: now[0])

    await aggregator.refresh()
    await aggregator.refresh()
    assert provider.calls == 1

    now[0] += STRATEGY_PROFILES["scalping"].cache_ttl_seconds + 1
    await aggregator.refresh()
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_failing_provider_does_not_block_the_others():
    good = FakeProvider([strong_candidate()], name="good")
    bad = FakeProvider([], name="bad", fail=True)
    aggregator = CandidateAggregator([bad, good], STRATEGY_PROFILES["scalping"])

    result = await aggregator.refresh()
    assert [c.asset_id for c in result] == ["STRONG"]


@pytest.mark.asyncio
async def test_all_providers_failing_returns_empty_and_is_not_cached():
    bad = FakeProvider([], fail=True)
    aggregator = CandidateAggregator([bad], STRATEGY_PROFILES["scalping"])

    assert await aggregator.refresh() == []
    assert await aggregator.refresh() == []
    assert bad.calls == 2
    assert aggregator.refresh_count == 0
    assert aggregator.cached("solana") == []


@pytest.mark.asyncio
async def test_slow_provider_times_out():
    slow = FakeProvider([strong_candidate()], gate=asyncio.Event())
    aggregator = CandidateAggregator([slow], STRATEGY_PROFILES["scalping"], timeout_seconds=0.05)

    assert await aggregator.refresh() == []


@pytest.mark.asyncio
async def test_duplicate_assets_are_merged_with_source_count():
    one = FakeProvider([moderate_candidate()], name="one")
    two = FakeProvider([moderate_candidate()], name="two")
    aggregator = CandidateAggregator([one, two], STRATEGY_PROFILES["scalping"])

    result = await aggregator.refresh()
    assert len(result) == 1
    assert result[0].source_count == 2
    assert result[0].quality_score == 87


def test_entry_filters():
    settings = Settings.from_dict({})
    c = strong_candidate()

    assert passes_entry_filters(c, settings)
    assert not passes_entry_filters(c, settings, blacklist=["STRONG"])
    assert passes_entry_filters(c, settings, market=None)
    assert passes_entry_filters(c, settings, market=MarketCheck(liquidity_usd=120_000, top10_holdings_pct=30))
    assert not passes_entry_filters(c, settings, market=MarketCheck(liquidity_usd=120_000, top10_holdings_pct=95))
    assert not passes_entry_filters(c, settings, market=MarketCheck(liquidity_usd=10_000, top10_holdings_pct=30))
    assert not passes_entry_filters(
        c, settings, market=MarketCheck(liquidity_usd=120_000, top10_holdings_pct=30, insiders_count=8)
    )

    pumped = strong_candidate()
    pumped.change_24h = 600
    assert not passes_entry_filters(pumped, settings)

    unfiltered = Settings.from_dict({"use_entry_filters": False})
    assert passes_entry_filters(c, unfiltered, blacklist=["STRONG"])
