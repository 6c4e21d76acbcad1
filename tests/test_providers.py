import pytest

from trench_trader.core.dexscreener_client import DexScreenerClient, pair_to_candidate
from trench_trader.core.errors import DataUnavailable, ExecutionFailure
from trench_trader.core.mobula_client import MobulaClient

PAIR = {
    "baseToken": {"address": "Mint111", "symbol": "PUMP", "name": "Pump Token"},
    "priceUsd": "0.0042",
    "priceChange": {"m5": 3.5, "h1": 12.0, "h24": 40.0},
    "volume": {"m5": 1_000, "h1": 8_000, "h24": 90_000},
    "txns": {"m5": {"buys": 30, "sells": 10}, "h1": {"buys": 300, "sells": 100}},
    "liquidity": {"usd": 55_000},
}


def test_pair_to_candidate_splits_volume_by_transaction_share():
    c = pair_to_candidate(PAIR)
    assert c.asset_id == "Mint111"
    assert c.symbol == "PUMP"
    assert c.price == pytest.approx(0.0042)
    assert c.change_5m == 3.5
    assert c.change_24h == 40.0
    assert c.liquidity == 55_000
    assert c.buy_volume_1h == pytest.approx(6_000)
    assert c.sell_volume_1h == pytest.approx(2_000)
    assert c.buy_volume_5m == pytest.approx(750)
    assert c.buy_pressure == pytest.approx(0.75)
    assert c.num_buyers_5m == 30
    assert c.source == "dexscreener"


def test_pair_without_price_is_dropped():
    assert pair_to_candidate({"baseToken": {"address": "X"}, "priceUsd": None}) is None


def test_pair_without_changes_uses_fallbacks():
    c = pair_to_candidate({"baseToken": {}, "priceUsd": "1", "priceChange": {"h6": 7}}, "Fallback")
    assert c.asset_id == "Fallback"
    assert c.change_24h == 7
    assert c.change_5m is None
    assert c.buy_pressure is None


@pytest.mark.asyncio
async def test_dexscreener_candidates_from_listings(monkeypatch):
    client = DexScreenerClient()
    monkeypatch.setattr("trench_trader.core.dexscreener_client.PAIR_BATCH_DELAY", 0)

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        if path.startswith("/token-boosts"):
            return [
                {"chainId": "solana", "tokenAddress": "Mint111"},
                {"chainId": "ethereum", "tokenAddress": "0xabc"},
            ]
        if path.startswith("/community-takeovers"):
            raise DataUnavailable("down")
        if path.startswith("/ads"):
            return [{"chainId": "solana", "tokenAddress": "Mint111"}, {"chainId": "solana", "tokenAddress": "Mint222"}]
        if path.endswith("/Mint111"):
            return [PAIR]
        return []

    monkeypatch.setattr(client, "_request", fake_request)

    assert await client.fetch_listed_addresses("solana") == ["Mint111", "Mint222"]
    candidates = await client.fetch_candidates("solana")
    assert [c.asset_id for c in candidates] == ["Mint111"]


@pytest.mark.asyncio
async def test_dexscreener_listing_failure_raises(monkeypatch):
    client = DexScreenerClient()

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        raise DataUnavailable("HTTP 503")

    monkeypatch.setattr(client, "_request", fake_request)
    with pytest.raises(DataUnavailable):
        await client.fetch_candidates("solana")
    assert await client.fetch_fresh_price("solana", "Mint111") is None


@pytest.mark.asyncio
async def test_dexscreener_bulk_prices_keep_most_liquid_pair(monkeypatch):
    client = DexScreenerClient()

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        return [
            {"baseToken": {"address": "A"}, "priceUsd": "1.0", "liquidity": {"usd": 100}},
            {"baseToken": {"address": "A"}, "priceUsd": "1.2", "liquidity": {"usd": 9_000}},
            {"baseToken": {"address": "B"}, "priceUsd": "0", "liquidity": {"usd": 9_000}},
        ]

    monkeypatch.setattr(client, "_request", fake_request)
    assert await client.fetch_prices("solana", ["A", "B"]) == {"A": 1.2}


@pytest.mark.asyncio
async def test_mobula_token_markets(monkeypatch):
    client = MobulaClient()

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        assert path == "/2/token/markets"
        return {"data": [{
            "liquidityUSD": 80_000,
            "base": {"top10HoldingsPercentage": 0.42, "insidersCount": 2, "devHoldingsPercentage": 3},
            "priceChange1hPercentage": 5.5,
            "volumeBuy1hUSD": 6_000,
            "volumeSell1hUSD": 2_000,
        }]}

    monkeypatch.setattr(client, "_request", fake_request)
    market = await client.get_token_markets("solana", "Mint111")
    assert market.liquidity_usd == 80_000
    assert market.top10_holdings_pct == pytest.approx(42)
    assert market.insiders_count == 2
    assert market.change_1h == 5.5
    assert market.buy_volume_1h == 6_000


@pytest.mark.asyncio
async def test_mobula_candidates_survive_partial_outage(monkeypatch):
    client = MobulaClient(api_key="key")
    assert client.base_url == "https://api.mobula.io/api"

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        if path == "/1/metadata/trendings":
            if params["platform"] != "Dexscreener":
                raise DataUnavailable("down")
            return {"data": [{
                "symbol": "PUMP", "name": "Pump", "price": 0.01, "price_change_24h": 20,
                "volume": 50_000, "liquidity": 10_000,
                "contracts": [{"blockchain": "Solana", "address": "Mint111"}],
            }]}
        return {"data": [{"liquidityUSD": 30_000, "volumeBuy1hUSD": 3_000, "volumeSell1hUSD": 1_000}]}

    monkeypatch.setattr(client, "_request", fake_request)
    candidates = await client.fetch_candidates("solana")
    assert len(candidates) == 1
    c = candidates[0]
    assert c.asset_id == "Mint111"
    assert c.liquidity == 30_000
    assert c.buy_pressure == pytest.approx(0.75)
    assert c.source == "mobula"


@pytest.mark.asyncio
async def test_mobula_all_trendings_failing_raises(monkeypatch):
    client = MobulaClient()

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        raise DataUnavailable("down")

    monkeypatch.setattr(client, "_request", fake_request)
    with pytest.raises(DataUnavailable):
        await client.fetch_candidates("solana")


@pytest.mark.asyncio
async def test_mobula_swap_quote_and_send(monkeypatch):
    client = MobulaClient()
    calls = []

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        calls.append((method, path, params, json_body))
        if path == "/2/swap/quoting":
            return {"data": {"solana": {"transaction": {"serialized": "AAAA"}}}}
        return {"data": {"success": True, "transactionHash": "sig123"}}

    monkeypatch.setattr(client, "_request", fake_request)
    assert await client.quote("solana", "In", "Out", 0.05, "Wallet", 800) == "AAAA"
    assert calls[0][2]["slippage"] == "8"
    assert calls[0][2]["chainId"] == "solana:solana"

    result = await client.submit("solana", "signed")
    assert result == {"success": True, "tx_hash": "sig123", "error": None}
    assert calls[1][3] == {"chainId": "solana:solana", "signedTransaction": "signed"}


@pytest.mark.asyncio
async def test_mobula_quote_without_transaction_fails(monkeypatch):
    client = MobulaClient()

    async def fake_request(method, path, params=None, json_body=None, timeout=None):
        return {"data": {"error": "no route"}}

    monkeypatch.setattr(client, "_request", fake_request)
    with pytest.raises(ExecutionFailure):
        await client.quote("solana", "In", "Out", 0.05, "Wallet", 800)
