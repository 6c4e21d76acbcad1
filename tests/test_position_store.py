from datetime import datetime, timezone

import pytest

from trench_trader.core.errors import PersistenceConflict
from trench_trader.core.models import Account, AccountMode, Position, PositionStatus, StrategyStats
from trench_trader.core.position_store import PositionStore
from trench_trader.utils.config_loader import Settings


def new_position(asset_id="TOKEN", account_id="acct"):
    return Position(
        account_id=account_id, asset_id=asset_id, symbol="TKN", entry_price=1.0,
        quantity=50.0, cost_basis=50.0, strategy="scalping"
    )


@pytest.mark.asyncio
async def test_create_and_query_open_positions(tmp_path):
    store = PositionStore(str(tmp_path / "bot.db"))
    created = await store.create_position(new_position())
    assert created.position_id is not None

    loaded = await store.get_position(created.position_id)
    assert loaded.asset_id == "TOKEN"
    assert loaded.is_open
    assert loaded.peak_price == 1.0
    assert loaded.opened_at.tzinfo is not None

    assert await store.count_open("acct") == 1
    assert len(await store.open_positions("acct", is_paper=True)) == 1
    assert await store.open_positions("acct", is_paper=False) == []
    store.close()


@pytest.mark.asyncio
async def test_one_open_position_per_account_and_asset(tmp_path):
    store = PositionStore(str(tmp_path / "bot.db"))
    await store.create_position(new_position())
    with pytest.raises(PersistenceConflict):
        await store.create_position(new_position())

    # Another account may hold the same asset
    await store.create_position(new_position(account_id="other"))
    store.close()


@pytest.mark.asyncio
async def test_close_happens_once(tmp_path):
    store = PositionStore(str(tmp_path / "bot.db"))
    pos = await store.create_position(new_position())
    now = datetime.now(timezone.utc)

    first = await store.transition_status(
        pos.position_id, PositionStatus.OPEN, PositionStatus.CLOSED,
        exit_price=1.1, exit_time=now, exit_reason="take_profit", pnl=5.0, pnl_pct=10.0
    )
    second = await store.transition_status(
        pos.position_id, PositionStatus.OPEN, PositionStatus.CLOSED,
        exit_price=0.9, exit_time=now, exit_reason="stop_loss", pnl=-5.0, pnl_pct=-10.0
    )
    assert first
    assert not second

    closed = await store.get_position(pos.position_id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.exit_reason == "take_profit"
    assert closed.pnl == 5.0
    assert not await store.update_position(pos.position_id, peak_price=2.0)

    # The asset can be bought again once closed
    await store.create_position(new_position())
    store.close()


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields():
    store = PositionStore()
    pos = await store.create_position(new_position())
    assert await store.update_position(pos.position_id, peak_price=1.4, breakeven_armed=True)
    loaded = await store.get_position(pos.position_id)
    assert loaded.peak_price == 1.4
    assert loaded.breakeven_armed is True

    with pytest.raises(ValueError):
        await store.update_position(pos.position_id, account_id="someone-else")
    store.close()


@pytest.mark.asyncio
async def test_last_closed_returns_most_recent(tmp_path):
    store = PositionStore(str(tmp_path / "bot.db"))
    for pnl_pct, hour in ((5.0, 10), (-3.0, 11)):
        pos = await store.create_position(new_position())
        await store.transition_status(
            pos.position_id, PositionStatus.OPEN, PositionStatus.CLOSED,
            exit_time=datetime(2024, 5, 1, hour, tzinfo=timezone.utc), pnl_pct=pnl_pct, pnl=pnl_pct
        )

    last = await store.last_closed("acct", "TOKEN")
    assert last.pnl_pct == -3.0
    assert await store.last_closed("acct", "OTHER") is None
    assert len(await store.closed_positions("acct")) == 2
    store.close()


@pytest.mark.asyncio
async def test_account_round_trip(tmp_path):
    store = PositionStore(str(tmp_path / "bot.db"))
    account = Account(
        "acct", mode=AccountMode.LIVE, balance=321.5,
        settings=Settings.from_dict({"strategy": "memecoin", "amount_per_trade_usd": 20}),
        blacklist=["RUG"], wallet_address="Wallet111"
    )
    account.risk.daily_pnl_start = 400.0
    account.risk.daily_pnl_start_at = datetime(2024, 5, 1, 9, tzinfo=timezone.utc)
    account.risk.consecutive_losses = 2
    account.stats.streak = -2
    account.stats.by_strategy["memecoin"] = StrategyStats(trades=4, wins=2, total_win_pct=6, total_loss_pct=-3)

    await store.save_account(account)
    loaded = await store.load_account("acct")

    assert loaded.mode == AccountMode.LIVE
    assert loaded.balance == 321.5
    assert loaded.settings == account.settings
    assert loaded.blacklist == ["RUG"]
    assert loaded.risk == account.risk
    assert loaded.stats == account.stats
    assert await store.list_accounts() == ["acct"]
    assert await store.load_account("missing") is None
    store.close()
