import math

import pytest

from trench_trader.core.models import Account, StrategyStats
from trench_trader.core.risk_planner import (
    TradeDecision,
    confidence_multiplier,
    plan,
    streak_multiplier,
    suggest_leverage,
)
from trench_trader.utils.config_loader import Settings


def decision(entry=100.0, stop=92.0, score=80.0, side="LONG", **kwargs):
    return TradeDecision(
        asset_id="TOKEN", side=side, entry=entry, stop_loss=stop,
        take_profits=[entry * 1.1], score=score, strategy="scalping", **kwargs
    )


def test_plan_fits_margin_and_fees_in_balance():
    account = Account("a", balance=1000)
    for balance in (1.0, 10.0, 55.0, 1000.0):
        account.balance = balance
        for settings in (Settings.from_dict({}), Settings.from_dict({"leverage": 5, "risk_mode": "percent"})):
            p = plan(decision(), account, settings)
            assert p is not None
            assert p.margin + p.fees <= balance
            assert p.size > 0


def test_plan_basic_long():
    p = plan(decision(), Account("a", balance=1000), Settings.from_dict({}))
    assert p.side == "LONG"
    assert p.entry == pytest.approx(100.05)
    assert p.stop_loss == 92
    assert p.take_profits == [pytest.approx(110.0)]
    assert p.adjustments == {}
    # risk $4 over an ~8% stop, scaled by confidence 1.2
    assert p.size == pytest.approx(4 / ((100.05 - 92) / 100.05) * 1.2)


def test_stop_is_capped_at_max_distance():
    p = plan(decision(stop=50), Account("a", balance=1000), Settings.from_dict({}))
    assert "stop_capped" in p.adjustments
    assert p.stop_distance_pct == pytest.approx(15)


def test_stop_on_wrong_side_is_moved():
    p = plan(decision(stop=105), Account("a", balance=1000), Settings.from_dict({}))
    assert "stop_wrong_side" in p.adjustments
    assert p.stop_loss < p.entry
    assert p.stop_distance_pct == pytest.approx(2)


def test_wrong_side_offset_respects_a_tight_cap():
    p = plan(decision(stop=105), Account("a", balance=1000), Settings.from_dict({"max_stop_pct": 1}))
    assert p.stop_distance_pct == pytest.approx(1)


def test_short_plan_keeps_stop_above_entry():
    p = plan(decision(stop=108, side="SHORT"), Account("a", balance=1000), Settings.from_dict({}))
    assert p.side == "SHORT"
    assert p.entry < 100
    assert p.stop_loss > p.entry


def test_unplannable_inputs_return_none():
    settings = Settings.from_dict({})
    assert plan(decision(), Account("a", balance=0), settings) is None
    assert plan(decision(), Account("a", balance=math.nan), settings) is None
    assert plan(decision(entry=0), Account("a", balance=1000), settings) is None
    assert plan(None, Account("a", balance=1000), settings) is None


def test_negative_kelly_halves_size():
    settings = Settings.from_dict({})
    plain = Account("a", balance=1000)
    losing = Account("b", balance=1000)
    losing.stats.by_strategy["scalping"] = StrategyStats(
        trades=20, wins=5, total_win_pct=10, total_loss_pct=-150
    )

    base = plan(decision(), plain, settings)
    reduced = plan(decision(), losing, settings)
    assert reduced.size == pytest.approx(base.size * 0.5)


def test_loss_streak_shrinks_size():
    settings = Settings.from_dict({})
    account = Account("a", balance=1000)
    base = plan(decision(), account, settings).size
    account.stats.streak = -3
    assert plan(decision(), account, settings).size == pytest.approx(base * 0.6)


def test_trailing_take_profit_mode():
    settings = Settings.from_dict({"tp_mode": "trailing"})
    p = plan(decision(atr=2.0), Account("a", balance=1000), settings)
    assert p.take_profits == []
    assert p.trailing_tp_distance == pytest.approx(3.0)


def test_multipliers():
    assert confidence_multiplier(None) == pytest.approx(1.0)
    assert confidence_multiplier(0) == pytest.approx(0.5)
    assert confidence_multiplier(100) == pytest.approx(1.2)
    assert streak_multiplier(-2) == 0.75
    assert streak_multiplier(5) == pytest.approx(1.15)
    assert suggest_leverage(90) == 10
    assert suggest_leverage(90, regime="ranging", volatility="high") == 3
