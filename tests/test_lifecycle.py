from datetime import datetime, timedelta, timezone

import pytest

from trench_trader.core.lifecycle import adaptive_trail, breakeven_lock, evaluate
from trench_trader.core.models import Position
from trench_trader.utils.config_loader import Settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def settings(**overrides):
    raw = {
        "stop_loss_pct": 8,
        "take_profit_pct": 10,
        "breakeven_at_pct": 5,
        "trailing_stop_pct": 8,
        "max_hold_minutes": 10,
    }
    raw.update(overrides)
    return Settings.from_dict(raw)


def position(minutes_ago=0.0, **kwargs):
    return Position(
        account_id="acct", asset_id="TOKEN", entry_price=100.0, quantity=1.0,
        cost_basis=100.0, opened_at=NOW - timedelta(minutes=minutes_ago), **kwargs
    )


def test_stop_loss():
    d = evaluate(position(), 92.0, settings(), NOW)
    assert d.exit
    assert d.reason == "stop_loss"
    assert d.pnl_pct == pytest.approx(-8)


def test_take_profit():
    d = evaluate(position(), 110.0, settings(), NOW)
    assert d.exit
    assert d.reason == "take_profit"


def test_breakeven_arms_then_exits_on_retrace():
    pos = position()
    up = evaluate(pos, 106.0, settings(), NOW)
    assert not up.exit
    assert up.arm_breakeven
    assert up.updated_peak == 106.0

    pos.peak_price = up.updated_peak
    pos.breakeven_armed = True
    down = evaluate(pos, 101.0, settings(), NOW)
    assert down.exit
    assert down.reason == "breakeven_stop"


def test_breakeven_lock_band():
    assert breakeven_lock(settings()) == 1.5
    assert breakeven_lock(settings(breakeven_at_pct=2)) == 1.0


def test_peak_never_decreases():
    pos = position(peak_price=103.0)
    d = evaluate(pos, 101.0, settings(), NOW)
    assert not d.exit
    assert d.updated_peak == 103.0

    higher = evaluate(pos, 104.0, settings(), NOW)
    assert higher.updated_peak == 104.0


def test_invalid_price_holds():
    d = evaluate(position(peak_price=105.0), 0, settings(), NOW)
    assert not d.exit
    assert d.updated_peak == 105.0


def test_trailing_stop_uses_adaptive_width():
    d = evaluate(position(peak_price=120.0), 105.0, settings(), NOW)
    assert d.exit
    assert d.reason == "trailing_stop(8%)"


def test_adaptive_trail():
    assert adaptive_trail(3, 8) == 5
    assert adaptive_trail(12, 8) == 8
    assert adaptive_trail(25, 3) == 8


def test_early_bail_after_half_hold():
    d = evaluate(position(minutes_ago=6), 98.0, settings(), NOW)
    assert d.exit
    assert d.reason == "early_bail"


def test_time_limit():
    d = evaluate(position(minutes_ago=11), 101.0, settings(), NOW)
    assert d.exit
    assert d.reason == "time_limit"


def test_hard_time_limit_exits_winners_too():
    d = evaluate(position(minutes_ago=21), 104.0, settings(), NOW)
    assert d.exit
    assert d.reason == "time_limit_hard"


def test_partial_take_profit_fires_once():
    s = settings(use_partial_tp=True)
    pos = position()
    first = evaluate(pos, 106.0, s, NOW)
    assert not first.exit
    assert first.partial
    assert first.partial_fraction == pytest.approx(0.4)

    pos.partial_sold = 0.4
    second = evaluate(pos, 106.0, s, NOW)
    assert not second.partial
