import math

from trench_trader.utils.config_loader import (
    ConfigManager,
    Settings,
    STRATEGY_PROFILES,
    PAUSE_STOP_ALL,
)


def test_defaults_are_scalping():
    s = Settings.from_dict({})
    assert s.strategy == "scalping"
    assert s.stop_loss_pct == 8
    assert s.take_profit_pct == 10
    assert s.max_hold_minutes == 10
    assert s.trailing_stop_pct == 5
    assert s.partial_tp_at_pct == 5
    assert s.risk_dollars_per_trade == 4
    assert s.profile is STRATEGY_PROFILES["scalping"]


def test_memecoin_defaults_and_ranges():
    s = Settings.from_dict({"strategy": "MEMECOIN", "take_profit_pct": 12, "max_hold_minutes": 1})
    assert s.is_memecoin
    assert s.stop_loss_pct == 2
    assert s.take_profit_pct == 5
    assert s.max_hold_minutes == 2
    assert s.breakeven_at_pct == 1
    assert s.profile.min_score == 5


def test_out_of_range_values_are_clamped():
    s = Settings.from_dict({
        "stop_loss_pct": 100,
        "take_profit_pct": -3,
        "cooldown_hours": 0,
        "min_liquidity_usd": 1_000_000,
        "max_open_positions": 3.6,
    })
    assert s.stop_loss_pct == 30
    assert s.take_profit_pct == 5
    assert s.cooldown_hours == 0.25
    assert s.min_liquidity_usd == 100_000
    assert s.max_open_positions == 4
    assert isinstance(s.max_open_positions, int)


def test_junk_values_fall_back_to_defaults():
    s = Settings.from_dict({
        "stop_loss_pct": "abc",
        "take_profit_pct": math.nan,
        "trailing_stop_pct": None,
        "leverage": True,
        "risk_mode": "yolo",
        "tp_mode": 3,
        "strategy": "grid",
    })
    assert s.strategy == "scalping"
    assert s.stop_loss_pct == 8
    assert s.take_profit_pct == 10
    assert s.trailing_stop_pct == 5
    assert s.leverage == 1
    assert s.risk_mode == "dollar"
    assert s.tp_mode == "fixed"


def test_settings_survive_a_dict_round_trip():
    s = Settings.from_dict({"strategy": "memecoin", "amount_per_trade_usd": 25, "use_partial_tp": True})
    assert Settings.from_dict(s.to_dict()) == s


def test_config_manager_reads_yaml_and_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_MOBULA_KEY", "key-123")
    monkeypatch.setenv("TEST_VAULT", "vault-secret")
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
credentials:
  vault_secret: ${TEST_VAULT}
database:
  path: /tmp/x.db
providers:
  mobula_api_key: ${TEST_MOBULA_KEY}
  candidate_limit: 40
service:
  pause_policy: sometimes
  max_buys_per_scan: 1
accounts:
  - id: alice
    mode: paper
    balance: 500
    settings:
      strategy: memecoin
  - mode: paper
"""
    )

    config = ConfigManager(str(path))
    assert config.vault_secret == "vault-secret"
    assert config.database_path == "/tmp/x.db"
    assert config.providers.mobula_api_key == "key-123"
    assert config.providers.candidate_limit == 40
    assert config.service.pause_policy == PAUSE_STOP_ALL
    assert config.service.max_buys_per_scan == 1

    accounts = config.accounts
    assert [a.account_id for a in accounts] == ["alice"]
    assert accounts[0].balance == 500
    assert config.get_account("alice").settings == {"strategy": "memecoin"}
    assert config.get_account("bob") is None


def test_missing_config_file_uses_defaults(tmp_path):
    config = ConfigManager(str(tmp_path / "nope.yaml"))
    assert config.accounts == []
    assert config.providers.chain == "solana"
    assert config.service.max_buys_per_scan == 2
