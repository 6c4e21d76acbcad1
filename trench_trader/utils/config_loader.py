"""
Configuration loader and manager
"""

import math
import os
import yaml
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field, asdict
import logging

logger = logging.getLogger(__name__)


SCALPING = "scalping"
MEMECOIN = "memecoin"

PAUSE_STOP_ALL = "stop_all"
PAUSE_EXITS_ONLY = "exits_only"


@dataclass(frozen=True)
class StrategyProfile:
    """Loop timing and candidate selection parameters of a strategy"""
    name: str
    exit_interval_seconds: float
    entry_interval_seconds: float
    cache_ttl_seconds: float
    momentum_window_seconds: float
    momentum_min_pct: float
    min_score: float
    fresh_drop_skip_pct: float


STRATEGY_PROFILES: Dict[str, StrategyProfile] = {
    # Scalping: 5m momentum, 45s confirmation, 8-12% targets
    SCALPING: StrategyProfile(
        name=SCALPING,
        exit_interval_seconds=5,
        entry_interval_seconds=45,
        cache_ttl_seconds=45,
        momentum_window_seconds=45,
        momentum_min_pct=0.5,
        min_score=75,
        fresh_drop_skip_pct=1.0
    ),
    # Memecoin: pump-start detection, flat-or-up confirmation, 1-3% targets
    MEMECOIN: StrategyProfile(
        name=MEMECOIN,
        exit_interval_seconds=3,
        entry_interval_seconds=25,
        cache_ttl_seconds=25,
        momentum_window_seconds=20,
        momentum_min_pct=0.0,
        min_score=5,
        fresh_drop_skip_pct=1.0
    ),
}

_INT_FIELDS = {"max_open_positions", "consecutive_losses_to_pause", "leverage"}

_FLAG_DEFAULTS = {
    "use_entry_filters": True,
    "use_trailing_stop": True,
    "use_breakeven_stop": True,
    "use_partial_tp": False,
}


def _clamp_table(memecoin: bool) -> Dict[str, Tuple[float, float, float]]:
    """field -> (min, max, default) for one strategy"""
    return {
        "stop_loss_pct": (1, 30, 2 if memecoin else 8),
        "take_profit_pct": (1, 5, 2) if memecoin else (5, 50, 10),
        "max_hold_minutes": (2, 5, 4) if memecoin else (5, 15, 10),
        "max_open_positions": (1, 15, 3),
        "consecutive_losses_to_pause": (2, 10, 3),
        "cooldown_hours": (0.25, 4, 1),
        "max_price_change_24h_pct": (100, 1000, 500),
        "min_liquidity_usd": (25_000, 100_000, 25_000),
        "max_top10_holders_pct": (50, 100, 80),
        "max_daily_loss_pct": (5, 50, 15),
        "trailing_stop_pct": (1, 20, 2 if memecoin else 5),
        "breakeven_at_pct": (1, 15, 1 if memecoin else 3),
        "breakeven_lock_pct": (0, 3, 1.5),
        "amount_per_trade_usd": (5, 500, 50),
        "amount_per_trade_sol": (0.01, 1, 0.05),
        "partial_tp_fraction": (0.1, 0.9, 0.4),
        "risk_percent": (0.1, 10, 2),
        "leverage": (1, 10, 1),
        "max_balance_pct_per_trade": (5, 100, 25),
        "max_stop_pct": (1, 50, 15),
        "maker_fee_pct": (0, 1, 0.1),
    }


def _clamp(name: str, value: Any, low: float, high: float, default: float) -> float:
    """Clamp a raw numeric setting, falling back to the default when unusable"""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Setting {name}={value!r} is not numeric, using {default}")
        return default
    if not math.isfinite(number):
        return default

    clamped = min(max(number, low), high)
    if clamped != number:
        logger.debug(f"Setting {name} clamped from {number} to {clamped}")
    if name in _INT_FIELDS:
        return int(round(clamped))
    return clamped


def _choice(value: Any, allowed: Tuple[str, ...], default: str) -> str:
    if isinstance(value, str) and value.lower() in allowed:
        return value.lower()
    return default


@dataclass(frozen=True)
class Settings:
    """
    Validated per-account bot settings

    Built once through from_dict(); every numeric field is clamped to its
    documented range there and consumed as-is afterwards.
    """
    strategy: str = SCALPING
    stop_loss_pct: float = 8.0
    take_profit_pct: float = 10.0
    max_hold_minutes: float = 10.0
    max_open_positions: int = 3
    consecutive_losses_to_pause: int = 3
    cooldown_hours: float = 1.0
    max_price_change_24h_pct: float = 500.0
    min_liquidity_usd: float = 25_000.0
    max_top10_holders_pct: float = 80.0
    max_daily_loss_pct: float = 15.0
    trailing_stop_pct: float = 5.0
    breakeven_at_pct: float = 3.0
    breakeven_lock_pct: float = 1.5
    amount_per_trade_usd: float = 50.0
    amount_per_trade_sol: float = 0.05
    partial_tp_at_pct: float = 5.0
    partial_tp_fraction: float = 0.4
    risk_mode: str = "dollar"
    risk_percent: float = 2.0
    risk_dollars_per_trade: float = 4.0
    leverage: int = 1
    max_balance_pct_per_trade: float = 25.0
    max_stop_pct: float = 15.0
    maker_fee_pct: float = 0.1
    tp_mode: str = "fixed"
    use_entry_filters: bool = True
    use_trailing_stop: bool = True
    use_breakeven_stop: bool = True
    use_partial_tp: bool = False

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]] = None) -> "Settings":
        """
        Build settings from raw (user or YAML) values

        Out-of-range values are silently corrected, never rejected.

        Args:
            raw: Raw settings mapping, may be partial or contain junk

        Returns:
            Clamped Settings instance
        """
        raw = dict(raw or {})

        strategy = str(raw.get("strategy") or SCALPING).lower()
        if strategy not in STRATEGY_PROFILES:
            logger.warning(f"Unknown strategy '{strategy}', using {SCALPING}")
            strategy = SCALPING

        values: Dict[str, Any] = {"strategy": strategy}
        for name, (low, high, default) in _clamp_table(strategy == MEMECOIN).items():
            values[name] = _clamp(name, raw.get(name), low, high, default)

        # Defaults derived from other clamped fields
        values["partial_tp_at_pct"] = _clamp(
            "partial_tp_at_pct", raw.get("partial_tp_at_pct"),
            0.5, 50, values["take_profit_pct"] / 2
        )
        values["risk_dollars_per_trade"] = _clamp(
            "risk_dollars_per_trade", raw.get("risk_dollars_per_trade"),
            0.5, 500, values["amount_per_trade_usd"] * values["stop_loss_pct"] / 100
        )

        values["risk_mode"] = _choice(raw.get("risk_mode"), ("dollar", "percent"), "dollar")
        values["tp_mode"] = _choice(raw.get("tp_mode"), ("fixed", "trailing"), "fixed")

        for flag, default in _FLAG_DEFAULTS.items():
            value = raw.get(flag)
            values[flag] = default if value is None else bool(value)

        return cls(**values)

    @property
    def profile(self) -> StrategyProfile:
        """Timing profile of the configured strategy"""
        return STRATEGY_PROFILES[self.strategy]

    @property
    def is_memecoin(self) -> bool:
        return self.strategy == MEMECOIN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderConfig:
    """Market data and swap provider configuration"""
    chain: str = "solana"
    dexscreener_url: str = "https://api.dexscreener.com"
    mobula_url: Optional[str] = None
    mobula_api_key: str = ""
    request_timeout_seconds: float = 10.0
    swap_timeout_seconds: float = 30.0
    candidate_timeout_seconds: float = 45.0
    candidate_limit: int = 150


@dataclass
class ServiceConfig:
    """Bot service behaviour shared by every account"""
    pause_policy: str = PAUSE_STOP_ALL
    max_buys_per_scan: int = 2
    max_candidates_per_scan: int = 300
    paper_slippage: float = 0.008
    cooldown_loss_multiplier: float = 4.0
    momentum_max_age_seconds: float = 600.0
    log_entries: int = 50
    status_log_entries: int = 30
    max_consecutive_errors: int = 5
    error_cooldown_seconds: int = 60
    initial_paper_balance: float = 1000.0


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    max_size_mb: int = 100
    backup_count: int = 5
    trade_log_dir: str = "logs"


@dataclass
class AccountConfig:
    """Account seed definition from the config file"""
    account_id: str
    mode: str = "paper"
    balance: float = 1000.0
    enabled: bool = True
    wallet_address: str = ""
    sealed_key: str = ""
    blacklist: List[str] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)


class ConfigManager:
    """Manages system configuration"""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or self._find_config()
        self._raw_config: Dict = {}
        self._load_config()

    def _find_config(self) -> str:
        """Find configuration file"""
        possible_paths = [
            "config/settings.yaml",
            "../config/settings.yaml",
            "settings.yaml",
            os.path.expanduser("~/.trench_trader/settings.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return "config/settings.yaml"

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r') as f:
                    self._raw_config = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.config_path}")
            else:
                logger.warning(f"Config file not found: {self.config_path}, using defaults")
                self._raw_config = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config: {e}")
            self._raw_config = {}

    def _resolve_env_vars(self, value: Any) -> Any:
        """Resolve environment variables in config values"""
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            env_var = value[2:-1]
            return os.getenv(env_var, "")
        return value

    @property
    def vault_secret(self) -> str:
        """Server-side secret used to seal bot wallet keys"""
        creds = self._raw_config.get("credentials", {})
        return self._resolve_env_vars(creds.get("vault_secret", "${TRENCH_SECRET}"))

    @property
    def database_path(self) -> str:
        """SQLite database location"""
        return self._raw_config.get("database", {}).get("path", "data/trench_trader.db")

    @property
    def providers(self) -> ProviderConfig:
        """Get provider configuration"""
        cfg = self._raw_config.get("providers", {})
        return ProviderConfig(
            chain=cfg.get("chain", "solana"),
            dexscreener_url=cfg.get("dexscreener_url", "https://api.dexscreener.com"),
            mobula_url=cfg.get("mobula_url"),
            mobula_api_key=self._resolve_env_vars(cfg.get("mobula_api_key", "${MOBULA_API_KEY}")),
            request_timeout_seconds=cfg.get("request_timeout_seconds", 10.0),
            swap_timeout_seconds=cfg.get("swap_timeout_seconds", 30.0),
            candidate_timeout_seconds=cfg.get("candidate_timeout_seconds", 45.0),
            candidate_limit=cfg.get("candidate_limit", 150)
        )

    @property
    def service(self) -> ServiceConfig:
        """Get bot service configuration"""
        cfg = self._raw_config.get("service", {})
        pause_policy = cfg.get("pause_policy", PAUSE_STOP_ALL)
        if pause_policy not in (PAUSE_STOP_ALL, PAUSE_EXITS_ONLY):
            logger.warning(f"Unknown pause_policy '{pause_policy}', using {PAUSE_STOP_ALL}")
            pause_policy = PAUSE_STOP_ALL

        return ServiceConfig(
            pause_policy=pause_policy,
            max_buys_per_scan=cfg.get("max_buys_per_scan", 2),
            max_candidates_per_scan=cfg.get("max_candidates_per_scan", 300),
            paper_slippage=cfg.get("paper_slippage", 0.008),
            cooldown_loss_multiplier=cfg.get("cooldown_loss_multiplier", 4.0),
            momentum_max_age_seconds=cfg.get("momentum_max_age_seconds", 600.0),
            log_entries=cfg.get("log_entries", 50),
            status_log_entries=cfg.get("status_log_entries", 30),
            max_consecutive_errors=cfg.get("max_consecutive_errors", 5),
            error_cooldown_seconds=cfg.get("error_cooldown_seconds", 60),
            initial_paper_balance=cfg.get("initial_paper_balance", 1000.0)
        )

    @property
    def logging_config(self) -> LoggingConfig:
        """Get logging configuration"""
        cfg = self._raw_config.get("logging", {})
        return LoggingConfig(
            level=cfg.get("level", "INFO"),
            file=cfg.get("file"),
            max_size_mb=cfg.get("max_size_mb", 100),
            backup_count=cfg.get("backup_count", 5),
            trade_log_dir=cfg.get("trade_log_dir", "logs")
        )

    @property
    def accounts(self) -> List[AccountConfig]:
        """Get account seed definitions"""
        accounts = []
        for cfg in self._raw_config.get("accounts", []) or []:
            if not cfg.get("id"):
                logger.warning(f"Skipping account without id: {cfg}")
                continue
            accounts.append(AccountConfig(
                account_id=str(cfg["id"]),
                mode=cfg.get("mode", "paper"),
                balance=cfg.get("balance", self.service.initial_paper_balance),
                enabled=cfg.get("enabled", True),
                wallet_address=cfg.get("wallet_address", ""),
                sealed_key=self._resolve_env_vars(cfg.get("sealed_key", "")),
                blacklist=list(cfg.get("blacklist", []) or []),
                settings=dict(cfg.get("settings", {}) or {})
            ))
        return accounts

    def get_account(self, account_id: str) -> Optional[AccountConfig]:
        """Get a single account definition"""
        for account in self.accounts:
            if account.account_id == account_id:
                return account
        return None


# Global config instance
_config: Optional[ConfigManager] = None


def get_config(config_path: str = None) -> ConfigManager:
    """Get or create global configuration manager"""
    global _config
    if _config is None or config_path is not None:
        _config = ConfigManager(config_path)
    return _config
