"""
Trench Trader Utilities
"""

from .config_loader import (
    ConfigManager,
    get_config,
    Settings,
    StrategyProfile,
    STRATEGY_PROFILES
)
from .logger import setup_logging, get_logger, BotLog, TradeLogger
from .notifier import Notifier, LogNotifier, NotificationDispatcher

__all__ = [
    "ConfigManager",
    "get_config",
    "Settings",
    "StrategyProfile",
    "STRATEGY_PROFILES",
    "setup_logging",
    "get_logger",
    "BotLog",
    "TradeLogger",
    "Notifier",
    "LogNotifier",
    "NotificationDispatcher"
]
