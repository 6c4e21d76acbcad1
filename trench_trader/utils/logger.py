"""
Logging configuration and utilities
"""

import json
import logging
import sys
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional


class ColoredFormatter(logging.Formatter):
    """Colored console output formatter"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        formatted = f"{color}[{timestamp}] {record.levelname:8}{reset} | {record.getMessage()}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class BotLog:
    """
    Bounded per-account activity log

    Keeps the most recent entries for status queries and mirrors every entry
    to the process logger.
    """

    def __init__(self, account_id: str, max_entries: int = 50, logger: logging.Logger = None):
        self.account_id = account_id
        self.entries: deque = deque(maxlen=max_entries)
        self.last_action: Optional[Dict[str, str]] = None
        self._logger = logger or logging.getLogger("trench_trader.bot")
        self._prefix = f"[TrenchBot:{account_id[-6:]}]"

    def add(self, msg: str, level: int = logging.INFO) -> Dict[str, str]:
        """Append an entry and mirror it to the logger"""
        entry = {"time": datetime.now(timezone.utc).isoformat(), "msg": msg}
        self.entries.append(entry)
        self.last_action = entry
        self._logger.log(level, f"{self._prefix} {msg}")
        return entry

    def recent(self, count: int = 30) -> List[Dict[str, str]]:
        """Most recent entries, oldest first"""
        if count <= 0:
            return []
        return list(self.entries)[-count:]

    def __len__(self) -> int:
        return len(self.entries)


class TradeLogger:
    """Specialized logger for trade events"""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.trade_file = self.log_dir / "trades.log"

    def log_trade(self, trade_data: dict) -> None:
        """Log an opened, reduced or closed position"""
        timestamp = datetime.now(timezone.utc).isoformat()
        with open(self.trade_file, 'a') as f:
            f.write(f"{timestamp} | TRADE | {json.dumps(trade_data, default=str)}\n")


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5
) -> logging.Logger:
    """
    Setup logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for file logging
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # aiohttp access noise
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger"""
    return logging.getLogger(name)
