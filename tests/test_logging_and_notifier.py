import json
import logging

import pytest

from trench_trader.utils.logger import BotLog, TradeLogger
from trench_trader.utils.notifier import NotificationDispatcher, Notifier


def test_bot_log_is_bounded_and_mirrored(caplog):
    log = BotLog("account-123456", max_entries=3)
    with caplog.at_level(logging.INFO, logger="trench_trader.bot"):
        for i in range(5):
            log.add(f"event {i}")

    assert len(log) == 3
    assert [e["msg"] for e in log.recent(10)] == ["event 2", "event 3", "event 4"]
    assert log.recent(0) == []
    assert log.last_action["msg"] == "event 4"
    assert "[TrenchBot:123456] event 4" in caplog.text


def test_trade_logger_appends_json_lines(tmp_path):
    trade_logger = TradeLogger(str(tmp_path / "logs"))
    trade_logger.log_trade({"event": "open", "symbol": "PUMP"})
    trade_logger.log_trade({"event": "close", "symbol": "PUMP", "pnl": 1.5})

    lines = (tmp_path / "logs" / "trades.log").read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1].split(" | TRADE | ")[1]) == {"event": "close", "symbol": "PUMP", "pnl": 1.5}


class BrokenNotifier(Notifier):
    async def notify(self, account_id, title, body):
        raise ConnectionError("push service down")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def notify(self, account_id, title, body):
        self.sent.append((account_id, title, body))


@pytest.mark.asyncio
async def test_notifications_are_best_effort(caplog):
    dispatcher = NotificationDispatcher(BrokenNotifier())
    dispatcher.send("acct", "Trench BUY PUMP", "$50")
    await dispatcher.drain()
    assert "Notification to acct failed" in caplog.text


@pytest.mark.asyncio
async def test_notifications_are_delivered():
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.send("acct", "Trench SELL PUMP", "PnL: $1.50")
    await dispatcher.drain()
    assert notifier.sent == [("acct", "Trench SELL PUMP", "PnL: $1.50")]
