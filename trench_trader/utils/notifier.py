"""
Trade notifications
Best-effort delivery of open/close events to account owners
"""

import asyncio
from typing import Optional, Set
import logging

logger = logging.getLogger(__name__)


class Notifier:
    """Notification sink interface"""

    async def notify(self, account_id: str, title: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notifications to the log (default when no push channel is wired)"""

    async def notify(self, account_id: str, title: str, body: str) -> None:
        logger.info(f"NOTIFY {account_id}: {title} - {body}")


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a Notifier

    Delivery runs in its own task so a slow or failing channel never blocks
    a tick; failures are logged and dropped.
    """

    def __init__(self, notifier: Optional[Notifier] = None, timeout_seconds: float = 10.0):
        self.notifier = notifier or LogNotifier()
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    def send(self, account_id: str, title: str, body: str) -> None:
        """Schedule a notification without waiting for it"""
        task = asyncio.get_running_loop().create_task(self._deliver(account_id, title, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, account_id: str, title: str, body: str) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.notify(account_id, title, body),
                timeout=self.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Notification to {account_id} failed: {e}")

    async def drain(self) -> None:
        """Wait for in-flight notifications (used on shutdown)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
