"""
Dual-Loop Account Scheduler
Runs the fast exit loop and the slower entry loop of one bot
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
import logging

from ..utils.config_loader import StrategyProfile

logger = logging.getLogger(__name__)


class LoopType(Enum):
    """Loop type identifiers"""
    EXIT = "exit"       # Fast position monitor
    ENTRY = "entry"     # Candidate scan and buys


@dataclass
class LoopStats:
    """Statistics for a loop"""
    loop_type: LoopType
    iterations: int = 0
    skipped: int = 0
    errors: int = 0
    last_run: Optional[datetime] = None
    avg_duration_ms: float = 0.0
    total_duration_ms: float = 0.0


@dataclass
class SchedulerConfig:
    """Scheduler configuration"""
    exit_interval_seconds: float = 5.0
    entry_interval_seconds: float = 45.0
    run_entry_immediately: bool = True
    max_consecutive_errors: int = 5
    error_cooldown_seconds: int = 60

    @classmethod
    def from_profile(
        cls,
        profile: StrategyProfile,
        max_consecutive_errors: int = 5,
        error_cooldown_seconds: int = 60
    ) -> "SchedulerConfig":
        return cls(
            exit_interval_seconds=profile.exit_interval_seconds,
            entry_interval_seconds=profile.entry_interval_seconds,
            max_consecutive_errors=max_consecutive_errors,
            error_cooldown_seconds=error_cooldown_seconds
        )


TickCallback = Callable[[], Awaitable[Optional[Dict]]]


class AccountScheduler:
    """
    Dual-loop scheduler for one account

    Manages two independent loops:

    1. EXIT LOOP (every few seconds):
       - Price the open positions
       - Evaluate exits and lifecycle updates

    2. ENTRY LOOP (every 25-45 seconds):
       - Refresh candidates
       - Momentum confirmation, sizing and buys

    Timers only fire ticks; each tick runs as its own task. A tick that
    fires while the previous tick of the same loop is still running is
    skipped, never queued. Stopping cancels the timers and lets in-flight
    ticks finish.
    """

    def __init__(self, name: str, config: SchedulerConfig = None):
        self.name = name
        self.config = config or SchedulerConfig()

        self.running = False

        # Tasks
        self._timers: Dict[LoopType, Optional[asyncio.Task]] = {
            LoopType.EXIT: None,
            LoopType.ENTRY: None
        }
        self._ticks: Set[asyncio.Task] = set()

        # Callbacks
        self._callbacks: Dict[LoopType, Optional[TickCallback]] = {
            LoopType.EXIT: None,
            LoopType.ENTRY: None
        }
        self._error_callback: Optional[Callable] = None

        # Statistics
        self.stats = {
            LoopType.EXIT: LoopStats(loop_type=LoopType.EXIT),
            LoopType.ENTRY: LoopStats(loop_type=LoopType.ENTRY)
        }

        # Error tracking
        self._consecutive_errors = {
            LoopType.EXIT: 0,
            LoopType.ENTRY: 0
        }
        self._error_cooldown_until: Dict[LoopType, Optional[datetime]] = {
            LoopType.EXIT: None,
            LoopType.ENTRY: None
        }

        # One lock per loop: exits never wait on a slow entry scan
        self._locks = {
            LoopType.EXIT: asyncio.Lock(),
            LoopType.ENTRY: asyncio.Lock()
        }

    def set_exit_callback(self, callback: TickCallback) -> None:
        """Set callback for exit loop iteration"""
        self._callbacks[LoopType.EXIT] = callback

    def set_entry_callback(self, callback: TickCallback) -> None:
        """Set callback for entry loop iteration"""
        self._callbacks[LoopType.ENTRY] = callback

    def set_error_callback(self, callback: Callable) -> None:
        """Set callback for error handling"""
        self._error_callback = callback

    def _interval(self, loop_type: LoopType) -> float:
        if loop_type == LoopType.EXIT:
            return self.config.exit_interval_seconds
        return self.config.entry_interval_seconds

    async def start(self) -> None:
        """Arm both timers, optionally firing an entry tick right away"""
        if self.running:
            logger.warning(f"Scheduler {self.name} already running")
            return

        self.running = True
        logger.info(
            f"Starting scheduler {self.name}: "
            f"exit={self.config.exit_interval_seconds}s, "
            f"entry={self.config.entry_interval_seconds}s"
        )

        if self.config.run_entry_immediately:
            self.fire(LoopType.ENTRY)
        for loop_type in LoopType:
            self.start_loop(loop_type)

    def start_loop(self, loop_type: LoopType) -> None:
        """Arm a single loop timer"""
        timer = self._timers.get(loop_type)
        if timer and not timer.done():
            return
        self._timers[loop_type] = asyncio.create_task(self._timer(loop_type))

    def stop_loop(self, loop_type: LoopType) -> None:
        """Cancel a single loop timer, the other loop keeps running"""
        timer = self._timers.get(loop_type)
        if timer and not timer.done():
            timer.cancel()
        self._timers[loop_type] = None
        logger.info(f"Scheduler {self.name}: {loop_type.value} loop stopped")

    def is_loop_running(self, loop_type: LoopType) -> bool:
        timer = self._timers.get(loop_type)
        return timer is not None and not timer.done()

    async def stop(self) -> None:
        """Cancel both timers; in-flight ticks run to completion"""
        self.running = False

        timers = [t for t in self._timers.values() if t and not t.done()]
        for timer in timers:
            timer.cancel()
        for timer in timers:
            try:
                await timer
            except asyncio.CancelledError:
                pass
        self._timers = {loop_type: None for loop_type in LoopType}

        logger.info(f"Scheduler {self.name} stopped")

    async def wait_idle(self) -> None:
        """Wait for in-flight ticks to finish"""
        while self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

    async def _timer(self, loop_type: LoopType) -> None:
        interval = self._interval(loop_type)
        while self.running:
            await asyncio.sleep(interval)
            if self.running:
                self.fire(loop_type)

    def fire(self, loop_type: LoopType) -> asyncio.Task:
        """Run one tick as a background task"""
        task = asyncio.create_task(self.run_once(loop_type))
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def run_once(self, loop_type: LoopType) -> Optional[Dict]:
        """
        Run a single iteration of a loop

        Returns:
            Callback result, or None when the tick was skipped or failed
        """
        callback = self._callbacks.get(loop_type)
        if callback is None:
            return None

        lock = self._locks[loop_type]
        if lock.locked():
            self.stats[loop_type].skipped += 1
            logger.debug(f"{self.name} {loop_type.value} tick skipped, previous tick still running")
            return None

        if self._in_cooldown(loop_type):
            self.stats[loop_type].skipped += 1
            return None

        async with lock:
            start_time = datetime.now(timezone.utc)
            try:
                result = await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._handle_error(loop_type, e)
                return None

            # Reset error count on success
            self._consecutive_errors[loop_type] = 0
            self._update_stats(loop_type, start_time)
            return result or {}

    def _in_cooldown(self, loop_type: LoopType) -> bool:
        """Check if loop is in error cooldown"""
        cooldown_until = self._error_cooldown_until.get(loop_type)
        if cooldown_until and datetime.now(timezone.utc) < cooldown_until:
            return True
        return False

    def _update_stats(self, loop_type: LoopType, start_time: datetime) -> None:
        """Update loop statistics"""
        stats = self.stats[loop_type]

        duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        stats.iterations += 1
        stats.last_run = datetime.now(timezone.utc)
        stats.total_duration_ms += duration_ms
        stats.avg_duration_ms = stats.total_duration_ms / stats.iterations

    async def _handle_error(self, loop_type: LoopType, error: Exception) -> None:
        """Handle loop error"""
        self._consecutive_errors[loop_type] += 1
        self.stats[loop_type].errors += 1

        logger.error(
            f"{self.name} {loop_type.value} loop error "
            f"({self._consecutive_errors[loop_type]}): {error}"
        )

        # Check if we need cooldown
        if self._consecutive_errors[loop_type] >= self.config.max_consecutive_errors:
            cooldown = timedelta(seconds=self.config.error_cooldown_seconds)
            self._error_cooldown_until[loop_type] = datetime.now(timezone.utc) + cooldown
            self._consecutive_errors[loop_type] = 0
            logger.warning(
                f"{self.name} {loop_type.value} loop entering cooldown for "
                f"{self.config.error_cooldown_seconds}s"
            )

        if self._error_callback:
            try:
                await self._error_callback(loop_type, error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def get_stats(self) -> Dict:
        """Get scheduler statistics"""
        def loop_stats(loop_type: LoopType) -> Dict:
            stats = self.stats[loop_type]
            return {
                "running": self.is_loop_running(loop_type),
                "iterations": stats.iterations,
                "skipped": stats.skipped,
                "errors": stats.errors,
                "avg_duration_ms": stats.avg_duration_ms,
                "last_run": stats.last_run.isoformat() if stats.last_run else None,
                "in_cooldown": self._in_cooldown(loop_type)
            }

        return {
            "running": self.running,
            "exit_loop": loop_stats(LoopType.EXIT),
            "entry_loop": loop_stats(LoopType.ENTRY),
            "config": {
                "exit_interval_seconds": self.config.exit_interval_seconds,
                "entry_interval_seconds": self.config.entry_interval_seconds
            }
        }
