import asyncio

import pytest

from trench_trader.core.scheduler import AccountScheduler, LoopType, SchedulerConfig
from trench_trader.utils.config_loader import STRATEGY_PROFILES


def test_config_from_profile():
    config = SchedulerConfig.from_profile(STRATEGY_PROFILES["memecoin"], max_consecutive_errors=3)
    assert config.exit_interval_seconds == 3
    assert config.entry_interval_seconds == 25
    assert config.max_consecutive_errors == 3


@pytest.mark.asyncio
async def test_busy_loop_skips_instead_of_queueing():
    scheduler = AccountScheduler("acct")
    gate = asyncio.Event()
    runs = []

    async def entry():
        runs.append("entry")
        await gate.wait()
        return {"ok": True}

    async def exit_():
        runs.append("exit")
        return None

    scheduler.set_entry_callback(entry)
    scheduler.set_exit_callback(exit_)

    first = asyncio.create_task(scheduler.run_once(LoopType.ENTRY))
    await asyncio.sleep(0)
    assert await scheduler.run_once(LoopType.ENTRY) is None
    # The exit loop is independent of a busy entry loop
    assert await scheduler.run_once(LoopType.EXIT) == {}

    gate.set()
    assert await first == {"ok": True}
    assert runs == ["entry", "exit"]
    assert scheduler.stats[LoopType.ENTRY].skipped == 1
    assert scheduler.stats[LoopType.ENTRY].iterations == 1


@pytest.mark.asyncio
async def test_repeated_errors_trigger_cooldown():
    scheduler = AccountScheduler("acct", SchedulerConfig(max_consecutive_errors=2, error_cooldown_seconds=60))
    calls = []
    errors = []

    async def failing():
        calls.append(1)
        raise RuntimeError("provider exploded")

    async def on_error(loop_type, error):
        errors.append((loop_type, str(error)))

    scheduler.set_entry_callback(failing)
    scheduler.set_error_callback(on_error)

    assert await scheduler.run_once(LoopType.ENTRY) is None
    assert await scheduler.run_once(LoopType.ENTRY) is None
    assert await scheduler.run_once(LoopType.ENTRY) is None

    assert len(calls) == 2
    assert errors == [(LoopType.ENTRY, "provider exploded")] * 2
    stats = scheduler.get_stats()["entry_loop"]
    assert stats["errors"] == 2
    assert stats["in_cooldown"]


@pytest.mark.asyncio
async def test_timers_fire_until_stopped():
    scheduler = AccountScheduler(
        "acct",
        SchedulerConfig(exit_interval_seconds=0.01, entry_interval_seconds=0.01, run_entry_immediately=False)
    )
    counts = {"exit": 0, "entry": 0}

    async def exit_():
        counts["exit"] += 1

    async def entry():
        counts["entry"] += 1

    scheduler.set_exit_callback(exit_)
    scheduler.set_entry_callback(entry)

    await scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()
    await scheduler.wait_idle()

    assert counts["exit"] > 0
    assert counts["entry"] > 0
    frozen = dict(counts)
    await asyncio.sleep(0.05)
    assert counts == frozen
    assert not scheduler.is_loop_running(LoopType.EXIT)


@pytest.mark.asyncio
async def test_start_fires_entry_immediately_and_loops_can_stop_independently():
    scheduler = AccountScheduler("acct", SchedulerConfig(exit_interval_seconds=60, entry_interval_seconds=60))
    ran = asyncio.Event()

    async def entry():
        ran.set()

    scheduler.set_entry_callback(entry)
    await scheduler.start()
    await asyncio.wait_for(ran.wait(), timeout=1)

    scheduler.stop_loop(LoopType.ENTRY)
    assert not scheduler.is_loop_running(LoopType.ENTRY)
    assert scheduler.is_loop_running(LoopType.EXIT)

    await scheduler.stop()
    assert not scheduler.is_loop_running(LoopType.EXIT)
