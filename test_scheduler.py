#!/usr/bin/env python3
"""Scheduled-task abstraction"""

import asyncio

from scheduler import AsyncioScheduler, ManualScheduler


def test_manual_scheduler_fires_in_time_order():
    clock = ManualScheduler()
    fired = []
    clock.call_later(2.0, fired.append, "b")
    clock.call_later(1.0, fired.append, "a")
    clock.call_later(3.0, fired.append, "c")

    assert clock.advance(2.0) == 2
    assert fired == ["a", "b"]
    assert clock.now() == 2.0
    clock.advance(5.0)
    assert fired == ["a", "b", "c"]
    assert clock.pending == 0


def test_cancelled_task_never_fires():
    clock = ManualScheduler()
    fired = []
    task = clock.call_later(1.0, fired.append, "x")
    task.cancel()
    task.cancel()
    clock.advance(10.0)
    assert fired == []
    assert not task.active


def test_periodic_task_repeats_until_cancelled():
    clock = ManualScheduler()
    ticks = []
    task = clock.call_every(10.0, lambda: ticks.append(clock.now()))
    clock.advance(35.0)
    assert ticks == [10.0, 20.0, 30.0]
    task.cancel()
    clock.advance(100.0)
    assert ticks == [10.0, 20.0, 30.0]


def test_close_cancels_everything_and_refuses_new_work():
    clock = ManualScheduler()
    fired = []
    clock.call_later(1.0, fired.append, 1)
    clock.call_every(1.0, fired.append, 2)
    clock.close()

    late = clock.call_later(0.5, fired.append, 3)
    clock.advance(10.0)
    assert fired == []
    assert late.cancelled
    assert clock.pending == 0


def test_failing_callback_does_not_break_the_clock():
    clock = ManualScheduler()
    fired = []

    def boom():
        raise RuntimeError("boom")

    clock.call_later(1.0, boom)
    clock.call_later(2.0, fired.append, "after")
    clock.advance(3.0)
    assert fired == ["after"]


def test_asyncio_scheduler_runs_on_loop():
    async def scenario():
        scheduler = AsyncioScheduler()
        fired = []
        scheduler.call_later(0.01, fired.append, "x")
        cancelled = scheduler.call_later(0.01, fired.append, "y")
        cancelled.cancel()
        await asyncio.sleep(0.05)
        scheduler.close()
        return fired

    assert asyncio.run(scenario()) == ["x"]
