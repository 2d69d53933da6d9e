# Cancellable Timer Scheduling
# File: scheduler.py

"""
Scheduled-task abstraction for every timed wait in the dashboard core:
reconnect backoff, grace-period removal, the connected-signal debounce,
liveness checks and heart-beats.

Two implementations share the bookkeeping in Scheduler:
    AsyncioScheduler - real timers on the running event loop
    ManualScheduler  - virtual clock, advanced explicitly (replay and tests)

Once a scheduler is closed no callback fires again, which is what keeps a
torn-down session from mutating state.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Optional, Set

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for one pending (or periodic) callback"""

    def __init__(self, scheduler: "Scheduler", due: float, callback: Callable,
                 args: tuple, interval: Optional[float] = None):
        self.scheduler = scheduler
        self.due = due
        self.callback = callback
        self.args = args
        self.interval = interval
        self.cancelled = False
        self.fired = 0
        self._handle = None

    @property
    def active(self) -> bool:
        """True while the task can still fire"""
        if self.cancelled:
            return False
        return self.interval is not None or self.fired == 0

    def cancel(self):
        """Cancel the task; safe to call more than once"""
        if self.cancelled:
            return
        self.cancelled = True
        self.scheduler._discard(self)

    def _run(self):
        if not self.active or self.scheduler.closed:
            return

        self.fired += 1
        if self.interval is None:
            self.scheduler._pending.discard(self)
        try:
            self.callback(*self.args)
        except Exception:
            logger.exception(f"Scheduled callback {_name(self.callback)} failed")

        if self.interval is not None and self.active and not self.scheduler.closed:
            self.due += self.interval
            self.scheduler._arm(self)

    def __repr__(self):
        state = 'cancelled' if self.cancelled else ('periodic' if self.interval else 'pending')
        return f"<ScheduledTask {_name(self.callback)} due={self.due:.3f} {state}>"


class Scheduler:
    """Common bookkeeping; subclasses supply the clock and the arming"""

    def __init__(self):
        self._pending: Set[ScheduledTask] = set()
        self.closed = False

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable, *args) -> ScheduledTask:
        """
        Run callback once after delay seconds

        Args:
            delay: Seconds from now (negative values are treated as 0)
            callback: Plain callable, run on the scheduler's thread of control

        Returns:
            ScheduledTask that can be cancelled
        """
        task = ScheduledTask(self, self.now() + max(delay, 0.0), callback, args)
        return self._register(task)

    def call_every(self, interval: float, callback: Callable, *args) -> ScheduledTask:
        """Run callback every interval seconds, first run one interval from now"""
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = ScheduledTask(self, self.now() + interval, callback, args, interval=interval)
        return self._register(task)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def cancel_all(self):
        """Cancel every pending task; the scheduler stays usable"""
        for task in list(self._pending):
            task.cancel()

    def close(self):
        """Cancel everything and refuse new work"""
        if self.closed:
            return
        count = len(self._pending)
        self.cancel_all()
        self.closed = True
        logger.debug(f"Scheduler closed, {count} pending task(s) cancelled")

    def _register(self, task: ScheduledTask) -> ScheduledTask:
        if self.closed:
            task.cancelled = True
            logger.debug(f"Scheduler closed, dropping {task!r}")
            return task
        self._pending.add(task)
        self._arm(task)
        return task

    def _discard(self, task: ScheduledTask):
        self._pending.discard(task)
        self._disarm(task)

    def _arm(self, task: ScheduledTask):
        raise NotImplementedError

    def _disarm(self, task: ScheduledTask):
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Timers backed by loop.call_later on the session's event loop"""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        if self._loop is None:
            try:
                return self.loop.time()
            except RuntimeError:
                return time.monotonic()
        return self._loop.time()

    def _arm(self, task: ScheduledTask):
        task._handle = self.loop.call_at(task.due, task._run)

    def _disarm(self, task: ScheduledTask):
        if task._handle is not None:
            task._handle.cancel()
            task._handle = None


class ManualScheduler(Scheduler):
    """
    Virtual clock. Nothing fires until advance() moves time forward, so a
    recorded stream can be replayed with exact timing.
    """

    def __init__(self, start: float = 0.0):
        super().__init__()
        self._now = start
        self._heap = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing due callbacks in time order

        Args:
            seconds: Amount of virtual time to elapse

        Returns:
            Number of callbacks fired
        """
        target = self._now + max(seconds, 0.0)
        fired = 0

        while self._heap and self._heap[0][0] <= target:
            due, _, task = heapq.heappop(self._heap)
            if task.cancelled or task.due != due:
                continue
            self._now = due
            task._run()
            fired += 1

        self._now = target
        return fired

    def next_due(self) -> Optional[float]:
        """Time of the earliest live task, or None"""
        live = [due for due, _, task in self._heap if not task.cancelled and task.due == due]
        return min(live) if live else None

    def _arm(self, task: ScheduledTask):
        heapq.heappush(self._heap, (task.due, next(self._counter), task))

    def _disarm(self, task: ScheduledTask):
        # Cancelled entries are skipped lazily in advance()
        pass


def _name(callback: Callable) -> str:
    return getattr(callback, '__qualname__', None) or repr(callback)
