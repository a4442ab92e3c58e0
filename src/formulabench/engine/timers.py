# src/formulabench/engine/timers.py
"""Timer scheduling for debounce and auto-trigger delays.

The pipeline never sleeps itself; it asks a Scheduler to run a callback
after a delay. Callbacks may be plain functions or coroutine functions.

Implementations:
- AsyncioScheduler: loop.call_later on the running event loop (production)
- ManualScheduler: fires callbacks when a test advances its MockClock

KeyedTimers layers "at most one pending timer per key" on top of either,
which is how per-row debouncing and auto-trigger scheduling are expressed.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from formulabench.engine.clock import MockClock

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Runs callbacks after a delay."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Schedule ``callback`` to run ``delay`` seconds from now."""
        ...

    async def drain(self) -> None:
        """Wait until every callback that already fired has finished."""
        ...


class _AsyncioHandle:
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop.

    Coroutine callbacks become tasks; the scheduler keeps a reference to
    each task until it finishes so it is not garbage collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return _AsyncioHandle(loop.call_later(max(delay, 0.0), self._run, callback))

    def _run(self, callback: TimerCallback) -> None:
        outcome = callback()
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Timer callback failed", error=str(exc), error_type=type(exc).__name__, exc_info=exc)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


@dataclass(order=True)
class _ManualTimer:
    due: float
    seq: int
    callback: TimerCallback = field(compare=False)
    is_cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.is_cancelled = True

    def cancelled(self) -> bool:
        return self.is_cancelled


class ManualScheduler:
    """Deterministic scheduler driven by a MockClock.

    Nothing fires until advance() is awaited. Due callbacks run in
    (due time, scheduling order), with the clock set to each callback's due
    time while it runs; coroutine callbacks are awaited before the next one
    fires.

    Example:
        clock = MockClock()
        scheduler = ManualScheduler(clock)
        scheduler.call_later(0.3, flush)
        await scheduler.advance(0.29)   # nothing yet
        await scheduler.advance(0.01)   # flush() runs at t=0.3
    """

    def __init__(self, clock: MockClock) -> None:
        self._clock = clock
        self._queue: list[_ManualTimer] = []
        self._seq = 0

    @property
    def clock(self) -> MockClock:
        return self._clock

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        self._seq += 1
        timer = _ManualTimer(due=self._clock.monotonic() + max(delay, 0.0), seq=self._seq, callback=callback)
        heapq.heappush(self._queue, timer)
        return timer

    def pending_count(self) -> int:
        """Number of scheduled, not-cancelled timers."""
        return sum(1 for timer in self._queue if not timer.is_cancelled)

    async def advance(self, seconds: float) -> None:
        """Advance the clock, firing every timer that falls due on the way."""
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        target = self._clock.monotonic() + seconds
        while self._queue and self._queue[0].due <= target:
            timer = heapq.heappop(self._queue)
            if timer.is_cancelled:
                continue
            self._clock.set(max(timer.due, self._clock.monotonic()))
            outcome = timer.callback()
            if inspect.isawaitable(outcome):
                await outcome
        self._clock.set(target)

    async def drain(self) -> None:
        # Callbacks are awaited inside advance()
        return None


class _KeyedEntry:
    __slots__ = ("handle",)

    def __init__(self) -> None:
        self.handle: TimerHandle | None = None


class KeyedTimers:
    """At most one pending timer per key.

    Scheduling a key that already has a pending timer cancels the old one
    (trailing debounce). A timer removes its own entry just before its
    callback runs, so the callback may reschedule the same key.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._entries: dict[Hashable, _KeyedEntry] = {}

    def schedule(self, key: Hashable, delay: float, callback: TimerCallback) -> None:
        self.cancel(key)
        entry = _KeyedEntry()

        def fire() -> Awaitable[None] | None:
            if self._entries.get(key) is entry:
                del self._entries[key]
            return callback()

        self._entries[key] = entry
        entry.handle = self._scheduler.call_later(delay, fire)

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending timer for ``key``; returns whether one existed."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        if entry.handle is not None:
            entry.handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._entries):
            self.cancel(key)

    def is_pending(self, key: Hashable) -> bool:
        return key in self._entries

    def pending_keys(self) -> list[Hashable]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
