"""Timer primitives used by the test engine.

``AsyncioScheduler`` runs on the asyncio event loop. ``ManualScheduler`` keeps a
virtual clock that only moves when ``advance`` is called, which makes the
engine's timing deterministic for replays and tests.

A cancelled ``TimerHandle`` never runs its callback, even when the underlying
primitive had already queued the call.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any, Callable, Coroutine, Optional, Protocol

from loguru import logger

TimerCallback = Callable[[], None]


class TimerHandle:
    def __init__(self, interval: Optional[float] = None) -> None:
        self.interval = interval
        self._cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()
            self._on_cancel = None

    def _run(self, callback: TimerCallback) -> None:
        if self._cancelled:
            return
        callback()


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None: ...


class _TaskSpawner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Background task failed")

    async def drain(self) -> None:
        """Wait for every spawned task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class AsyncioScheduler(_TaskSpawner):
    """Drift-free timers on the running asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__()
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        raw = self.loop.call_later(delay, handle._run, callback)
        handle._on_cancel = raw.cancel
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        handle = TimerHandle(interval)
        start = self.loop.time()
        ticks = itertools.count(1)

        def _schedule_next() -> None:
            when = start + next(ticks) * interval
            raw = self.loop.call_at(when, _fire)
            handle._on_cancel = raw.cancel

        def _fire() -> None:
            handle._run(callback)
            if not handle.cancelled:
                _schedule_next()

        _schedule_next()
        return handle


class ManualScheduler(_TaskSpawner):
    """Virtual-time scheduler; callbacks run only inside ``advance``.

    Callbacks due at the same instant run in the order they were armed.
    """

    def __init__(self) -> None:
        super().__init__()
        self._now = 0.0
        self._seq = itertools.count()
        self._queue: list[tuple[float, int, TimerHandle, TimerCallback]] = []

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        self._push(self._now + max(0.0, delay), handle, callback)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        handle = TimerHandle(interval)
        self._push(self._now + interval, handle, callback)
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, handle, callback = heapq.heappop(self._queue)
            self._now = when
            handle._run(callback)
            if handle.interval is not None and not handle.cancelled:
                self._push(when + handle.interval, handle, callback)
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def _push(self, when: float, handle: TimerHandle, callback: TimerCallback) -> None:
        heapq.heappush(self._queue, (when, next(self._seq), handle, callback))
