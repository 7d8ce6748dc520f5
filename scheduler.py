"""
Scheduler - one-shot and periodic background timers with cancellation.

RESPONSIBILITY:
    Run health probes, recovery probes, cache rechecks and sweeps
    independently of request handling, and stop all of them on shutdown
    so no timer keeps the process alive.

    Components never call asyncio.sleep/time.time directly for policy timing.
    They go through a Scheduler, so there are two interchangeable engines:
    - AsyncioScheduler: wall clock, each timer is an asyncio task
    - ManualScheduler: virtual clock, timers fire only when advance() is awaited

FAILURE POLICY:
    A timer callback that raises is logged and swallowed. A periodic timer
    keeps ticking after a failed tick.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """Cancellation token for a scheduled timer."""

    def __init__(self, name: str, interval: Optional[float] = None):
        self.name = name
        self.interval = interval
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        """Stop the timer. Safe to call more than once."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class Scheduler:
    """Timer interface shared by the wall-clock and virtual-time engines."""

    def now(self) -> float:
        """Current time in epoch seconds."""
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine (used for retry backoff)."""
        raise NotImplementedError

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        """Run callback once after delay seconds."""
        raise NotImplementedError

    def call_every(self, interval: float, callback: TimerCallback, name: str = "ticker") -> TimerHandle:
        """Run callback every interval seconds until cancelled."""
        raise NotImplementedError

    async def shutdown(self) -> None:
        """Cancel every outstanding timer."""
        raise NotImplementedError

    @staticmethod
    async def _run_callback(handle: TimerHandle, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Timer '{handle.name}' failed: {type(e).__name__}: {e}")


class AsyncioScheduler(Scheduler):
    """Wall-clock scheduler backed by asyncio tasks."""

    def __init__(self) -> None:
        self._handles: set[TimerHandle] = set()

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        handle._task = asyncio.get_running_loop().create_task(self._later(handle, delay, callback), name=name)
        self._track(handle)
        return handle

    def call_every(self, interval: float, callback: TimerCallback, name: str = "ticker") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(name, interval=interval)
        handle._task = asyncio.get_running_loop().create_task(self._every(handle, interval, callback), name=name)
        self._track(handle)
        return handle

    def _track(self, handle: TimerHandle) -> None:
        self._handles.add(handle)
        handle._task.add_done_callback(lambda _task: self._handles.discard(handle))

    async def _later(self, handle: TimerHandle, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if not handle.cancelled:
            await self._run_callback(handle, callback)

    async def _every(self, handle: TimerHandle, interval: float, callback: TimerCallback) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                break
            await self._run_callback(handle, callback)

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def shutdown(self) -> None:
        handles = list(self._handles)
        for handle in handles:
            handle.cancel()
        tasks = [h._task for h in handles if h._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()
        logger.info(f"Scheduler stopped ({len(handles)} timer(s) cancelled)")


class ManualScheduler(Scheduler):
    """
    Virtual-time scheduler.

    Time only moves when advance() or sleep() is awaited. Both fire due
    timers in deadline order, awaiting each callback before moving on, so
    tests can step through recovery timelines deterministically.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle, TimerCallback]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        await self._run_until(self._now + max(0.0, seconds))
        await asyncio.sleep(0)

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        self._push(self._now + delay, handle, callback)
        return handle

    def call_every(self, interval: float, callback: TimerCallback, name: str = "ticker") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(name, interval=interval)
        self._push(self._now + interval, handle, callback)
        return handle

    def _push(self, due: float, handle: TimerHandle, callback: TimerCallback) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing every timer that comes due."""
        await self._run_until(self._now + seconds)

    async def _run_until(self, target: float) -> None:
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            if handle.periodic:
                self._push(due + handle.interval, handle, callback)
            await self._run_callback(handle, callback)
        self._now = max(self._now, target)

    async def shutdown(self) -> None:
        for _, _, handle, _ in self._queue:
            handle.cancel()
        self._queue.clear()
