"""
Timer abstraction used by the scheduler, the auto-healing engine and the
incident aggregator.

Two implementations are provided:
- LoopTimers: backed by the running asyncio event loop and a monotonic clock.
- VirtualTimers: a manually advanced virtual clock, so that scheduling,
  timeouts and cooldowns can be exercised deterministically without sleeping.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from utils.logger import get_logger

logger = get_logger(__name__)


class TimerHandle:
    """Handle for a single scheduled callback."""

    __slots__ = ("when", "_callback", "_args", "_cancelled", "_inner")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._inner: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._inner is not None:
            self._inner.cancel()

    def _run(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._callback(*self._args)


class RepeatingTimer:
    """Fires a callback every ``interval`` seconds until cancelled."""

    def __init__(
        self,
        timers: "Timers",
        interval: float,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
        initial_delay: Optional[float] = None,
    ):
        self.interval = interval
        self._timers = timers
        self._callback = callback
        self._args = args
        self._cancelled = False
        first = interval if initial_delay is None else initial_delay
        self._handle = timers.call_later(first, self._fire)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    def _fire(self) -> None:
        if self._cancelled:
            return
        # Reschedule first so a failing callback does not stop the timer.
        self._handle = self._timers.call_later(self.interval, self._fire)
        try:
            self._callback(*self._args)
        except Exception:
            logger.exception("Repeating timer callback failed")


class Timers(ABC):
    """Clock plus delayed-callback scheduling."""

    @abstractmethod
    def time(self) -> float:
        """Current time in seconds on this clock."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run ``callback(*args)`` after ``delay`` seconds."""

    def call_repeating(
        self,
        interval: float,
        callback: Callable[..., Any],
        *args: Any,
        initial_delay: Optional[float] = None,
    ) -> RepeatingTimer:
        """Run ``callback(*args)`` every ``interval`` seconds."""
        return RepeatingTimer(self, interval, callback, args, initial_delay)

    async def sleep(self, delay: float) -> None:
        """Suspend the calling coroutine for ``delay`` seconds on this clock."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        handle = self.call_later(delay, _wake)
        try:
            await waiter
        finally:
            handle.cancel()


class LoopTimers(Timers):
    """Timers driven by the asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def time(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        delay = max(0.0, delay)
        handle = TimerHandle(self.time() + delay, callback, args)
        handle._inner = loop.call_later(delay, handle._run)
        return handle


class VirtualTimers(Timers):
    """
    Deterministic virtual clock.

    Nothing fires until advance() is awaited. advance() fires due callbacks
    in time order and lets the event loop settle after each one, so tasks
    spawned by a callback run before the clock moves on.
    """

    def __init__(self, start: float = 0.0, settle_rounds: int = 100):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self.settle_rounds = settle_rounds

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        """Number of scheduled, uncancelled callbacks."""
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    async def settle(self) -> None:
        for _ in range(self.settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float = 0.0) -> None:
        """Move the clock forward, firing every callback that becomes due."""
        target = self._now + max(0.0, seconds)
        await self.settle()
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            try:
                handle._run()
            except Exception:
                logger.exception("Virtual timer callback failed")
            await self.settle()
        self._now = target
        await self.settle()


class WaitTimeout(asyncio.TimeoutError):
    """Raised by wait_with_timeout when its own deadline expires."""


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


async def wait_with_timeout(timers: Timers, awaitable: Awaitable[Any], timeout: Optional[float]) -> Any:
    """
    Await ``awaitable`` for at most ``timeout`` seconds on ``timers``' clock.

    On expiry the underlying task is cancelled (best effort, its eventual
    outcome is discarded) and WaitTimeout is raised. A TimeoutError raised by
    the awaitable itself propagates unchanged.
    """
    task = asyncio.ensure_future(awaitable)
    if timeout is None:
        return await task

    loop = asyncio.get_running_loop()
    expired = loop.create_future()

    def _expire() -> None:
        if not expired.done():
            expired.set_result(None)

    handle = timers.call_later(timeout, _expire)
    try:
        await asyncio.wait({task, expired}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        task.add_done_callback(_consume_result)
        raise
    finally:
        handle.cancel()
        if not expired.done():
            expired.cancel()

    if task.done():
        return task.result()

    task.cancel()
    task.add_done_callback(_consume_result)
    raise WaitTimeout(f"Deadline of {timeout:g}s expired")
