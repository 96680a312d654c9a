"""
Clock and scheduler abstraction.

Every delay, timestamp and timer in the package goes through a ``Clock`` so
that tests can substitute ``ManualClock`` and drive time deterministically.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class TimerHandle(ABC):
    """A cancellable scheduled callback."""

    @property
    @abstractmethod
    def when(self) -> float:
        """Monotonic time at which the callback fires."""
        raise NotImplementedError

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        """Whether the timer was cancelled."""
        raise NotImplementedError

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the timer. Cancelling twice is a no-op."""
        raise NotImplementedError


class Clock(ABC):
    """Source of time, sleeps and timers."""

    @abstractmethod
    def time(self) -> float:
        """Wall-clock time in epoch seconds."""
        raise NotImplementedError

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic time in seconds."""
        raise NotImplementedError

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        raise NotImplementedError

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds.

        Args:
            delay: Delay in seconds (negative values fire as soon as possible)
            callback: Synchronous callable; schedule coroutines from inside it

        Returns:
            Handle that cancels the timer
        """
        raise NotImplementedError


class _LoopTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    @property
    def when(self) -> float:
        return self._handle.when()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()

    def cancel(self) -> None:
        self._handle.cancel()


class SystemClock(Clock):
    """Real clock backed by ``time`` and the running asyncio loop."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return _LoopTimer(loop.call_later(max(0.0, delay), callback))


class _ManualTimer(TimerHandle):
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self._when = when
        self._callback = callback
        self._cancelled = False
        self.fired = False

    @property
    def when(self) -> float:
        return self._when

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ManualClock(Clock):
    """Deterministic clock for tests.

    Time only moves through ``advance()`` and ``sleep()``. ``sleep()`` returns
    immediately after advancing time and records the requested delay, so
    backoff loops run instantly while still observing elapsed time.

    Example:
        >>> clock = ManualClock(start=1_700_000_000.0)
        >>> fired = []
        >>> handle = clock.call_later(30, lambda: fired.append(clock.time()))
        >>> clock.advance(30)
        >>> fired
        [1700000030.0]
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._wall = start
        self._mono = 0.0
        self._timers: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self._wall

    def monotonic(self) -> float:
        return self._mono

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self.advance(seconds)
        # Let other tasks observe the new time.
        await asyncio.sleep(0)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._mono + max(0.0, delay), callback)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order."""
        target = self._mono + max(0.0, seconds)
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._wall += when - self._mono
            self._mono = when
            timer.fired = True
            timer._callback()
        self._wall += target - self._mono
        self._mono = target

    @property
    def pending(self) -> list[TimerHandle]:
        """Live timers in firing order."""
        return [t for _, _, t in sorted(self._timers) if not t.cancelled]
