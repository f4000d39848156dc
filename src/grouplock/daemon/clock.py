"""Time source for every sleep and timer in the agent.

LoopClock runs on the asyncio loop. ManualClock keeps virtual time that only
moves when a test calls `advance()`, so cooldowns, grace windows and pacing
sleeps can be exercised without waiting.
"""
from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from typing import Callable, List, Optional


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        pass

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        pass


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        pass


# ============================================================================
# Production clock
# ============================================================================


class _LoopTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class LoopClock(Clock):
    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, float(seconds)))

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return _LoopTimer(loop.call_later(max(0.0, float(delay)), callback))


# ============================================================================
# Virtual clock (tests)
# ============================================================================


class _ManualTimer(TimerHandle):
    def __init__(self, when: float, seq: int, callback: Callable[[], None]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock(Clock):
    """Virtual time. Sleepers and timers fire in deadline order during `advance()`."""

    def __init__(self, start: float = 0.0, *, settle_rounds: int = 100):
        self._now = float(start)
        self._timers: List[_ManualTimer] = []
        self._seq = itertools.count()
        self._settle_rounds = settle_rounds

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        t = _ManualTimer(self._now + max(0.0, float(delay)), next(self._seq), callback)
        self._timers.append(t)
        return t

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not fut.done():
                fut.set_result(None)

        timer = self.call_later(seconds, _wake)
        try:
            await fut
        finally:
            timer.cancel()

    @property
    def pending_timers(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def _next_due(self, deadline: float) -> Optional[_ManualTimer]:
        self._timers = [t for t in self._timers if not t.cancelled]
        due = [t for t in self._timers if t.when <= deadline]
        if not due:
            return None
        return min(due, key=lambda t: (t.when, t.seq))

    async def settle(self) -> None:
        """Let every runnable task reach its next suspension point."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        deadline = self._now + max(0.0, float(seconds))
        await self.settle()
        while True:
            timer = self._next_due(deadline)
            if timer is None:
                break
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            timer.callback()
            await self.settle()
        self._now = deadline
        await self.settle()
