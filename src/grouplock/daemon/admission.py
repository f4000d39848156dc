"""Global admission limiter.

Caps how many remote-mutating operations run at once across all targets.
This ceiling is the agent's main defense against the remote platform's
flood detection, so it must hold under every interleaving:

- admitted count never exceeds `limit`
- waiters are admitted strictly in arrival order; a release hands the slot
  directly to the oldest waiter, so a newcomer can never barge ahead
"""
from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict


class AdmissionLimiter:
    def __init__(self, limit: int = 1):
        if int(limit) < 1:
            raise ValueError("admission limit must be >= 1")
        self._limit = int(limit)
        self._active = 0
        self._waiters: Deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() without a matching acquire()")
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Hand-off: the admitted count is unchanged.
                fut.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def stats(self) -> Dict[str, int]:
        return {"limit": self._limit, "active": self._active, "waiting": self.waiting}
