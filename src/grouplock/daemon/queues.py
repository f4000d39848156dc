"""Per-target task queues.

Each target owns one FIFO and at most one drain loop. The drain loop runs
tasks one at a time, each inside an admission slot, with a fixed pause
between tasks. A failing task is logged and the loop moves on.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from ..kernel.errors import ForceReconnect
from .admission import AdmissionLimiter
from .clock import Clock

logger = logging.getLogger("grouplock.queues")

TaskFn = Callable[[], Awaitable[None]]


@dataclass
class QueuedTask:
    fn: TaskFn
    label: str = ""


@dataclass
class TargetQueue:
    tasks: Deque[QueuedTask] = field(default_factory=deque)
    drain: Optional["asyncio.Task[None]"] = None
    completed: int = 0
    failed: int = 0

    @property
    def running(self) -> bool:
        return self.drain is not None and not self.drain.done()


class TargetQueues:
    def __init__(
        self,
        limiter: AdmissionLimiter,
        clock: Clock,
        *,
        pause_seconds: float = 0.5,
        on_reconnect: Optional[Callable[[ForceReconnect], None]] = None,
    ):
        self._limiter = limiter
        self._clock = clock
        self._pause = float(pause_seconds)
        self._on_reconnect = on_reconnect
        self._queues: Dict[str, TargetQueue] = {}

    def _ensure(self, target_id: str) -> TargetQueue:
        q = self._queues.get(target_id)
        if q is None:
            q = TargetQueue()
            self._queues[target_id] = q
        return q

    def enqueue(self, target_id: str, fn: TaskFn, *, label: str = "") -> None:
        q = self._ensure(target_id)
        q.tasks.append(QueuedTask(fn=fn, label=label))
        if not q.running:
            q.drain = asyncio.get_running_loop().create_task(
                self._drain(target_id, q), name=f"grouplock-queue:{target_id}"
            )

    def pending(self, target_id: str) -> int:
        q = self._queues.get(target_id)
        return len(q.tasks) if q is not None else 0

    def is_running(self, target_id: str) -> bool:
        q = self._queues.get(target_id)
        return q is not None and q.running

    def stats(self, target_id: str) -> Dict[str, int]:
        q = self._queues.get(target_id)
        if q is None:
            return {"pending": 0, "completed": 0, "failed": 0}
        return {"pending": len(q.tasks), "completed": q.completed, "failed": q.failed}

    async def _drain(self, target_id: str, q: TargetQueue) -> None:
        while q.tasks:
            item = q.tasks.popleft()
            try:
                async with self._limiter.slot():
                    await item.fn()
                q.completed += 1
            except ForceReconnect as e:
                q.failed += 1
                logger.warning(
                    f"task requested reconnect: {item.label}",
                    extra={"op": "queue.task", "target_id": target_id},
                )
                if self._on_reconnect is not None:
                    self._on_reconnect(e)
            except asyncio.CancelledError:
                raise
            except Exception:
                q.failed += 1
                logger.warning(
                    f"task failed: {item.label}",
                    exc_info=True,
                    extra={"op": "queue.task", "target_id": target_id},
                )
            await self._clock.sleep(self._pause)

    async def wait_idle(self) -> None:
        while True:
            drains: List["asyncio.Task[None]"] = [q.drain for q in self._queues.values() if q.running and q.drain]
            if not drains:
                return
            await asyncio.gather(*drains, return_exceptions=True)

    async def cancel_all(self) -> None:
        drains = [q.drain for q in self._queues.values() if q.running and q.drain]
        for t in drains:
            t.cancel()
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
        for q in self._queues.values():
            q.tasks.clear()
            q.drain = None
