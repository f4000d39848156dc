"""Reconciliation engine.

One instance owns everything the agent mutates: the in-memory lock records,
the admission limiter, the per-target queues, cooldown timers and the title
guard. Subsystems receive the engine instead of reaching for module-level
state.

Lifecycle (driven by the session manager, once per login):
    load() -> attach(client, operator_id) -> start() ... stop() -> flush()
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..contracts.v1 import ThreadEvent
from ..kernel.errors import CorruptStoreError, ForceReconnect, GroupLockError
from ..kernel.pacing import DelayPolicy
from ..kernel.session import SessionStore
from ..kernel.settings import AgentSettings
from ..kernel.store import LockMap, LockStore
from ..ports.remote.base import RemoteClient
from .admission import AdmissionLimiter
from .clock import Clock, LoopClock
from .keepalive import backup_session, typing_round
from .queues import TargetQueues
from .reconcile import NicknameReconciler
from .title_guard import TitleGuard

logger = logging.getLogger("grouplock.engine")


class ReconciliationEngine:
    def __init__(
        self,
        settings: AgentSettings,
        *,
        clock: Optional[Clock] = None,
        store: Optional[LockStore] = None,
        delay: Optional[DelayPolicy] = None,
    ):
        self.settings = settings
        self.clock: Clock = clock or LoopClock()
        self.store = store or LockStore(settings.lock_store_path, default_nickname=settings.default_nickname)
        self.delay = delay or DelayPolicy.from_settings(settings)
        self.records: LockMap = {}
        self.loaded = False
        # Set while a mutation has not reached disk.
        self.dirty = False

        self.limiter = AdmissionLimiter(settings.global_max_concurrent)
        self.queues = TargetQueues(
            self.limiter,
            self.clock,
            pause_seconds=settings.queue_pause_seconds,
            on_reconnect=self.signal_reconnect,
        )
        self.reconciler = NicknameReconciler(self)
        self.titles = TitleGuard(self)

        self.operator_id = ""
        self._client: Optional[RemoteClient] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._reconnect: Optional[asyncio.Event] = None
        self._reconnect_reason = ""

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def client(self) -> RemoteClient:
        if self._client is None:
            raise GroupLockError("no remote client attached")
        return self._client

    @property
    def attached(self) -> bool:
        return self._client is not None

    def load(self) -> LockMap:
        """(Re)load lock records. A corrupt store falls back to no records."""
        self.reconciler.cancel_timers()
        self.dirty = False
        self.store.ensure_file()
        try:
            self.records = self.store.load()
        except CorruptStoreError as e:
            logger.warning(f"lock store unreadable, starting empty: {e}", extra={"op": "store.load"})
            self.records = {}
        for target_id, rec in self.records.items():
            if rec.cooldown_active:
                self.reconciler.arm_cooldown(target_id)
        self.loaded = True
        logger.info(f"loaded {len(self.records)} lock record(s)", extra={"op": "store.load"})
        return self.records

    def save(self) -> None:
        """Persist after a mutation. A failed write leaves the engine dirty."""
        self.dirty = True
        self.store.save(self.records)
        self.dirty = False

    def flush(self) -> None:
        """Write back mutations that have not reached disk yet. A clean engine never writes."""
        if not self.loaded or not self.dirty:
            return
        self.save()
        logger.info("lock store flushed", extra={"op": "store.flush"})

    def attach(self, client: RemoteClient, operator_id: str) -> None:
        self._client = client
        self.operator_id = str(operator_id or "")
        self._reconnect = asyncio.Event()
        self._reconnect_reason = ""

    # ------------------------------------------------------------------
    # Reconnect signal
    # ------------------------------------------------------------------

    def signal_reconnect(self, exc: ForceReconnect) -> None:
        if self._reconnect is None:
            self._reconnect = asyncio.Event()
        if not self._reconnect.is_set():
            self._reconnect_reason = str(exc) or "reconnect requested"
            self._reconnect.set()

    async def wait_reconnect(self) -> str:
        if self._reconnect is None:
            self._reconnect = asyncio.Event()
        await self._reconnect.wait()
        return self._reconnect_reason

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: ThreadEvent) -> None:
        if event.kind == "disconnected":
            raise ForceReconnect(event.message or "transport disconnected")
        if not event.thread_id or event.thread_id not in self.records:
            return
        if event.kind == "nickname":
            self.reconciler.on_nickname_event(event)
        elif event.kind == "title":
            self.titles.notify(event.thread_id, event.title)
        elif event.kind == "membership":
            self.spawn(self.reconciler.sync_membership(event.thread_id), name=f"membership:{event.thread_id}")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, coro: Awaitable[Any], *, name: str) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        task.set_name(f"grouplock-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, ForceReconnect):
            logger.warning(f"{task.get_name()} requested reconnect: {exc}", extra={"op": "reconnect"})
            self.signal_reconnect(exc)
            return
        logger.error(f"{task.get_name()} crashed", exc_info=exc, extra={"op": "task"})

    async def _periodic(self, label: str, interval: float, fn: Callable[[], Awaitable[Any]], *, immediate: bool) -> None:
        if not immediate:
            await self.clock.sleep(interval)
        while True:
            try:
                await fn()
            except (ForceReconnect, asyncio.CancelledError):
                raise
            except Exception:
                logger.warning(f"{label} failed", exc_info=True, extra={"op": label})
            await self.clock.sleep(interval)

    def start(self, *, session_store: Optional[SessionStore] = None) -> None:
        """Start the periodic loops. The first reconcile pass runs at once."""
        s = self.settings
        self.spawn(
            self._periodic("reconcile", s.reconcile_interval_seconds, self.reconciler.reconcile_all, immediate=True),
            name="reconcile",
        )
        self.spawn(
            self._periodic("title.poll", s.title_check_interval_seconds, self.titles.poll_tick, immediate=False),
            name="title-poll",
        )
        self.spawn(
            self._periodic("typing", s.typing_interval_seconds, lambda: typing_round(self), immediate=False),
            name="typing",
        )
        if session_store is not None:
            store = session_store

            async def _backup() -> None:
                backup_session(self._client, store)

            self.spawn(
                self._periodic("session.backup", s.session_backup_interval_seconds, _backup, immediate=False),
                name="session-backup",
            )
        logger.info("engine started", extra={"op": "engine.start"})

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.queues.cancel_all()
        self.reconciler.cancel_timers()
        self.titles.reset()
        self._client = None
        logger.info("engine stopped", extra={"op": "engine.stop"})

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        targets: Dict[str, Any] = {}
        for target_id, rec in self.records.items():
            targets[target_id] = {
                "enabled": rec.enabled,
                "nickname": rec.nickname,
                "change_count": rec.change_count,
                "cooldown_active": rec.cooldown_active,
                "title_lock_enabled": rec.title_lock_enabled,
                "title_state": self.titles.state(target_id).value,
                "queue": self.queues.stats(target_id),
            }
        return {
            "attached": self.attached,
            "operator_id": self.operator_id,
            "limiter": self.limiter.stats(),
            "targets": targets,
        }
