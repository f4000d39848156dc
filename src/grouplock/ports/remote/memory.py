"""
In-memory remote client.

A scriptable stand-in for the chat platform: threads live in a dict,
mutations update them, failures can be queued per operation, and live events
are pushed by hand. Used by the test-suite and by `grouplock run --demo`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, DefaultDict, Deque, Dict, List, Optional, Tuple

from ...contracts.v1 import RemoteErrorCode, RemoteResult, ThreadEvent, ThreadSnapshot
from ...daemon.clock import Clock
from .base import RemoteClient

logger = logging.getLogger("grouplock.remote.memory")

_CLOSE = object()


@dataclass
class FakeThread:
    title: str = ""
    member_ids: List[str] = field(default_factory=list)
    nicknames: Dict[str, str] = field(default_factory=dict)

    def snapshot(self) -> ThreadSnapshot:
        return ThreadSnapshot(title=self.title, member_ids=list(self.member_ids), nicknames=dict(self.nicknames))


class InMemoryClient(RemoteClient):
    platform = "memory"

    def __init__(
        self,
        *,
        user_id: str = "operator",
        threads: Optional[Dict[str, FakeThread]] = None,
        echo_events: bool = False,
        clock: Optional[Clock] = None,
        mutation_latency: float = 0.0,
        login_failures: int = 0,
    ):
        self.user_id = user_id
        self.threads: Dict[str, FakeThread] = threads if threads is not None else {}
        self.echo_events = echo_events
        self.clock = clock
        self.mutation_latency = float(mutation_latency)
        self.login_failures = int(login_failures)

        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.logged_in = False
        self.configured: Dict[str, bool] = {}
        self.credentials: List[Dict[str, Any]] = []

        self._failures: DefaultDict[str, Deque[RemoteResult]] = defaultdict(deque)
        self._events: "asyncio.Queue[object]" = asyncio.Queue()

    # ------------------------------------------------------------------
    # Scripting helpers
    # ------------------------------------------------------------------

    def add_thread(self, thread_id: str, *, title: str = "", nicknames: Optional[Dict[str, str]] = None,
                   members: Optional[List[str]] = None) -> FakeThread:
        nicks = dict(nicknames or {})
        t = FakeThread(title=title, member_ids=list(members if members is not None else nicks.keys()), nicknames=nicks)
        self.threads[str(thread_id)] = t
        return t

    def fail_next(self, op: str, code: RemoteErrorCode = "network", message: str = "scripted failure") -> None:
        self._failures[op].append(RemoteResult.failure(code, message))

    def push_event(self, event: ThreadEvent) -> None:
        self._events.put_nowait(event)

    def close_events(self) -> None:
        self._events.put_nowait(_CLOSE)

    def calls_of(self, op: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == op]

    def _take_failure(self, op: str) -> Optional[RemoteResult]:
        q = self._failures.get(op)
        if q:
            return q.popleft()
        return None

    async def _mutation(self, op: str, args: Tuple[Any, ...]) -> Optional[RemoteResult]:
        self.calls.append((op, args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.mutation_latency > 0 and self.clock is not None:
                await self.clock.sleep(self.mutation_latency)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        return self._take_failure(op)

    # ------------------------------------------------------------------
    # RemoteClient
    # ------------------------------------------------------------------

    async def login(self, credentials: List[Dict[str, Any]]) -> RemoteResult:
        self.calls.append(("login", (len(credentials),)))
        if self.login_failures > 0:
            self.login_failures -= 1
            return RemoteResult.failure("network", "login refused")
        failure = self._take_failure("login")
        if failure is not None:
            return failure
        self.credentials = copy.deepcopy(credentials)
        self.logged_in = True
        return RemoteResult.success(self.user_id)

    async def configure(self, *, listen_events: bool = True, self_listen: bool = True) -> RemoteResult:
        self.configured = {"listen_events": listen_events, "self_listen": self_listen}
        return RemoteResult.success()

    def current_user_id(self) -> str:
        return self.user_id

    async def get_thread_info(self, thread_id: str) -> RemoteResult:
        self.calls.append(("get_thread_info", (thread_id,)))
        await asyncio.sleep(0)
        failure = self._take_failure("get_thread_info")
        if failure is not None:
            return failure
        t = self.threads.get(thread_id)
        if t is None:
            return RemoteResult.failure("not_found", f"thread {thread_id} not found")
        return RemoteResult.success(t.snapshot())

    async def change_nickname(self, nickname: str, thread_id: str, member_id: str) -> RemoteResult:
        failure = await self._mutation("change_nickname", (nickname, thread_id, member_id))
        if failure is not None:
            return failure
        t = self.threads.get(thread_id)
        if t is None:
            return RemoteResult.failure("not_found", f"thread {thread_id} not found")
        t.nicknames[member_id] = nickname
        if self.echo_events:
            self.push_event(ThreadEvent(kind="nickname", thread_id=thread_id, participant_id=member_id, nickname=nickname))
        return RemoteResult.success()

    async def change_title(self, title: str, thread_id: str) -> RemoteResult:
        failure = await self._mutation("change_title", (title, thread_id))
        if failure is not None:
            return failure
        t = self.threads.get(thread_id)
        if t is None:
            return RemoteResult.failure("not_found", f"thread {thread_id} not found")
        t.title = title
        if self.echo_events:
            self.push_event(ThreadEvent(kind="title", thread_id=thread_id, title=title))
        return RemoteResult.success()

    async def send_typing_indicator(self, thread_id: str) -> RemoteResult:
        self.calls.append(("send_typing_indicator", (thread_id,)))
        await asyncio.sleep(0)
        failure = self._take_failure("send_typing_indicator")
        if failure is not None:
            return failure
        return RemoteResult.success()

    async def events(self) -> AsyncIterator[ThreadEvent]:  # type: ignore[override]
        while True:
            item = await self._events.get()
            if item is _CLOSE:
                return
            assert isinstance(item, ThreadEvent)
            yield item

    def session_snapshot(self) -> Optional[List[Dict[str, Any]]]:
        if not self.logged_in or not self.credentials:
            return None
        return copy.deepcopy(self.credentials)

    async def logout(self) -> None:
        self.calls.append(("logout", ()))
        self.logged_in = False


def create_demo_client(settings: Any) -> InMemoryClient:
    """Demo factory: one fake thread per lock record, every nickname out of place."""
    from ...kernel.store import LockStore
    from ...kernel.errors import CorruptStoreError

    client = InMemoryClient(user_id=str(getattr(settings, "boss_uid", "") or "operator"), echo_events=True)
    try:
        records = LockStore(settings.lock_store_path, default_nickname=settings.default_nickname).load()
    except CorruptStoreError:
        logger.warning("demo client: lock store unreadable, starting with no threads")
        records = {}
    for target_id in records:
        client.add_thread(
            target_id,
            title="renamed by someone",
            nicknames={client.user_id: "old-operator-name", "100001": "changed", "100002": "also changed"},
        )
    return client
