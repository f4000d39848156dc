"""
Base class for remote chat-platform clients.

The agent core depends only on this interface. A concrete client wraps the
platform's login protocol and event transport and reports every outcome as a
RemoteResult instead of raising.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from ...contracts.v1 import RemoteErrorCode, RemoteResult, ThreadEvent

# Transport messages that mean the session is gone.
_DISCONNECT_MARKERS = ("client disconnecting", "not logged in", "login required", "session expired")
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429", "temporarily blocked")
_NOT_FOUND_MARKERS = ("not found", "no such thread", "404")
_NETWORK_MARKERS = ("timed out", "timeout", "connection reset", "econnreset", "network")


def classify_error(message: str) -> RemoteErrorCode:
    """Map a free-form transport error message to a RemoteErrorCode."""
    m = (message or "").strip().lower()
    if not m:
        return "unknown"
    if any(k in m for k in _DISCONNECT_MARKERS):
        return "disconnected"
    if any(k in m for k in _RATE_LIMIT_MARKERS):
        return "rate_limited"
    if any(k in m for k in _NOT_FOUND_MARKERS):
        return "not_found"
    if any(k in m for k in _NETWORK_MARKERS):
        return "network"
    return "unknown"


def failure_from_exception(exc: BaseException) -> RemoteResult:
    message = str(exc) or type(exc).__name__
    return RemoteResult.failure(classify_error(message), message)


class RemoteClient(ABC):
    """
    Abstract remote client.

    Each session gets a fresh instance from the configured factory:
    - login / configure / logout
    - observed state reads (get_thread_info)
    - mutations (change_nickname, change_title)
    - liveness (send_typing_indicator)
    - live notifications (events)
    """

    platform: str = "unknown"

    @abstractmethod
    async def login(self, credentials: List[Dict[str, Any]]) -> RemoteResult:
        pass

    async def configure(self, *, listen_events: bool = True, self_listen: bool = True) -> RemoteResult:
        """Enable live event delivery, including the agent's own actions."""
        _ = listen_events
        _ = self_listen
        return RemoteResult.success()

    @abstractmethod
    def current_user_id(self) -> str:
        pass

    @abstractmethod
    async def get_thread_info(self, thread_id: str) -> RemoteResult:
        """Value is a ThreadSnapshot on success."""

    @abstractmethod
    async def change_nickname(self, nickname: str, thread_id: str, member_id: str) -> RemoteResult:
        pass

    @abstractmethod
    async def change_title(self, title: str, thread_id: str) -> RemoteResult:
        pass

    async def send_typing_indicator(self, thread_id: str) -> RemoteResult:
        _ = thread_id
        return RemoteResult.failure("unsupported", "typing indicator not supported")

    @abstractmethod
    def events(self) -> AsyncIterator[ThreadEvent]:
        """Live notification stream. Ending the stream ends the session."""

    def session_snapshot(self) -> Optional[List[Dict[str, Any]]]:
        """Current credential state, for periodic backup. None if unavailable."""
        return None

    async def logout(self) -> None:
        return None
