from __future__ import annotations

from .lock import LockRecord
from .remote import RemoteError, RemoteErrorCode, RemoteResult
from .thread import ThreadEvent, ThreadEventKind, ThreadSnapshot

__all__ = [
    "LockRecord",
    "RemoteError",
    "RemoteErrorCode",
    "RemoteResult",
    "ThreadEvent",
    "ThreadEventKind",
    "ThreadSnapshot",
]
