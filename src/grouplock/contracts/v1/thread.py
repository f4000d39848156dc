"""Observed-state contracts: what the remote platform reports about a thread."""
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ThreadEventKind = Literal[
    "nickname",      # a member's nickname changed
    "title",         # the thread title changed
    "membership",    # members joined or the thread was created
    "disconnected",  # transport lost the session
    "other",
]


class ThreadSnapshot(BaseModel):
    title: str = ""
    member_ids: List[str] = Field(default_factory=list)
    nicknames: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    def nickname_of(self, member_id: str) -> Optional[str]:
        return self.nicknames.get(member_id) or None


class ThreadEvent(BaseModel):
    kind: ThreadEventKind
    thread_id: str = ""
    participant_id: str = ""
    nickname: Optional[str] = None
    title: Optional[str] = None
    message: str = ""

    model_config = ConfigDict(extra="ignore")
