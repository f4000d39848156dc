"""Desired-state contracts.

A LockRecord is what the operator wants a group to look like. The on-disk
keys are kept compatible with the original data file (`groupData.json`):

    nick      -> nickname
    original  -> nickname_overrides
    gclock    -> title_lock_enabled
    groupName -> locked_title
    count     -> change_count
    cooldown  -> cooldown_active
"""
from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LockRecord(BaseModel):
    enabled: bool = False
    nickname: str = Field(default="", alias="nick")
    nickname_overrides: Dict[str, str] = Field(default_factory=dict, alias="original")
    title_lock_enabled: bool = Field(default=False, alias="gclock")
    locked_title: str = Field(default="", alias="groupName")
    change_count: int = Field(default=0, alias="count", ge=0)
    cooldown_active: bool = Field(default=False, alias="cooldown")

    # Unknown keys written by other tools survive a load/save cycle.
    model_config = ConfigDict(extra="allow", populate_by_name=True, validate_assignment=True)

    @field_validator("nickname_overrides", mode="before")
    @classmethod
    def _drop_empty_overrides(cls, v: object) -> object:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if str(k).strip() and val}
        return v

    @field_validator("nickname", "locked_title", mode="before")
    @classmethod
    def _none_to_empty(cls, v: object) -> object:
        return "" if v is None else v

    def desired_nickname(self, member_id: str) -> str:
        """Override for `member_id` if one exists, else the group nickname."""
        return self.nickname_overrides.get(member_id) or self.nickname

    def to_store(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True)
