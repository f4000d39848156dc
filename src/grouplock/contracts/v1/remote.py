from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict


RemoteErrorCode = Literal[
    "network",
    "rate_limited",
    "not_found",
    "unsupported",
    "disconnected",
    "unknown",
]


class RemoteError(BaseModel):
    code: RemoteErrorCode = "unknown"
    message: str = ""

    model_config = ConfigDict(extra="forbid")


class RemoteResult(BaseModel):
    """Uniform outcome of a remote call; clients never raise for remote failures."""

    ok: bool
    value: Any = None
    error: Optional[RemoteError] = None

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    @classmethod
    def success(cls, value: Any = None) -> "RemoteResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: RemoteErrorCode, message: str = "") -> "RemoteResult":
        return cls(ok=False, error=RemoteError(code=code, message=message))

    @property
    def error_code(self) -> str:
        return self.error.code if self.error is not None else ""

    @property
    def error_message(self) -> str:
        return self.error.message if self.error is not None else ""

    @property
    def disconnected(self) -> bool:
        return not self.ok and self.error_code == "disconnected"
