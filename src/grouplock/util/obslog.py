from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional, TextIO

from .time import utc_ts_iso

# Correlation keys lifted from `logger.*(..., extra={...})` into the output.
CONTEXT_KEYS = ("op", "target_id", "member_id", "attempt", "delay_s", "error_code")

_CONFIGURED: Dict[str, str] = {}


def _context(record: logging.LogRecord) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k in CONTEXT_KEYS:
        v = getattr(record, k, None)
        if v is None:
            continue
        sv = str(v).strip()
        if sv:
            out[k] = sv
    return out


class JsonlFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, component, msg (+ context).

    Keep fields stable and small; extra fields go through `extra={...}`.
    """

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "grouplock"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": record.levelname,
            "logger": record.name,
            "component": self._component,
            "msg": record.getMessage(),
        }
        payload.update(_context(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            # Last resort: never crash logging.
            return json.dumps(
                {"component": self._component, "level": payload["level"], "msg": "(log serialization failed)"}
            )


class ConsoleFormatter(logging.Formatter):
    """Human-readable line for terminals: `[ts] LEVEL logger: msg key=value ...`."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = " ".join(f"{k}={v}" for k, v in _context(record).items())
        line = f"[{utc_ts_iso(record.created)}] {record.levelname:<7} {record.name}: {record.getMessage()}"
        if ctx:
            line = f"{line} {ctx}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    v = getattr(logging, s, default) if s else default
    return v if isinstance(v, int) else default


def _formatter(fmt: str, component: str) -> logging.Formatter:
    if str(fmt or "").strip().lower() == "text":
        return ConsoleFormatter()
    return JsonlFormatter(component=component)


def setup_root_logging(
    *,
    component: str,
    level: str = "INFO",
    fmt: str = "json",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    - One StreamHandler, JSONL (`fmt="json"`) or plain text (`fmt="text"`).
    - Repeated calls only adjust the level unless `force=True`.
    """
    root = logging.getLogger()
    lvl = _parse_level(level)
    root.setLevel(lvl)

    handler_key = f"root:{component}"
    if handler_key in _CONFIGURED and not force:
        for h in root.handlers:
            h.setLevel(lvl)
        return
    _CONFIGURED[handler_key] = fmt

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(_formatter(fmt, component))
    root.addHandler(handler)
