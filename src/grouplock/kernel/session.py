"""Credential blob (appstate) handling.

The blob is an ordered list of cookie-like objects obtained out of band. The
agent never interprets it; it only validates the shape, hands it to the
remote client, and writes back refreshed snapshots.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..util.fs import atomic_write_json
from .errors import InvalidSessionError

logger = logging.getLogger("grouplock.session")

Credentials = List[Dict[str, Any]]


def parse_credentials(text: str, *, source: str) -> Credentials:
    try:
        doc = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidSessionError(f"{source}: not valid JSON ({e})") from e
    if not isinstance(doc, list):
        raise InvalidSessionError(f"{source}: must be a JSON array")
    if not doc:
        raise InvalidSessionError(f"{source}: credential list is empty")
    if not all(isinstance(item, dict) for item in doc):
        raise InvalidSessionError(f"{source}: every entry must be an object")
    return doc


class SessionStore:
    def __init__(self, path: Path, *, env_value: Optional[str] = None):
        self.path = path
        self.env_value = env_value

    def load(self) -> Credentials:
        """Return the credential list or raise InvalidSessionError."""
        if self.env_value is not None and self.env_value.strip():
            return parse_credentials(self.env_value, source="GROUPLOCK_APPSTATE")
        if not self.path.exists():
            raise InvalidSessionError(f"{self.path}: file not found")
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise InvalidSessionError(f"{self.path}: {e}") from e
        return parse_credentials(text, source=str(self.path))

    def save(self, snapshot: Optional[Credentials]) -> bool:
        """Persist a session snapshot. Empty or malformed snapshots are not written."""
        if not isinstance(snapshot, list) or not snapshot:
            return False
        atomic_write_json(self.path, snapshot)
        logger.info("session snapshot saved", extra={"op": "session.save"})
        return True
