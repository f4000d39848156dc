"""Durable lock store (groupData.json).

The file is the single source of truth for desired state. Every write goes
through an atomic replace, so a crash mid-write leaves the previous version
intact.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Mapping

from pydantic import ValidationError

from ..contracts.v1 import LockRecord
from ..util.fs import atomic_write_json, read_json
from .errors import CorruptStoreError

logger = logging.getLogger("grouplock.store")

LockMap = Dict[str, LockRecord]


class LockStore:
    def __init__(self, path: Path, *, default_nickname: str):
        self.path = path
        self.default_nickname = default_nickname

    def ensure_file(self) -> None:
        """Create an empty store if none exists yet."""
        if not self.path.exists():
            atomic_write_json(self.path, {})

    def load(self) -> LockMap:
        """Load all lock records.

        Raises CorruptStoreError when the file is not a JSON object of valid
        records. A missing file reads as no records and is not created here.
        Records without a nickname get the default nickname.
        """
        try:
            doc = read_json(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStoreError(f"{self.path}: {e}") from e
        if doc is None:
            doc = {}
        if not isinstance(doc, dict):
            raise CorruptStoreError(f"{self.path}: top-level value must be an object")

        records: LockMap = {}
        for target_id, raw in doc.items():
            key = str(target_id).strip()
            if not key:
                continue
            if not isinstance(raw, dict):
                raise CorruptStoreError(f"{self.path}: record {key!r} must be an object")
            try:
                rec = LockRecord.model_validate(raw)
            except ValidationError as e:
                raise CorruptStoreError(f"{self.path}: record {key!r}: {e}") from e
            if not rec.nickname.strip():
                rec.nickname = self.default_nickname
            records[key] = rec
        return records

    def save(self, records: Mapping[str, LockRecord]) -> None:
        atomic_write_json(self.path, {tid: rec.to_store() for tid, rec in records.items()})
        logger.debug("lock store saved", extra={"op": "store.save"})
