"""Group-title guard.

Per target:

    STABLE --mismatch--> DIVERGED --grace elapsed--> REVERT_IN_PROGRESS
       ^                    |                              |
       +---- title matches -+                              |
       +--------------- revert finished (ok or not) -------+

A divergence is only reverted after it has persisted for the grace window,
so a quick benign edit (or a burst of edits) costs at most one revert. The
revert runs on the target's queue and therefore passes the admission limiter.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from ..kernel.errors import ForceReconnect
from .clock import TimerHandle

if TYPE_CHECKING:
    from .engine import ReconciliationEngine

logger = logging.getLogger("grouplock.title_guard")


class TitleState(str, enum.Enum):
    STABLE = "stable"
    DIVERGED = "diverged"
    REVERT_IN_PROGRESS = "revert_in_progress"


@dataclass
class PendingChange:
    detected_at: Optional[float] = None
    revert_in_progress: bool = False
    observed: str = ""
    recheck: Optional[TimerHandle] = None

    @property
    def state(self) -> TitleState:
        if self.revert_in_progress:
            return TitleState.REVERT_IN_PROGRESS
        return TitleState.DIVERGED


class TitleGuard:
    def __init__(self, engine: "ReconciliationEngine"):
        self._engine = engine
        self._pending: Dict[str, PendingChange] = {}
        self._cursor = 0

    @property
    def grace(self) -> float:
        return self._engine.settings.title_revert_grace_seconds

    def state(self, target_id: str) -> TitleState:
        p = self._pending.get(target_id)
        return p.state if p is not None else TitleState.STABLE

    def pending(self, target_id: str) -> Optional[PendingChange]:
        return self._pending.get(target_id)

    def observe(self, target_id: str, title: str) -> TitleState:
        """Feed one observed title (from a poll or a live event)."""
        rec = self._engine.records.get(target_id)
        if rec is None or not rec.title_lock_enabled or not rec.locked_title:
            self._clear(target_id)
            return TitleState.STABLE

        p = self._pending.get(target_id)
        if p is not None and p.revert_in_progress:
            return TitleState.REVERT_IN_PROGRESS

        if title == rec.locked_title:
            if p is not None:
                logger.info("title change resolved before grace", extra={"op": "title.stable", "target_id": target_id})
                self._clear(target_id)
            return TitleState.STABLE

        now = self._engine.clock.now()
        if p is None:
            p = PendingChange(detected_at=now, observed=title)
            p.recheck = self._engine.clock.call_later(self.grace, lambda: self._on_grace(target_id))
            self._pending[target_id] = p
            logger.info(
                f"title changed to {title!r}, reverting after {self.grace:.0f}s",
                extra={"op": "title.diverged", "target_id": target_id},
            )
            return TitleState.DIVERGED

        p.observed = title
        if p.detected_at is not None and now - p.detected_at >= self.grace:
            self._start_revert(target_id, p)
            return TitleState.REVERT_IN_PROGRESS
        return TitleState.DIVERGED

    def notify(self, target_id: str, title: Optional[str]) -> TitleState:
        if title is None:
            return self.state(target_id)
        return self.observe(target_id, title)

    def _on_grace(self, target_id: str) -> None:
        p = self._pending.get(target_id)
        if p is None or p.revert_in_progress:
            return
        p.recheck = None
        self._start_revert(target_id, p)

    def _start_revert(self, target_id: str, p: PendingChange) -> None:
        if p.recheck is not None:
            p.recheck.cancel()
            p.recheck = None
        p.revert_in_progress = True
        self._engine.queues.enqueue(target_id, lambda: self._revert(target_id), label="title:revert")

    async def _revert(self, target_id: str) -> None:
        engine = self._engine
        try:
            rec = engine.records.get(target_id)
            if rec is None or not rec.title_lock_enabled or not rec.locked_title:
                return
            info = await engine.client.get_thread_info(target_id)
            if info.disconnected:
                raise ForceReconnect(f"thread info: {info.error_message}")
            if info.ok and info.value.title == rec.locked_title:
                logger.info("title already restored", extra={"op": "title.revert", "target_id": target_id})
                return

            res = await engine.client.change_title(rec.locked_title, target_id)
            if res.ok:
                logger.info(f"title reverted to {rec.locked_title!r}", extra={"op": "title.revert", "target_id": target_id})
                return
            logger.warning(
                f"title revert failed: {res.error_message}",
                extra={"op": "title.revert", "target_id": target_id, "error_code": res.error_code},
            )
            if res.disconnected:
                raise ForceReconnect(f"title revert: {res.error_message}")
        finally:
            self._clear(target_id)

    def _clear(self, target_id: str) -> None:
        p = self._pending.pop(target_id, None)
        if p is not None and p.recheck is not None:
            p.recheck.cancel()

    async def poll_tick(self) -> int:
        """Check up to `max_title_checks_per_tick` title-locked targets.

        A cursor rotates through the targets so every one is eventually
        visited. Returns the number of targets checked.
        """
        engine = self._engine
        targets = [tid for tid, rec in engine.records.items() if rec.title_lock_enabled and rec.locked_title]
        if not targets:
            return 0
        n = min(max(1, engine.settings.max_title_checks_per_tick), len(targets))
        start = self._cursor % len(targets)
        batch = [targets[(start + i) % len(targets)] for i in range(n)]
        self._cursor = (start + n) % len(targets)

        checked = 0
        for target_id in batch:
            if self.state(target_id) is TitleState.REVERT_IN_PROGRESS:
                continue
            res = await engine.client.get_thread_info(target_id)
            if not res.ok:
                logger.warning(
                    f"title check failed: {res.error_message}",
                    extra={"op": "title.poll", "target_id": target_id, "error_code": res.error_code},
                )
                if res.disconnected:
                    raise ForceReconnect(f"title check: {res.error_message}")
                continue
            self.observe(target_id, res.value.title)
            checked += 1
        return checked

    def reset(self) -> None:
        for target_id in list(self._pending):
            self._clear(target_id)
