"""Nickname reconciliation.

Compares each target's desired nicknames against the observed thread and
enqueues one correction task per mismatching member. The operator's own
nickname is always queued first.

Correction tasks own the abuse guard: every successful change bumps the
target's change counter, and reaching the configured limit puts the target in
cooldown until a clock timer lifts it.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Set, Tuple

from ..contracts.v1 import ThreadEvent, ThreadSnapshot
from ..kernel.errors import ForceReconnect
from .clock import TimerHandle

if TYPE_CHECKING:
    from .engine import ReconciliationEngine

logger = logging.getLogger("grouplock.reconcile")

PendingKey = Tuple[str, str, str]  # (target_id, member_id, nickname)


class NicknameReconciler:
    def __init__(self, engine: "ReconciliationEngine"):
        self._engine = engine
        self._pending: Set[PendingKey] = set()
        self._cooldowns: Dict[str, TimerHandle] = {}

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def reconcile(self, target_id: str, snapshot: ThreadSnapshot) -> int:
        """Enqueue corrections for every member whose nickname differs.

        Returns the number of tasks enqueued.
        """
        rec = self._engine.records.get(target_id)
        if rec is None or not rec.enabled:
            return 0
        if rec.cooldown_active:
            logger.debug("target in cooldown, skipping", extra={"op": "reconcile", "target_id": target_id})
            return 0

        queued = 0
        operator_id = self._engine.operator_id
        if operator_id and (operator_id in snapshot.member_ids or operator_id in snapshot.nicknames):
            if snapshot.nickname_of(operator_id) != rec.nickname:
                queued += self._enqueue(target_id, operator_id, rec.nickname)

        for member_id in snapshot.member_ids:
            if member_id == operator_id:
                continue
            desired = rec.desired_nickname(member_id)
            if snapshot.nickname_of(member_id) != desired:
                queued += self._enqueue(target_id, member_id, desired)

        if queued:
            logger.info(f"queued {queued} nickname correction(s)", extra={"op": "reconcile", "target_id": target_id})
        return queued

    def on_nickname_event(self, event: ThreadEvent) -> int:
        target_id = event.thread_id
        member_id = event.participant_id
        rec = self._engine.records.get(target_id)
        if rec is None or not rec.enabled or rec.cooldown_active or not member_id:
            return 0
        if member_id == self._engine.operator_id:
            desired = rec.nickname
        else:
            desired = rec.desired_nickname(member_id)
        if (event.nickname or None) == desired:
            return 0
        return self._enqueue(target_id, member_id, desired)

    def _enqueue(self, target_id: str, member_id: str, nickname: str) -> int:
        key = (target_id, member_id, nickname)
        if key in self._pending:
            return 0
        self._pending.add(key)
        self._engine.queues.enqueue(
            target_id,
            lambda: self._correct(key),
            label=f"nickname:{member_id}",
        )
        return 1

    # ------------------------------------------------------------------
    # Correction task
    # ------------------------------------------------------------------

    async def _correct(self, key: PendingKey) -> None:
        target_id, member_id, nickname = key
        engine = self._engine
        try:
            rec = engine.records.get(target_id)
            if rec is None or not rec.enabled:
                return
            if rec.cooldown_active:
                logger.info(
                    "correction dropped, target in cooldown",
                    extra={"op": "nickname.change", "target_id": target_id, "member_id": member_id},
                )
                return

            res = await engine.client.change_nickname(nickname, target_id, member_id)
            if not res.ok:
                logger.warning(
                    f"nickname change failed: {res.error_message}",
                    extra={
                        "op": "nickname.change",
                        "target_id": target_id,
                        "member_id": member_id,
                        "error_code": res.error_code,
                    },
                )
                if res.disconnected:
                    raise ForceReconnect(f"nickname change: {res.error_message}")
                return

            self._record_change(target_id)
            logger.info(
                f"nickname set to {nickname!r}",
                extra={"op": "nickname.change", "target_id": target_id, "member_id": member_id},
            )
            delay = engine.delay.next_delay(rec.change_count)
            await engine.clock.sleep(delay)
        finally:
            self._pending.discard(key)

    def _record_change(self, target_id: str) -> None:
        engine = self._engine
        rec = engine.records[target_id]
        rec.change_count += 1
        if rec.change_count >= engine.settings.nickname_change_limit and not rec.cooldown_active:
            rec.cooldown_active = True
            self.arm_cooldown(target_id)
            logger.warning(
                f"change limit reached, cooling down {engine.settings.nickname_cooldown_seconds:.0f}s",
                extra={"op": "cooldown.start", "target_id": target_id},
            )
        engine.save()

    # ------------------------------------------------------------------
    # Cooldown timers
    # ------------------------------------------------------------------

    def arm_cooldown(self, target_id: str) -> None:
        old = self._cooldowns.pop(target_id, None)
        if old is not None:
            old.cancel()
        self._cooldowns[target_id] = self._engine.clock.call_later(
            self._engine.settings.nickname_cooldown_seconds,
            lambda: self._lift_cooldown(target_id),
        )

    def _lift_cooldown(self, target_id: str) -> None:
        self._cooldowns.pop(target_id, None)
        rec = self._engine.records.get(target_id)
        if rec is None:
            return
        rec.cooldown_active = False
        rec.change_count = 0
        logger.info("cooldown lifted", extra={"op": "cooldown.lift", "target_id": target_id})
        try:
            self._engine.save()
        except OSError:
            logger.error("failed to persist cooldown lift", exc_info=True, extra={"target_id": target_id})

    def cancel_timers(self) -> None:
        for handle in self._cooldowns.values():
            handle.cancel()
        self._cooldowns.clear()
        self._pending.clear()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def reconcile_all(self) -> int:
        """One sequential pass over every enabled target.

        A target whose thread info cannot be fetched is skipped until the
        next pass.
        """
        engine = self._engine
        targets = [tid for tid, rec in engine.records.items() if rec.enabled]
        total = 0
        for i, target_id in enumerate(targets):
            if i > 0:
                await engine.clock.sleep(engine.delay.next_gap())
            rec = engine.records.get(target_id)
            if rec is None or not rec.enabled or rec.cooldown_active:
                continue
            res = await engine.client.get_thread_info(target_id)
            if not res.ok:
                logger.warning(
                    f"thread info unavailable: {res.error_message}",
                    extra={"op": "reconcile", "target_id": target_id, "error_code": res.error_code},
                )
                if res.disconnected:
                    raise ForceReconnect(f"thread info: {res.error_message}")
                continue
            total += self.reconcile(target_id, res.value)
        return total

    async def sync_membership(self, target_id: str) -> int:
        """Give members without an override the group nickname, then reconcile."""
        engine = self._engine
        rec = engine.records.get(target_id)
        if rec is None or not rec.enabled:
            return 0
        res = await engine.client.get_thread_info(target_id)
        if not res.ok:
            logger.warning(
                f"membership sync failed: {res.error_message}",
                extra={"op": "membership.sync", "target_id": target_id, "error_code": res.error_code},
            )
            if res.disconnected:
                raise ForceReconnect(f"membership sync: {res.error_message}")
            return 0

        snapshot: ThreadSnapshot = res.value
        added = 0
        for member_id in snapshot.member_ids:
            if member_id == engine.operator_id or member_id in rec.nickname_overrides:
                continue
            rec.nickname_overrides[member_id] = rec.nickname
            added += 1
        if added:
            engine.save()
        logger.info(f"membership synced, {added} new member(s)", extra={"op": "membership.sync", "target_id": target_id})
        return self.reconcile(target_id, snapshot)
