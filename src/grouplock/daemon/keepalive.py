"""Session liveness: typing keep-alive and credential snapshots."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..kernel.errors import ForceReconnect
from ..kernel.session import SessionStore
from ..ports.remote.base import RemoteClient, classify_error

if TYPE_CHECKING:
    from .engine import ReconciliationEngine

logger = logging.getLogger("grouplock.keepalive")


async def typing_round(engine: "ReconciliationEngine") -> int:
    """Send one typing indicator to every enabled or title-locked target."""
    targets = [tid for tid, rec in engine.records.items() if rec.enabled or rec.title_lock_enabled]
    sent = 0
    for i, target_id in enumerate(targets):
        if i > 0:
            await engine.clock.sleep(engine.settings.typing_pause_seconds)
        res = await engine.client.send_typing_indicator(target_id)
        if res.ok:
            sent += 1
            continue
        if res.error_code == "unsupported":
            logger.debug("typing indicator not supported by client", extra={"op": "typing"})
            return sent
        if res.disconnected or classify_error(res.error_message) == "disconnected":
            raise ForceReconnect(f"typing indicator: {res.error_message}")
        logger.warning(
            f"typing indicator failed: {res.error_message}",
            extra={"op": "typing", "target_id": target_id, "error_code": res.error_code},
        )
    logger.debug(f"typing indicator sent to {sent} target(s)", extra={"op": "typing"})
    return sent


def backup_session(client: Optional[RemoteClient], store: SessionStore) -> bool:
    if client is None:
        return False
    return store.save(client.session_snapshot())
