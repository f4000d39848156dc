"""Session lifecycle: login, run, reconnect with backoff.

Each iteration of `run()` is one session:

1. load credentials (InvalidSessionError if missing/malformed)
2. build a client from the factory and log in (LoginError on refusal)
3. configure live events, reload the lock store, start the engine loops
4. consume the live event stream until it ends, the engine asks for a
   reconnect, or a stop is requested

Any failure ends the session; the next iteration waits
`min(cap, attempts * step)` seconds first. A successful login resets the
attempt counter.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..kernel.errors import ForceReconnect, InvalidSessionError, LoginError
from ..kernel.session import SessionStore
from ..kernel.settings import AgentSettings
from ..ports.remote.base import RemoteClient
from ..ports.remote.loader import ClientFactory
from .clock import Clock
from .engine import ReconciliationEngine
from .keepalive import backup_session

logger = logging.getLogger("grouplock.lifecycle")


@dataclass
class RetryPolicy:
    step_seconds: float = 5.0
    cap_seconds: float = 60.0
    attempts: int = 0

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "RetryPolicy":
        return cls(step_seconds=settings.backoff_step_seconds, cap_seconds=settings.backoff_cap_seconds)

    def record_failure(self) -> float:
        self.attempts += 1
        return self.backoff_seconds()

    def backoff_seconds(self) -> float:
        return min(self.cap_seconds, self.attempts * self.step_seconds)

    def reset(self) -> None:
        self.attempts = 0


class SessionLifecycleManager:
    def __init__(
        self,
        settings: AgentSettings,
        engine: ReconciliationEngine,
        client_factory: ClientFactory,
        session_store: SessionStore,
        *,
        clock: Optional[Clock] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.client_factory = client_factory
        self.session_store = session_store
        self.clock: Clock = clock or engine.clock
        self.retry = retry or RetryPolicy.from_settings(settings)
        self.client: Optional[RemoteClient] = None
        self.sessions = 0
        self.last_error = ""
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await self._run_session()
            except asyncio.CancelledError:
                raise
            except ForceReconnect as e:
                self.last_error = str(e)
                logger.warning(f"session ended, reconnecting: {e}", extra={"op": "session.reconnect"})
            except InvalidSessionError as e:
                self.last_error = str(e)
                logger.error(f"credentials unusable: {e}", extra={"op": "session.credentials"})
            except LoginError as e:
                self.last_error = str(e)
                logger.error(f"login failed: {e}", extra={"op": "session.login"})
            except Exception as e:
                self.last_error = str(e) or type(e).__name__
                logger.error("session crashed", exc_info=True, extra={"op": "session.run"})
            if self._stop.is_set():
                break
            delay = self.retry.record_failure()
            logger.info(
                f"retrying in {delay:.0f}s",
                extra={"op": "session.backoff", "attempt": self.retry.attempts, "delay_s": delay},
            )
            await self._sleep_or_stop(delay)
        logger.info("session manager stopped", extra={"op": "session.stop"})

    async def _sleep_or_stop(self, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, stopper):
                t.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)

    async def _run_session(self) -> None:
        credentials = self.session_store.load()
        client = self.client_factory()
        self.client = client
        logged_in = False
        try:
            res = await client.login(credentials)
            if not res.ok:
                raise LoginError(res.error_message or "login rejected")
            logged_in = True
            self.retry.reset()
            self.sessions += 1

            configured = await client.configure(listen_events=True, self_listen=True)
            if not configured.ok:
                logger.warning(f"event delivery not configured: {configured.error_message}", extra={"op": "session.configure"})

            operator_id = self.settings.boss_uid or client.current_user_id()
            logger.info(f"logged in as {operator_id}", extra={"op": "session.login"})

            self.engine.load()
            self.engine.attach(client, operator_id)
            self.engine.start(session_store=self.session_store)
            await self._serve(client)
        finally:
            await self._teardown(client, persist=logged_in)

    async def _consume(self, client: RemoteClient) -> None:
        async for event in client.events():
            try:
                await self.engine.handle_event(event)
            except (ForceReconnect, asyncio.CancelledError):
                raise
            except Exception:
                logger.warning(
                    f"event handler failed ({event.kind})",
                    exc_info=True,
                    extra={"op": "event", "target_id": event.thread_id},
                )

    async def _serve(self, client: RemoteClient) -> None:
        consumer = asyncio.ensure_future(self._consume(client))
        reconnect = asyncio.ensure_future(self.engine.wait_reconnect())
        stopper = asyncio.ensure_future(self._stop.wait())
        waiters = {consumer, reconnect, stopper}
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in waiters:
                t.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if stopper in done:
            return
        if reconnect in done:
            raise ForceReconnect(reconnect.result())
        exc = consumer.exception()
        if exc is not None:
            raise exc
        raise ForceReconnect("event stream ended")

    async def _teardown(self, client: RemoteClient, *, persist: bool) -> None:
        await self.engine.stop()
        if persist:
            self._persist(client)
        try:
            await client.logout()
        except Exception:
            logger.warning("logout failed", exc_info=True, extra={"op": "session.logout"})
        self.client = None

    def _persist(self, client: Optional[RemoteClient]) -> None:
        try:
            backup_session(client, self.session_store)
        except OSError:
            logger.error("failed to write session snapshot", exc_info=True, extra={"op": "session.save"})
        try:
            self.engine.flush()
        except OSError:
            logger.error("failed to write lock store", exc_info=True, extra={"op": "store.flush"})

    def shutdown_sync(self) -> None:
        """Persist session snapshot and lock store without awaiting (signal handlers)."""
        self._persist(self.client)
        self.request_stop()

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.client is not None and self.engine.attached,
            "attempts": self.retry.attempts,
            "sessions": self.sessions,
            "last_error": self.last_error,
        }
