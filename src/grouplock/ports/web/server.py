from __future__ import annotations

import contextlib
import logging
import socket
from typing import Iterator, List, Optional

import uvicorn
from fastapi import FastAPI

from ...kernel.settings import AgentSettings

logger = logging.getLogger("grouplock.web")


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that shares the agent's event loop.

    The agent installs its own SIGINT/SIGTERM handlers (they must persist
    state first), so uvicorn must not replace them. A port that cannot be
    bound disables the keep-alive endpoint instead of ending the process.
    """

    startup_failed = False

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    async def startup(self, sockets: Optional[List[socket.socket]] = None) -> None:
        try:
            await super().startup(sockets=sockets)
        except (SystemExit, OSError) as e:
            # uvicorn exits the interpreter when the port is taken.
            self.startup_failed = True
            self.should_exit = True
            logger.error(
                f"keep-alive port unavailable, continuing without it: {e!r}",
                extra={"op": "web.start", "error_code": "bind_failed"},
            )


def build_server(app: FastAPI, settings: AgentSettings) -> EmbeddedServer:
    config = uvicorn.Config(
        app,
        host=str(settings.http_host),
        port=int(settings.http_port),
        log_level=str(settings.log_level or "info").lower(),
        access_log=False,
        log_config=None,
    )
    logger.info(f"keep-alive port on {settings.http_host}:{settings.http_port}", extra={"op": "web.start"})
    return EmbeddedServer(config)
