"""Keep-alive HTTP port.

Hosting platforms that idle out silent processes poll `/`; `/api/v1/status`
exposes the engine's view of every lock for operators.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ... import __version__
from ...daemon.engine import ReconciliationEngine
from ...daemon.lifecycle import SessionLifecycleManager
from ...util.time import utc_now_iso


def create_app(engine: ReconciliationEngine, manager: Optional[SessionLifecycleManager] = None) -> FastAPI:
    app = FastAPI(title="grouplock", version=__version__)

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return "online"

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        return {"ok": True, "result": {"version": __version__, "ts": utc_now_iso()}}

    @app.get("/api/v1/status")
    async def status() -> Dict[str, Any]:
        result: Dict[str, Any] = {"version": __version__, "engine": engine.status()}
        if manager is not None:
            result["session"] = manager.status()
        return {"ok": True, "result": result}

    return app
