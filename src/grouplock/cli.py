from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Optional

import yaml  # type: ignore

from . import __version__
from .daemon.engine import ReconciliationEngine
from .daemon.lifecycle import SessionLifecycleManager
from .kernel.errors import CorruptStoreError, InvalidSessionError
from .kernel.session import SessionStore
from .kernel.settings import AgentSettings, load_settings
from .kernel.store import LockStore
from .paths import ensure_home
from .ports.remote.base import RemoteClient
from .ports.remote.loader import ClientFactory, ClientFactoryError, load_client_factory
from .ports.remote.memory import create_demo_client
from .util.obslog import setup_root_logging

logger = logging.getLogger("grouplock.cli")


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _settings() -> AgentSettings:
    return load_settings(home=ensure_home())


def _session_store(settings: AgentSettings) -> SessionStore:
    return SessionStore(settings.session_path, env_value=os.environ.get("GROUPLOCK_APPSTATE"))


async def _run_agent(settings: AgentSettings, factory: ClientFactory) -> int:
    engine = ReconciliationEngine(settings)
    manager = SessionLifecycleManager(settings, engine, factory, _session_store(settings))

    server = None
    web: Optional["asyncio.Future[Any]"] = None
    if settings.http_enabled:
        from .ports.web.app import create_app
        from .ports.web.server import build_server

        server = build_server(create_app(engine, manager), settings)
        web = asyncio.ensure_future(server.serve())

    def _on_signal(signame: str) -> None:
        logger.info(f"received {signame}, saving state", extra={"op": "shutdown"})
        manager.shutdown_sync()
        if server is not None:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"cannot install handler for {sig.name}", extra={"op": "shutdown"})

    try:
        await manager.run()
    finally:
        if server is not None and web is not None:
            server.should_exit = True
            await asyncio.gather(web, return_exceptions=True)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        settings = _settings()
    except yaml.YAMLError as e:
        print(f"error: settings.yaml is not valid YAML: {e}", file=sys.stderr)
        return 2
    setup_root_logging(component="grouplock", level=settings.log_level, fmt=settings.log_format)

    factory: ClientFactory
    if args.demo:
        def factory() -> RemoteClient:
            return create_demo_client(settings)
    else:
        try:
            factory = load_client_factory(settings.client_factory, settings)
        except ClientFactoryError as e:
            print(f"error: {e}", file=sys.stderr)
            return 2

    logger.info(f"grouplock {__version__} starting, home={settings.home}", extra={"op": "startup"})
    return asyncio.run(_run_agent(settings, factory))


def cmd_locks(_: argparse.Namespace) -> int:
    settings = _settings()
    store = LockStore(settings.lock_store_path, default_nickname=settings.default_nickname)
    try:
        records = store.load()
    except CorruptStoreError as e:
        _print_json({"ok": False, "error": {"code": "corrupt_store", "message": str(e)}})
        return 1
    _print_json({"ok": True, "result": {tid: rec.to_store() for tid, rec in records.items()}})
    return 0


def cmd_check_session(_: argparse.Namespace) -> int:
    settings = _settings()
    try:
        credentials = _session_store(settings).load()
    except InvalidSessionError as e:
        _print_json({"ok": False, "error": {"code": "invalid_session", "message": str(e)}})
        return 1
    _print_json({"ok": True, "result": {"entries": len(credentials)}})
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="grouplock", description="Nickname and group-title lock agent")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the agent in the foreground")
    p_run.add_argument("--demo", action="store_true", help="Use the in-memory client instead of client_factory")
    p_run.set_defaults(func=cmd_run)

    p_locks = sub.add_parser("locks", help="Print the lock store")
    p_locks.set_defaults(func=cmd_locks)

    p_check = sub.add_parser("check-session", help="Validate the stored credential blob")
    p_check.set_defaults(func=cmd_check_session)

    p_version = sub.add_parser("version", help="Show version")
    p_version.set_defaults(func=cmd_version)
    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
