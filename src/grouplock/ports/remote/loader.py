from __future__ import annotations

import importlib
from typing import Any, Callable

from ...kernel.errors import GroupLockError
from .base import RemoteClient

ClientFactory = Callable[[], RemoteClient]


class ClientFactoryError(GroupLockError):
    """The configured client factory cannot be imported or called."""


def load_client_factory(ref: str, settings: Any) -> ClientFactory:
    """Resolve "package.module:callable" into a zero-argument client factory.

    The callable receives the agent settings and must return a RemoteClient.
    """
    s = (ref or "").strip()
    if not s:
        raise ClientFactoryError("no remote client configured (set client_factory or GROUPLOCK_CLIENT_FACTORY)")
    module_name, sep, attr = s.partition(":")
    if not sep or not module_name or not attr:
        raise ClientFactoryError(f"client_factory must look like 'package.module:callable', got {s!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ClientFactoryError(f"cannot import {module_name!r}: {e}") from e
    target = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ClientFactoryError(f"{module_name!r} has no attribute {attr!r}") from e
    if not callable(target):
        raise ClientFactoryError(f"{s!r} is not callable")

    def _factory() -> RemoteClient:
        client = target(settings)
        if not isinstance(client, RemoteClient):
            raise ClientFactoryError(f"{s!r} returned {type(client).__name__}, expected RemoteClient")
        return client

    return _factory
