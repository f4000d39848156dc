"""
Remote platform port.

The agent talks to the chat platform only through RemoteClient:
- base: abstract client + error classification
- memory: in-memory client (tests, demo runs)
- loader: resolves the configured "module:callable" client factory
"""

from .base import RemoteClient, classify_error, failure_from_exception
from .loader import ClientFactory, ClientFactoryError, load_client_factory
from .memory import InMemoryClient, create_demo_client

__all__ = [
    "ClientFactory",
    "ClientFactoryError",
    "InMemoryClient",
    "RemoteClient",
    "classify_error",
    "create_demo_client",
    "failure_from_exception",
    "load_client_factory",
]
