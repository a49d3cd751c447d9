"""Sessions, their announced clients, and the registry that owns them.

Public API: ClientRegistry, LogPaths, Session, SessionRegistry
Internal: clients, registry, session
"""

from sessionkeeper.session.clients import ClientRegistry
from sessionkeeper.session.registry import SessionRegistry
from sessionkeeper.session.session import LogPaths, Session

__all__ = [
    "ClientRegistry",
    "LogPaths",
    "Session",
    "SessionRegistry",
]
