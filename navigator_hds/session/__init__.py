"""Compartmented sessions: session manager, remote session stores, sync queue."""

from .data import SessionData
from .manager import SessionConfig, SessionManager
from .remote import (
    AbstractSessionStore,
    HTTPSessionStore,
    MemorySessionStore,
    PgSessionStore,
    SessionRecord,
)
from .sync import RemoteSync

__all__ = [
    "SessionData",
    "SessionConfig",
    "SessionManager",
    "AbstractSessionStore",
    "HTTPSessionStore",
    "MemorySessionStore",
    "PgSessionStore",
    "SessionRecord",
    "RemoteSync",
]
