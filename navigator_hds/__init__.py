"""Navigator HDS.

Session-scoped data compartments with timed eviction, compartmented sessions
mirrored to a durable store, and a password-encrypted local vault.
"""
from .version import __version__
from .conf import HDSSettings
from .storage import KeyValueStore, MemoryStorage, FileStorage
from .compartment import CompartmentConfig, CompartmentStore
from .session import (
    SessionConfig,
    SessionManager,
    MemorySessionStore,
    HTTPSessionStore,
    PgSessionStore,
)
from .vault import SecureVault, VaultConfig

__all__ = (
    "__version__",
    "HDSSettings",
    "KeyValueStore",
    "MemoryStorage",
    "FileStorage",
    "CompartmentConfig",
    "CompartmentStore",
    "SessionConfig",
    "SessionManager",
    "MemorySessionStore",
    "HTTPSessionStore",
    "PgSessionStore",
    "SecureVault",
    "VaultConfig",
)
