"""
Multi-identity workspace core.

Handles:
- Identity directory (Owner, Admins, Workers)
- Per-workspace key registries
- Migration of legacy password-keyed workspaces
- Login state machine and payload encryption
"""

from .errors import (
    CorruptedState,
    IdentityConflict,
    InvalidCredentials,
    MigrationRequired,
    PermissionDenied,
    StaleRegistration,
    WorkspaceError,
)
from .identities import IdentityDirectory
from .locks import WorkspaceLocks
from .migration import MigrationEngine, SchemeState
from .payload import WorkspaceStore
from .session import SessionController, SessionState
from .store import FileStore, KeyValueStore, MemoryStore

__all__ = [
    "CorruptedState",
    "IdentityConflict",
    "InvalidCredentials",
    "MigrationRequired",
    "PermissionDenied",
    "StaleRegistration",
    "WorkspaceError",
    "IdentityDirectory",
    "WorkspaceLocks",
    "MigrationEngine",
    "SchemeState",
    "WorkspaceStore",
    "SessionController",
    "SessionState",
    "FileStore",
    "KeyValueStore",
    "MemoryStore",
]
