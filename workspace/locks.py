"""
Per-workspace mutual exclusion.

Identity management and migration do a read-modify-write of the key
registry and the payload; those are serialized per workspace. Different
workspaces never wait on each other. A lock outlives its workspace so a
re-created workspace of the same name is guarded by the same object.
"""

import threading
from contextlib import contextmanager
from typing import Iterator


class WorkspaceLocks:
    """Hands out one re-entrant lock per workspace owner."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        # Serializes username and email uniqueness checks with the writes that follow.
        # Held only around storage access, never across key stretching.
        self.identities = threading.RLock()

    def get(self, admin: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(admin)
            if lock is None:
                lock = self._locks[admin] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, admin: str) -> Iterator[None]:
        """Hold the lock for one workspace for the duration of the block."""
        lock = self.get(admin)
        with lock:
            yield
