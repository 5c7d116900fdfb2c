"""Root conftest: sets env vars BEFORE config.py is imported.

config.py builds its singleton at import time and creates the storage
directory, so it must point at a throwaway location before pytest
collects any test that imports main or config.
"""

import os
import tempfile

# Force-set (not setdefault) to prevent real env vars from leaking into tests
os.environ["WORKSPACE_STORAGE_DIR"] = tempfile.mkdtemp(prefix="workspace-vault-test-")
os.environ["WORKSPACE_KDF"] = "pbkdf2-sha256"
os.environ["WORKSPACE_REQUIRE_LOGIN_CODE"] = "0"

from typing import Any, Callable, Optional  # noqa: E402

import pytest  # noqa: E402

from crypto.passphrase import PassphraseDeriver, PasswordCredential  # noqa: E402
from crypto.vault import SymmetricCipher  # noqa: E402
from workspace import IdentityDirectory, MemoryStore, SessionController, WorkspaceLocks  # noqa: E402
from workspace.records import ADMIN, WORKER, Identity, write_blob, write_credential, write_identity  # noqa: E402

LEGACY_PAYLOAD = {
    "sites": [{"id": 1, "name": "example.com"}],
    "vas": [{"id": 1, "name": "Bob"}],
    "tasks": [{"id": 1, "title": "Write post"}, {"id": 2, "title": "Review"}],
}


@pytest.fixture
def legacy_payload() -> dict:
    return {k: [dict(item) for item in v] for k, v in LEGACY_PAYLOAD.items()}


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def locks() -> WorkspaceLocks:
    return WorkspaceLocks()


@pytest.fixture
def directory(store, locks) -> IdentityDirectory:
    return IdentityDirectory(store, locks)


@pytest.fixture
def make_controller(store, locks) -> Callable[..., SessionController]:
    """Factory for controllers sharing the test store and locks."""
    def factory(**kwargs) -> SessionController:
        return SessionController(store, locks, **kwargs)
    return factory


@pytest.fixture
def alice(directory) -> bytes:
    """Admin "alice" (password "alice-pw") with a fresh workspace. Returns the workspace key."""
    _, workspace_key = directory.sign_up("alice", "alice-pw", "alice@example.com")
    return workspace_key


@pytest.fixture
def plant_legacy_tenant(store) -> Callable[..., None]:
    """Write an Admin as older clients stored it: payload keyed by the password."""
    def plant(
        admin: str,
        password: str,
        payload: Any = None,
        workers: Optional[dict[str, str]] = None,
    ) -> None:
        record = PasswordCredential.hash(password)
        write_identity(store, Identity(username=admin, role=ADMIN))
        write_credential(store, admin, record)

        legacy_key = PassphraseDeriver.derive(password, record.salt)
        blob = SymmetricCipher.encrypt_json(legacy_key, LEGACY_PAYLOAD if payload is None else payload)
        write_blob(store, admin, blob)

        for username, worker_password in (workers or {}).items():
            write_identity(store, Identity(username=username, role=WORKER, admin_username=admin))
            write_credential(store, username, PasswordCredential.hash(worker_password))
    return plant
