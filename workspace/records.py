"""
Stored record types and their keys.

Persisted layout (all values JSON text):
- identity/<username>   profile: role, email, admin_username, name
- credential/<username> PasswordRecord
- workspace/<admin>     EncryptedBlob of the domain payload
- keys/<admin>          KeyRegistry of wrapped workspace keys
- metadata/<admin>      plaintext counts, never key material
"""

import json
import logging
from typing import Any, Optional
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone

from crypto.key_manager import KeyRegistry
from crypto.passphrase import PasswordRecord
from crypto.vault import DecryptError, EncryptedBlob

from .errors import CorruptedState
from .store import KeyValueStore

logger = logging.getLogger(__name__)

OWNER = "owner"
ADMIN = "admin"
WORKER = "worker"
ROLES = (OWNER, ADMIN, WORKER)


def identity_key(username: str) -> str:
    return f"identity/{username}"


def credential_key(username: str) -> str:
    return f"credential/{username}"


def payload_key(admin: str) -> str:
    return f"workspace/{admin}"


def registry_key(admin: str) -> str:
    return f"keys/{admin}"


def metadata_key(admin: str) -> str:
    return f"metadata/{admin}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Identity:
    """An authenticable principal. The password record is stored separately."""
    username: str
    role: str
    email: Optional[str] = None
    admin_username: Optional[str] = None  # set for workers only
    name: str = ""
    created_at: str = field(default_factory=_now)

    @property
    def workspace(self) -> Optional[str]:
        """Username of the Admin whose workspace this identity opens."""
        if self.role == ADMIN:
            return self.username
        if self.role == WORKER:
            return self.admin_username
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Identity":
        return cls(
            username=data["username"],
            role=data["role"],
            email=data.get("email"),
            admin_username=data.get("admin_username"),
            name=data.get("name", ""),
            created_at=data.get("created_at") or _now(),
        )


# ----------------------------------------------------------------------
# Identities and credentials
# ----------------------------------------------------------------------

def read_identity(store: KeyValueStore, username: str) -> Optional[Identity]:
    raw = store.get(identity_key(username))
    if raw is None:
        return None
    try:
        identity = Identity.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError):
        logger.error("Unreadable identity record for %s", username)
        return None
    return identity if identity.role in ROLES else None


def write_identity(store: KeyValueStore, identity: Identity) -> None:
    store.put(identity_key(identity.username), json.dumps(identity.to_dict()))


def read_credential(store: KeyValueStore, username: str) -> Optional[dict[str, Any]]:
    """Raw credential dictionary; validation is left to PasswordCredential.verify."""
    raw = store.get(credential_key(username))
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def write_credential(store: KeyValueStore, username: str, record: PasswordRecord) -> None:
    store.put(credential_key(username), json.dumps(record.to_dict()))


def list_identities(store: KeyValueStore) -> list[Identity]:
    prefix = identity_key("")
    identities = []
    for key in store.keys(prefix):
        identity = read_identity(store, key[len(prefix):])
        if identity is not None:
            identities.append(identity)
    return identities


# ----------------------------------------------------------------------
# Workspace payload, registry, metadata
# ----------------------------------------------------------------------

def read_blob(store: KeyValueStore, admin: str) -> Optional[EncryptedBlob]:
    """
    Load the stored workspace blob.

    Raises:
        CorruptedState: A value is stored but is not a blob
    """
    raw = store.get(payload_key(admin))
    if raw is None:
        return None
    try:
        return EncryptedBlob.from_json(raw)
    except DecryptError:
        raise CorruptedState(f"Workspace data for {admin} is unreadable.") from None


def write_blob(store: KeyValueStore, admin: str, blob: EncryptedBlob) -> None:
    store.put(payload_key(admin), blob.to_json())


def read_registry(store: KeyValueStore, admin: str) -> Optional[KeyRegistry]:
    """
    Load the key registry of a workspace.

    Raises:
        CorruptedState: A registry is stored but cannot be parsed
    """
    raw = store.get(registry_key(admin))
    if raw is None:
        return None
    try:
        return KeyRegistry.from_dict(admin, json.loads(raw))
    except ValueError:
        raise CorruptedState(f"Key registry for {admin} is unreadable.") from None


def write_registry(store: KeyValueStore, registry: KeyRegistry) -> None:
    store.put(registry_key(registry.owner), json.dumps(registry.to_dict()))


def read_metadata(store: KeyValueStore, admin: str) -> Optional[dict[str, int]]:
    raw = store.get(metadata_key(admin))
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def write_metadata(store: KeyValueStore, admin: str, metadata: dict[str, int]) -> None:
    store.put(metadata_key(admin), json.dumps(metadata))


def delete_workspace(store: KeyValueStore, admin: str) -> None:
    """Remove every stored piece of an Admin's workspace."""
    for key in (payload_key(admin), registry_key(admin), metadata_key(admin)):
        store.delete(key)
