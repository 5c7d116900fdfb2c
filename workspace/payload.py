"""
Workspace payload encryption.

The domain payload (sites, workers, tasks) is JSON, encrypted under the
workspace key. Plaintext counts are written next to it as a separate,
explicitly non-secret metadata record for cross-tenant reporting.
"""

import logging
from typing import Any

from crypto.vault import DecryptError, EncryptedBlob, SymmetricCipher

from .errors import CorruptedState
from .records import write_blob, write_metadata
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def empty_payload() -> dict[str, list]:
    """Payload of a brand-new workspace."""
    return {"sites": [], "workers": [], "tasks": []}


class WorkspaceStore:
    """Encrypts and decrypts the domain payload under the workspace key."""

    # Blobs written under the wrapped-key scheme carry this tag.
    # Legacy blobs have none.
    SCHEME_VERSION = 2

    @classmethod
    def save(cls, workspace_key: bytes, payload: Any) -> EncryptedBlob:
        """Serialize and encrypt a payload."""
        return SymmetricCipher.encrypt_json(workspace_key, payload, version=cls.SCHEME_VERSION)

    @classmethod
    def load(cls, workspace_key: bytes, blob: EncryptedBlob) -> Any:
        """
        Decrypt and parse a payload.

        Raises:
            CorruptedState: Wrong key or corrupted blob
        """
        try:
            return SymmetricCipher.decrypt_json(workspace_key, blob)
        except DecryptError:
            raise CorruptedState("Workspace data is corrupted or the key is incorrect.") from None

    @staticmethod
    def is_legacy(blob: EncryptedBlob) -> bool:
        return blob.version is None

    @staticmethod
    def metadata_for(payload: Any) -> dict[str, int]:
        """Plaintext counts for reporting. Never includes content."""
        if not isinstance(payload, dict):
            return {"sites": 0, "workers": 0, "tasks": 0}

        def count(*names: str) -> int:
            for name in names:
                value = payload.get(name)
                if isinstance(value, list):
                    return len(value)
            return 0

        # Payloads written by older clients call workers "vas"
        return {
            "sites": count("sites"),
            "workers": count("workers", "vas"),
            "tasks": count("tasks"),
        }

    @classmethod
    def persist(cls, store: KeyValueStore, admin: str, workspace_key: bytes, payload: Any) -> EncryptedBlob:
        """Encrypt a payload and write it together with its metadata."""
        blob = cls.save(workspace_key, payload)
        write_blob(store, admin, blob)
        write_metadata(store, admin, cls.metadata_for(payload))
        logger.debug("Saved workspace %s (%d bytes)", admin, blob.size)
        return blob
