"""
Workspace key wrapping.

Each identity allowed into a workspace holds its own copy of the workspace
key, encrypted (wrapped) under a key derived from that identity's password
and a per-entry salt. The workspace key itself is never stored in the clear.

Entries are bound to (workspace, identity, generation) through AES-GCM
associated data, so an entry copied onto another identity or edited to a
newer generation no longer unwraps.
"""

import base64
import binascii
import json
import logging
from typing import Any, Iterator, Optional
from dataclasses import dataclass

from .passphrase import PassphraseDeriver, PBKDF2_SHA256
from .vault import DecryptError, EncryptedBlob, SymmetricCipher

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base class for key registry failures."""


class DuplicateEntryError(RegistryError):
    """An identity already has an entry; use rotate_identity instead."""


class MissingEntryError(RegistryError):
    """The identity has no entry in this registry."""


class UnwrapError(RegistryError):
    """The entry could not be unwrapped with the given key."""

    def __init__(self, message: str = "invalid credentials or corrupted registry"):
        super().__init__(message)


class StaleEntryError(UnwrapError):
    """The entry was wrapped under an older registry generation."""

    def __init__(self, message: str = "entry predates the current registry generation"):
        super().__init__(message)


@dataclass(frozen=True)
class WrappedKeyEntry:
    """The workspace key wrapped for one identity."""
    identity: str
    salt: bytes
    nonce: bytes
    ciphertext: bytes
    kdf: str = PBKDF2_SHA256
    generation: int = 1

    @property
    def blob(self) -> EncryptedBlob:
        return EncryptedBlob(nonce=self.nonce, ciphertext=self.ciphertext)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary (identity is the registry key)."""
        return {
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "iv": base64.b64encode(self.nonce).decode("ascii"),
            "data": base64.b64encode(self.ciphertext).decode("ascii"),
            "kdf": self.kdf,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, identity: str, data: dict[str, Any]) -> "WrappedKeyEntry":
        """
        Reconstruct from dictionary.

        Raises:
            ValueError: If the entry is malformed
        """
        try:
            return cls(
                identity=identity,
                salt=base64.b64decode(data["salt"], validate=True),
                nonce=base64.b64decode(data["iv"], validate=True),
                ciphertext=base64.b64decode(data["data"], validate=True),
                kdf=data.get("kdf", PBKDF2_SHA256),
                generation=int(data.get("generation", 1)),
            )
        except (KeyError, TypeError, AttributeError, binascii.Error, ValueError):
            raise ValueError(f"Malformed key entry for {identity!r}") from None


class KeyRegistry:
    """
    Wrapped workspace keys for one workspace, keyed by identity username.

    At most one live entry per identity. A second, pending entry may be
    staged while a password change is being persisted; it is promoted once
    the new credential is stored.
    """

    def __init__(
        self,
        owner: str,
        generation: int = 1,
        entries: Optional[dict[str, WrappedKeyEntry]] = None,
        pending: Optional[dict[str, WrappedKeyEntry]] = None,
    ):
        """
        Initialize a registry.

        Args:
            owner: Username of the Admin owning the workspace
            generation: Current generation; bumped when the owner rotates
            entries: Live entries keyed by username
            pending: Staged entries awaiting promotion
        """
        self.owner = owner
        self.generation = generation
        self._entries: dict[str, WrappedKeyEntry] = dict(entries or {})
        self._pending: dict[str, WrappedKeyEntry] = dict(pending or {})

    def __contains__(self, identity: str) -> bool:
        return identity in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def identities(self) -> list[str]:
        return sorted(self._entries)

    def get(self, identity: str) -> Optional[WrappedKeyEntry]:
        return self._entries.get(identity)

    def get_pending(self, identity: str) -> Optional[WrappedKeyEntry]:
        return self._pending.get(identity)

    # ------------------------------------------------------------------
    # Wrap / unwrap
    # ------------------------------------------------------------------

    def associated_data(self, identity: str, generation: int) -> bytes:
        return json.dumps([self.owner, identity, generation]).encode("utf-8")

    def wrap(
        self,
        identity: str,
        wrapping_key: bytes,
        workspace_key: bytes,
        salt: bytes,
        kdf: str = PBKDF2_SHA256,
        generation: Optional[int] = None,
    ) -> WrappedKeyEntry:
        """
        Encrypt the workspace key under an identity's wrapping key.

        The registry is not modified.
        """
        if generation is None:
            generation = self.generation
        blob = SymmetricCipher.encrypt(
            wrapping_key, workspace_key, self.associated_data(identity, generation)
        )
        return WrappedKeyEntry(
            identity=identity,
            salt=salt,
            nonce=blob.nonce,
            ciphertext=blob.ciphertext,
            kdf=kdf,
            generation=generation,
        )

    def unwrap(self, entry: WrappedKeyEntry, wrapping_key: bytes) -> bytes:
        """
        Recover the workspace key from an entry.

        Raises:
            UnwrapError: On any failure, without saying which part failed
        """
        try:
            workspace_key = SymmetricCipher.decrypt(
                wrapping_key, entry.blob, self.associated_data(entry.identity, entry.generation)
            )
        except DecryptError:
            raise UnwrapError() from None

        if len(workspace_key) != SymmetricCipher.KEY_LEN:
            raise UnwrapError()
        return workspace_key

    def seal(
        self,
        identity: str,
        password: str,
        workspace_key: bytes,
        kdf: str = PBKDF2_SHA256,
        generation: Optional[int] = None,
    ) -> WrappedKeyEntry:
        """Derive a fresh wrapping key from a password and wrap the workspace key."""
        wrapping_key, salt = PassphraseDeriver.derive_key(password, kdf=kdf)
        return self.wrap(identity, wrapping_key, workspace_key, salt, kdf, generation)

    def open(self, identity: str, password: str) -> bytes:
        """
        Unwrap the workspace key for an identity using its password.

        A pending entry is tried when the live one does not open, and is
        promoted if it does.

        Raises:
            MissingEntryError: No entry for the identity
            StaleEntryError: A non-owner entry older than the registry
            UnwrapError: The entry does not open with this password
        """
        candidates = [e for e in (self._entries.get(identity), self._pending.get(identity)) if e]
        if not candidates:
            raise MissingEntryError(f"No key entry for {identity!r}")

        stale = False
        for entry in candidates:
            if identity != self.owner and entry.generation < self.generation:
                stale = True
                continue
            try:
                wrapping_key = PassphraseDeriver.derive(password, entry.salt, entry.kdf)
                workspace_key = self.unwrap(entry, wrapping_key)
            except (UnwrapError, ValueError):
                continue
            if entry is self._pending.get(identity):
                self.promote(identity)
            return workspace_key

        if stale:
            raise StaleEntryError()
        raise UnwrapError()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_identity(
        self,
        identity: str,
        wrapping_key: bytes,
        workspace_key: bytes,
        salt: bytes,
        kdf: str = PBKDF2_SHA256,
    ) -> WrappedKeyEntry:
        """
        Insert an entry for a new identity.

        Raises:
            DuplicateEntryError: The identity already has an entry
        """
        if identity in self._entries:
            raise DuplicateEntryError(f"{identity!r} already has a key entry")
        entry = self.wrap(identity, wrapping_key, workspace_key, salt, kdf)
        self._entries[identity] = entry
        return entry

    def rotate_identity(
        self,
        identity: str,
        new_wrapping_key: bytes,
        workspace_key: bytes,
        salt: bytes,
        kdf: str = PBKDF2_SHA256,
    ) -> WrappedKeyEntry:
        """Replace an identity's entry. The workspace key is unchanged."""
        entry = self.wrap(identity, new_wrapping_key, workspace_key, salt, kdf)
        self._entries[identity] = entry
        self._pending.pop(identity, None)
        return entry

    def stage(self, entry: WrappedKeyEntry) -> None:
        """Hold a replacement entry until the matching credential is stored."""
        self._pending[entry.identity] = entry

    def promote(self, identity: str) -> WrappedKeyEntry:
        """
        Make the staged entry live.

        Promoting an owner entry of a newer generation advances the
        registry generation, which leaves older non-owner entries stale.
        """
        entry = self._pending.pop(identity, None)
        if entry is None:
            raise MissingEntryError(f"No pending key entry for {identity!r}")
        self._entries[identity] = entry
        if identity == self.owner and entry.generation > self.generation:
            self.generation = entry.generation
            logger.info("Key registry for %s advanced to generation %d", self.owner, self.generation)
        return entry

    def remove_identity(self, identity: str) -> list[str]:
        """
        Delete an identity's entry.

        Removing the owner empties the whole registry; the caller must then
        delete the workspace.

        Returns:
            Usernames whose entries were removed
        """
        if identity == self.owner:
            removed = sorted(set(self._entries) | set(self._pending))
            self._entries.clear()
            self._pending.clear()
            return removed

        removed = []
        if self._entries.pop(identity, None) is not None:
            removed.append(identity)
        self._pending.pop(identity, None)
        return removed

    def is_stale(self, identity: str) -> bool:
        entry = self._entries.get(identity)
        return (
            entry is not None
            and identity != self.owner
            and entry.generation < self.generation
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "owner": self.owner,
            "generation": self.generation,
            "entries": {name: e.to_dict() for name, e in sorted(self._entries.items())},
        }
        if self._pending:
            data["pending"] = {name: e.to_dict() for name, e in sorted(self._pending.items())}
        return data

    @classmethod
    def from_dict(cls, owner: str, data: dict[str, Any]) -> "KeyRegistry":
        """
        Reconstruct from dictionary.

        Raises:
            ValueError: If the registry is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Malformed key registry")

        entries_data = data.get("entries", {})
        pending_data = data.get("pending", {})
        if not isinstance(entries_data, dict) or not isinstance(pending_data, dict):
            raise ValueError("Malformed key registry")

        try:
            generation = int(data.get("generation", 1))
        except (TypeError, ValueError):
            raise ValueError("Malformed key registry") from None

        return cls(
            owner=owner,
            generation=generation,
            entries={n: WrappedKeyEntry.from_dict(n, e) for n, e in entries_data.items()},
            pending={n: WrappedKeyEntry.from_dict(n, e) for n, e in pending_data.items()},
        )
