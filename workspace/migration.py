"""
Scheme detection and in-place migration of legacy workspaces.

Legacy workspaces were encrypted directly under a key derived from the
Admin's password and credential salt. The current scheme encrypts the
payload under a random workspace key that is wrapped once per identity.

Which scheme a workspace follows is read from storage on every login;
there is no "migration in progress" flag. Migration writes the registry
first and the re-encrypted payload second, so an interrupted run leaves
either the untouched legacy state or a registry next to a legacy payload,
and both are picked up again on the Admin's next login.
"""

import logging
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass

from crypto.key_manager import KeyRegistry, RegistryError
from crypto.passphrase import PassphraseDeriver, PasswordRecord, PBKDF2_SHA256
from crypto.vault import SymmetricCipher

from .errors import CorruptedState
from .locks import WorkspaceLocks
from .payload import WorkspaceStore, empty_payload
from .records import read_blob, read_registry, registry_key, write_registry
from .store import KeyValueStore

logger = logging.getLogger(__name__)


class SchemeState(Enum):
    """Storage state of one Admin's workspace."""
    NEW = "new"  # no registry, no payload
    LEGACY = "legacy"  # untagged payload, no registry
    HALF_MIGRATED = "half_migrated"  # registry written, payload still legacy
    CURRENT = "current"  # registry, tagged payload or none yet
    ORPHANED = "orphaned"  # tagged payload without a registry: key lost


def detect_scheme(store: KeyValueStore, admin: str) -> SchemeState:
    """
    Classify a workspace from what is stored.

    Raises:
        CorruptedState: The stored payload is not a blob at all
    """
    has_registry = registry_key(admin) in store
    blob = read_blob(store, admin)

    if has_registry:
        if blob is not None and WorkspaceStore.is_legacy(blob):
            return SchemeState.HALF_MIGRATED
        return SchemeState.CURRENT

    if blob is None:
        return SchemeState.NEW
    if WorkspaceStore.is_legacy(blob):
        return SchemeState.LEGACY
    return SchemeState.ORPHANED


@dataclass
class MigrationResult:
    """Outcome of resolving an Admin's workspace key."""
    workspace_key: bytes
    state: SchemeState  # state found before anything was written
    migrated: bool = False
    created: bool = False


class MigrationEngine:
    """Brings an Admin's workspace onto the wrapped-key scheme."""

    def __init__(
        self,
        store: KeyValueStore,
        locks: Optional[WorkspaceLocks] = None,
        kdf: str = PBKDF2_SHA256,
    ):
        """
        Initialize the engine.

        Args:
            store: Persistence substrate
            locks: Per-workspace locks shared with other writers
            kdf: KDF used for newly wrapped entries
        """
        self.store = store
        self.locks = locks or WorkspaceLocks()
        self.kdf = kdf

    def detect(self, admin: str) -> SchemeState:
        return detect_scheme(self.store, admin)

    def ensure_current(self, admin: str, password: str, credential: PasswordRecord) -> MigrationResult:
        """
        Resolve the workspace key for an Admin whose password is verified.

        Creates, migrates or finishes migrating the workspace as needed.
        On a workspace already on the current scheme nothing is written
        (apart from promoting a staged password change).

        Raises:
            CorruptedState: The workspace cannot be opened with this password
        """
        with self.locks.hold(admin):
            state = self.detect(admin)
            logger.debug("Workspace %s is in state %s", admin, state.value)

            if state is SchemeState.CURRENT:
                return MigrationResult(self._open_current(admin, password), state)

            if state is SchemeState.NEW:
                return MigrationResult(self.provision(admin, password), state, created=True)

            if state is SchemeState.LEGACY:
                return MigrationResult(self.migrate(admin, password, credential), state, migrated=True)

            if state is SchemeState.HALF_MIGRATED:
                return MigrationResult(self.resume(admin, password, credential), state, migrated=True)

            logger.error("Workspace %s has encrypted data but no key registry", admin)
            raise CorruptedState(
                f"Workspace data for {admin} exists but its key registry is missing. The data cannot be recovered."
            )

    def _open_current(self, admin: str, password: str) -> bytes:
        registry = read_registry(self.store, admin)
        had_pending = registry.get_pending(admin) is not None
        try:
            workspace_key = registry.open(admin, password)
        except RegistryError:
            logger.error("Admin key entry for %s does not open with a verified password", admin)
            raise CorruptedState("Invalid password or corrupted data.") from None

        if had_pending and registry.get_pending(admin) is None:
            write_registry(self.store, registry)
            logger.info("Completed interrupted password change for %s", admin)
        return workspace_key

    def _new_registry(
        self,
        admin: str,
        password: str,
        workspace_key: bytes,
        wrapping: Optional[tuple[bytes, bytes]] = None,
    ) -> KeyRegistry:
        registry = KeyRegistry(admin)
        wrapping_key, salt = wrapping or PassphraseDeriver.derive_key(password, kdf=self.kdf)
        registry.add_identity(admin, wrapping_key, workspace_key, salt, self.kdf)
        return registry

    def provision(
        self,
        admin: str,
        password: str,
        payload: Any = None,
        wrapping: Optional[tuple[bytes, bytes]] = None,
    ) -> bytes:
        """
        Create a workspace for a brand-new Admin.

        Args:
            admin: Workspace owner
            password: The Admin's password
            payload: Initial payload, empty when omitted
            wrapping: ``(wrapping_key, salt)`` already derived from the password

        Returns:
            The new workspace key
        """
        with self.locks.hold(admin):
            workspace_key = SymmetricCipher.generate_key()
            registry = self._new_registry(admin, password, workspace_key, wrapping)
            write_registry(self.store, registry)
            WorkspaceStore.persist(
                self.store, admin, workspace_key, empty_payload() if payload is None else payload
            )
        logger.info("Created workspace for %s", admin)
        return workspace_key

    def _read_legacy(self, admin: str, password: str, credential: PasswordRecord) -> Any:
        blob = read_blob(self.store, admin)
        legacy_key = PassphraseDeriver.derive(password, credential.salt, credential.kdf)
        try:
            return WorkspaceStore.load(legacy_key, blob)
        except CorruptedState:
            logger.error("Legacy workspace %s could not be decrypted during migration", admin)
            raise CorruptedState(
                f"Legacy workspace data for {admin} could not be decrypted. No other key exists for this data."
            ) from None

    def migrate(self, admin: str, password: str, credential: PasswordRecord) -> bytes:
        """
        Upgrade a legacy workspace.

        1. Decrypt the payload with the legacy password-derived key.
        2. Generate a random workspace key.
        3. Write a registry with the Admin's entry.
        4. Re-encrypt and write the payload under the workspace key.

        Returns:
            The new workspace key
        """
        with self.locks.hold(admin):
            logger.info("Migrating workspace %s to wrapped-key format", admin)
            payload = self._read_legacy(admin, password, credential)

            workspace_key = SymmetricCipher.generate_key()
            write_registry(self.store, self._new_registry(admin, password, workspace_key))
            WorkspaceStore.persist(self.store, admin, workspace_key, payload)

        logger.info("Workspace %s migrated", admin)
        return workspace_key

    def resume(self, admin: str, password: str, credential: PasswordRecord) -> bytes:
        """
        Finish a migration interrupted after the registry was written.

        The payload is still legacy. It is re-encrypted under the key the
        registry already holds; if that entry does not open, a new key and
        registry replace it.
        """
        with self.locks.hold(admin):
            logger.warning("Resuming interrupted migration of workspace %s", admin)
            payload = self._read_legacy(admin, password, credential)

            workspace_key = None
            try:
                registry = read_registry(self.store, admin)
                workspace_key = registry.open(admin, password)
            except (CorruptedState, RegistryError):
                logger.warning("Registry of half-migrated workspace %s unusable, rebuilding", admin)

            if workspace_key is None:
                workspace_key = SymmetricCipher.generate_key()
                write_registry(self.store, self._new_registry(admin, password, workspace_key))

            WorkspaceStore.persist(self.store, admin, workspace_key, payload)

        logger.info("Workspace %s migrated", admin)
        return workspace_key
