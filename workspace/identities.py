"""
Identity directory.

Owners, Admins and Workers share one username space. Each identity has a
profile record and a separately stored password record; identities that
open a workspace also hold an entry in that workspace's key registry.
"""

import logging
from typing import Any, Optional

from crypto.key_manager import KeyRegistry
from crypto.passphrase import PassphraseDeriver, PasswordCredential, PasswordRecord, PBKDF2_SHA256

from .errors import IdentityConflict, MigrationRequired, PermissionDenied
from .locks import WorkspaceLocks
from .migration import MigrationEngine
from .records import (
    ADMIN,
    OWNER,
    ROLES,
    WORKER,
    Identity,
    credential_key,
    delete_workspace,
    identity_key,
    list_identities,
    read_credential,
    read_identity,
    read_registry,
    write_credential,
    write_identity,
    write_registry,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

# Role names used by exported user lists from older clients
LEGACY_ROLES = {"va": WORKER}


class IdentityDirectory:
    """Creates, looks up, re-keys and deletes identities."""

    def __init__(
        self,
        store: KeyValueStore,
        locks: Optional[WorkspaceLocks] = None,
        kdf: str = PBKDF2_SHA256,
    ):
        """
        Initialize the directory.

        Args:
            store: Persistence substrate
            locks: Per-workspace locks shared with the session layer
            kdf: KDF for new password records and wrapped entries
        """
        self.store = store
        self.locks = locks or WorkspaceLocks()
        self.kdf = kdf
        self.engine = MigrationEngine(store, self.locks, kdf)
        self._create_lock = self.locks.identities

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, username: str) -> Optional[Identity]:
        return read_identity(self.store, username)

    def find(self, identifier: str) -> Optional[Identity]:
        """Look up by username, then by email."""
        if not identifier:
            return None
        identity = self.get(identifier)
        if identity is not None:
            return identity
        for candidate in self.all():
            if candidate.email and candidate.email == identifier:
                return candidate
        return None

    def all(self) -> list[Identity]:
        return list_identities(self.store)

    def admins(self) -> list[Identity]:
        return [i for i in self.all() if i.role == ADMIN]

    def workers_of(self, admin: str) -> list[Identity]:
        return [i for i in self.all() if i.role == WORKER and i.admin_username == admin]

    def credential(self, username: str) -> Optional[dict[str, Any]]:
        return read_credential(self.store, username)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _check_available(self, username: str, email: Optional[str], exclude: Optional[str] = None) -> None:
        if not username or "/" in username or username != username.strip():
            raise IdentityConflict("Invalid username.")
        if exclude is None and self.get(username) is not None:
            raise IdentityConflict("Username already exists.")
        if email:
            for other in self.all():
                if other.username != (exclude or username) and other.email == email:
                    raise IdentityConflict("Email is already in use.")

    @staticmethod
    def _require_password(password: Optional[str]) -> str:
        if not password:
            raise IdentityConflict("A password is required.")
        return password

    def _store_identity(self, identity: Identity, record: PasswordRecord) -> None:
        write_credential(self.store, identity.username, record)
        write_identity(self.store, identity)

    def create_owner(self, username: str, password: str, email: Optional[str] = None) -> Identity:
        """Create the Owner, who oversees all Admins and has no workspace."""
        self._require_password(password)
        record = PasswordCredential.hash(password, self.kdf)
        with self._create_lock:
            if any(i.role == OWNER for i in self.all()):
                raise IdentityConflict("An owner account already exists.")
            self._check_available(username, email)
            identity = Identity(username=username, role=OWNER, email=email)
            self._store_identity(identity, record)
        logger.info("Created owner %s", username)
        return identity

    def add_admin(self, username: str, password: str, email: Optional[str] = None) -> Identity:
        """Create an Admin. Their workspace is created on first login."""
        self._require_password(password)
        record = PasswordCredential.hash(password, self.kdf)
        with self._create_lock:
            self._check_available(username, email)
            identity = Identity(username=username, role=ADMIN, email=email)
            self._store_identity(identity, record)
        logger.info("Added admin %s", username)
        return identity

    def sign_up(self, username: str, password: str, email: Optional[str] = None) -> tuple[Identity, bytes]:
        """
        Register a new Admin and create their workspace.

        Returns:
            Tuple of (identity, workspace_key)
        """
        self._require_password(password)
        # No key stretching under the directory lock
        wrapping = self._derive(password)
        record = PasswordCredential.hash(password, self.kdf)
        with self._create_lock:
            self._check_available(username, email)
            with self.locks.hold(username):
                # Leftovers of a deleted Admin with the same name
                delete_workspace(self.store, username)
                workspace_key = self.engine.provision(username, password, wrapping=wrapping)
                identity = Identity(username=username, role=ADMIN, email=email)
                self._store_identity(identity, record)
        logger.info("Admin %s signed up", username)
        return identity, workspace_key

    def _workspace_registry(self, admin: str) -> KeyRegistry:
        registry = read_registry(self.store, admin)
        if registry is None:
            raise MigrationRequired()
        return registry

    def _require_admin(self, admin: str) -> Identity:
        identity = self.get(admin)
        if identity is None or identity.role != ADMIN:
            raise PermissionDenied("Only an admin can manage workers.")
        return identity

    def add_worker(
        self,
        admin: str,
        workspace_key: bytes,
        username: str,
        password: str,
        email: Optional[str] = None,
        name: str = "",
    ) -> Identity:
        """Create a Worker and wrap the Admin's workspace key for them."""
        self._require_admin(admin)
        self._require_password(password)
        wrapping_key, salt = self._derive(password)
        record = PasswordCredential.hash(password, self.kdf)

        with self._create_lock, self.locks.hold(admin):
            self._check_available(username, email)
            registry = self._workspace_registry(admin)

            # An entry without an identity is left over from an interrupted add
            if username in registry:
                logger.warning("Replacing orphaned key entry %s in workspace %s", username, admin)
                registry.remove_identity(username)

            registry.add_identity(username, wrapping_key, workspace_key, salt, self.kdf)
            write_registry(self.store, registry)

            identity = Identity(
                username=username,
                role=WORKER,
                email=email,
                admin_username=admin,
                name=name or username,
            )
            self._store_identity(identity, record)

        logger.info("Admin %s added worker %s", admin, username)
        return identity

    def _derive(self, password: str) -> tuple[bytes, bytes]:
        return PassphraseDeriver.derive_key(password, kdf=self.kdf)

    # ------------------------------------------------------------------
    # Password changes
    # ------------------------------------------------------------------

    def _rekey(self, registry: KeyRegistry, username: str, password: str, workspace_key: bytes, generation: int) -> None:
        """
        Replace an identity's credential and key entry together.

        The new entry is staged, the credential written, then the entry
        promoted. A crash in between leaves one password that still opens
        its entry.
        """
        registry.stage(registry.seal(username, password, workspace_key, self.kdf, generation))
        write_registry(self.store, registry)
        write_credential(self.store, username, PasswordCredential.hash(password, self.kdf))
        registry.promote(username)
        write_registry(self.store, registry)

    def update_worker(
        self,
        admin: str,
        workspace_key: bytes,
        username: str,
        password: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Identity:
        """
        Edit a Worker's profile. A new password also re-wraps the workspace
        key for them under the current registry generation.
        """
        self._require_admin(admin)
        with self.locks.hold(admin):
            worker = self.get(username)
            if worker is None or worker.role != WORKER or worker.admin_username != admin:
                raise PermissionDenied("Worker does not belong to this workspace.")
            if email is not None:
                self._check_available(username, email, exclude=username)
                worker.email = email or None
            if name is not None:
                worker.name = name

            if password:
                registry = self._workspace_registry(admin)
                self._rekey(registry, username, password, workspace_key, registry.generation)
                logger.info("Admin %s reset password of worker %s", admin, username)

            write_identity(self.store, worker)
        return worker

    def change_password(self, username: str, workspace_key: Optional[bytes], new_password: str) -> Identity:
        """
        Change an identity's own password.

        For an Admin the registry generation advances, so Worker entries
        wrapped before the change stop opening until the Admin resets each
        Worker's password.
        """
        self._require_password(new_password)
        identity = self.get(username)
        if identity is None:
            raise PermissionDenied("Unknown account.")

        if identity.role == OWNER:
            write_credential(self.store, username, PasswordCredential.hash(new_password, self.kdf))
            logger.info("Owner %s changed password", username)
            return identity

        if workspace_key is None:
            raise PermissionDenied("Workspace key is not available. Please log in again.")

        admin = identity.workspace
        with self.locks.hold(admin):
            registry = self._workspace_registry(admin)
            generation = registry.generation + 1 if identity.role == ADMIN else registry.generation
            self._rekey(registry, username, new_password, workspace_key, generation)

        if identity.role == ADMIN:
            stale = [w for w in registry.identities if registry.is_stale(w)]
            logger.info("Admin %s changed password; %d worker entries now stale", username, len(stale))
        else:
            logger.info("Worker %s changed password", username)
        return identity

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _forget(self, username: str) -> None:
        self.store.delete(identity_key(username))
        self.store.delete(credential_key(username))

    def delete_identity(self, username: str) -> list[str]:
        """
        Delete an identity.

        Deleting an Admin deletes their Workers and the whole workspace.

        Returns:
            Usernames that were deleted
        """
        identity = self.get(username)
        if identity is None:
            return []
        if identity.role == OWNER:
            raise PermissionDenied("The owner account cannot be deleted.")

        admin = identity.workspace
        if admin is None:
            self._forget(username)
            return [username]

        with self.locks.hold(admin):
            if identity.role == WORKER:
                registry = read_registry(self.store, admin)
                if registry is not None and registry.remove_identity(username):
                    write_registry(self.store, registry)
                self._forget(username)
                logger.info("Deleted worker %s of workspace %s", username, admin)
                return [username]

            deleted = [w.username for w in self.workers_of(admin)]
            for worker in deleted:
                self._forget(worker)
            self._forget(admin)
            delete_workspace(self.store, admin)
            deleted.append(admin)

        logger.info("Deleted admin %s with %d worker(s)", admin, len(deleted) - 1)
        return deleted

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_users(self, records: list[Any]) -> list[str]:
        """
        Import a user list exported by an older client.

        Records still carrying a plaintext password are hashed on import
        and the plaintext is dropped. Imported Workers have no key entry
        until their Admin resets their password.
        Records that are not objects, or whose fields are not text, are
        skipped and logged.

        Returns:
            Usernames that were imported
        """
        imported = []
        for record in records:
            if not isinstance(record, dict):
                logger.warning("Skipping user record of type %s", type(record).__name__)
                continue
            username = record.get("username")
            role = record.get("role")
            if isinstance(role, str):
                role = LEGACY_ROLES.get(role, role)
            if not isinstance(username, str) or not username or not isinstance(role, str) or role not in ROLES:
                logger.warning("Skipping user record without a valid username or role")
                continue
            if any(
                record.get(field) is not None and not isinstance(record[field], str)
                for field in ("email", "password", "passwordHash", "salt", "kdf", "adminUsername", "name", "createdAt")
            ):
                logger.warning("Skipping %s: malformed fields", username)
                continue

            if record.get("passwordHash") and record.get("salt"):
                try:
                    credential = PasswordRecord.from_dict(
                        {"salt": record["salt"], "hash": record["passwordHash"], "kdf": record.get("kdf", PBKDF2_SHA256)}
                    )
                except ValueError:
                    logger.error("Skipping %s: unreadable password record", username)
                    continue
            elif record.get("password"):
                credential = PasswordCredential.hash(record["password"], self.kdf)
            else:
                logger.warning("Skipping %s: no password", username)
                continue

            identity = Identity(
                username=username,
                role=role,
                email=record.get("email") or None,
                admin_username=record.get("adminUsername") if role == WORKER else None,
                name=record.get("name", ""),
            )
            if record.get("createdAt"):
                identity.created_at = record["createdAt"]

            with self._create_lock:
                try:
                    if role == OWNER and any(i.role == OWNER for i in self.all()):
                        raise IdentityConflict("An owner account already exists.")
                    self._check_available(username, identity.email)
                except IdentityConflict as e:
                    logger.warning("Skipping %s: %s", username, e)
                    continue
                self._store_identity(identity, credential)
            imported.append(username)

        logger.info("Imported %d of %d user record(s)", len(imported), len(records))
        return imported
