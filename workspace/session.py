"""
Login state machine.

UNAUTHENTICATED -> CREDENTIAL_VERIFIED -> KEY_RESOLVED -> WORKSPACE_LOADED,
or FAILED from any step. The workspace key lives only on the controller
while a session is open and is dropped on logout or failure.
"""

import hmac
import logging
import secrets
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional
from dataclasses import dataclass
from datetime import datetime, timedelta

from crypto.key_manager import MissingEntryError, StaleEntryError, UnwrapError, WrappedKeyEntry
from crypto.passphrase import PasswordCredential, PasswordRecord, PBKDF2_SHA256

from .errors import (
    CorruptedState,
    InvalidCredentials,
    MigrationRequired,
    PermissionDenied,
    StaleRegistration,
    WorkspaceError,
)
from .identities import IdentityDirectory
from .locks import WorkspaceLocks
from .migration import MigrationResult, SchemeState
from .oversight import OversightReport, oversight_report
from .payload import WorkspaceStore, empty_payload
from .records import ADMIN, OWNER, WORKER, Identity, read_blob, read_registry, write_registry
from .store import KeyValueStore

logger = logging.getLogger(__name__)

NOT_CONFIGURED = (
    "Your account is not properly configured. "
    "Please contact your administrator to reset your password to regain access."
)


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIAL_VERIFIED = "credential_verified"
    KEY_RESOLVED = "key_resolved"
    WORKSPACE_LOADED = "workspace_loaded"
    FAILED = "failed"


@lru_cache(maxsize=None)
def _decoy_record(kdf: str) -> PasswordRecord:
    # Verified against when the identity is unknown so both cases cost the same
    return PasswordCredential.hash(secrets.token_hex(16), kdf)


@dataclass
class PendingCode:
    """A second-factor code waiting to be entered."""
    code: str
    password: str
    expires_at: datetime
    attempts: int = 0


class SessionController:
    """Drives one identity from login to a decrypted workspace."""

    CODE_DIGITS = 6
    MAX_CODE_ATTEMPTS = 5

    def __init__(
        self,
        store: KeyValueStore,
        locks: Optional[WorkspaceLocks] = None,
        kdf: str = PBKDF2_SHA256,
        require_code: bool = False,
        code_sender: Optional[Callable[[Identity, str], None]] = None,
        code_ttl: timedelta = timedelta(minutes=30),
    ):
        """
        Initialize the controller.

        Args:
            store: Persistence substrate
            locks: Per-workspace locks, shared by every controller on the store
            kdf: KDF for new credentials and wrapped entries
            require_code: Ask Admins and Owners for a one-time code after the password
            code_sender: Delivers the code to the identity (email, console, ...)
            code_ttl: How long a code stays valid
        """
        self.store = store
        self.locks = locks or WorkspaceLocks()
        self.directory = IdentityDirectory(store, self.locks, kdf)
        self.engine = self.directory.engine
        self.require_code = require_code
        self.code_sender = code_sender
        self.code_ttl = code_ttl

        self._state = SessionState.UNAUTHENTICATED
        self._failure: Optional[str] = None
        self._identity: Optional[Identity] = None
        self._workspace_key: Optional[bytes] = None
        self._payload: Any = None
        self._pending: Optional[PendingCode] = None
        self.migration: Optional[MigrationResult] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure(self) -> Optional[str]:
        """Reason of the last failure, if the session is FAILED."""
        return self._failure

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.WORKSPACE_LOADED

    @property
    def awaiting_code(self) -> bool:
        return self._pending is not None

    @property
    def has_workspace_key(self) -> bool:
        return self._workspace_key is not None

    @property
    def workspace(self) -> Optional[str]:
        return self._identity.workspace if self._identity else None

    @property
    def payload(self) -> Any:
        """Decrypted domain payload. None for Owners and closed sessions."""
        return self._payload

    def _clear(self) -> None:
        self._workspace_key = None
        self._payload = None
        self._pending = None

    def _fail(self, error: WorkspaceError) -> None:
        self._clear()
        self._state = SessionState.FAILED
        self._failure = str(error)
        logger.warning(
            "Login failed for %s: %s",
            self._identity.username if self._identity else "<unknown>",
            type(error).__name__,
        )

    def logout(self) -> None:
        """Drop the workspace key and payload."""
        if self._identity is not None:
            logger.info("%s logged out", self._identity.username)
        self._clear()
        self._identity = None
        self._failure = None
        self.migration = None
        self._state = SessionState.UNAUTHENTICATED

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str) -> SessionState:
        """
        Run the full login.

        Returns:
            WORKSPACE_LOADED, or CREDENTIAL_VERIFIED when a code is required

        Raises:
            WorkspaceError: One of the error kinds; the session is FAILED
        """
        self.logout()
        try:
            self._verify(identifier, password)
            if self.require_code and self._identity.role in (ADMIN, OWNER):
                self._issue_code(password)
                return self._state
            self._complete(password)
        except WorkspaceError as e:
            self._fail(e)
            raise
        return self._state

    def _verify(self, identifier: str, password: str) -> None:
        identity = self.directory.find(identifier)
        record = self.directory.credential(identity.username) if identity else None

        if identity is None or record is None:
            PasswordCredential.verify(password, _decoy_record(self.directory.kdf))
            raise InvalidCredentials()
        if not PasswordCredential.verify(password, record):
            raise InvalidCredentials()

        self._identity = identity
        self._state = SessionState.CREDENTIAL_VERIFIED

    def _issue_code(self, password: str) -> None:
        code = str(secrets.randbelow(9 * 10 ** (self.CODE_DIGITS - 1)) + 10 ** (self.CODE_DIGITS - 1))
        self._pending = PendingCode(code=code, password=password, expires_at=datetime.now() + self.code_ttl)
        if self.code_sender is not None:
            self.code_sender(self._identity, code)
        logger.info("Verification code issued for %s", self._identity.username)

    def verify_code(self, code: str) -> SessionState:
        """
        Finish a login that stopped for a verification code.

        A wrong code leaves the login pending until the attempts run out.
        """
        pending = self._pending
        if self._state is not SessionState.CREDENTIAL_VERIFIED or pending is None:
            raise InvalidCredentials("Invalid verification code.")

        try:
            if datetime.now() > pending.expires_at:
                raise InvalidCredentials("Verification code expired. Please log in again.")
            if not hmac.compare_digest(pending.code, str(code).strip()):
                pending.attempts += 1
                if pending.attempts < self.MAX_CODE_ATTEMPTS:
                    raise InvalidCredentials("Invalid verification code.")
                raise InvalidCredentials("Too many invalid codes. Please log in again.")
            self._pending = None
            self._complete(pending.password)
        except InvalidCredentials as e:
            if self._pending is not None and self._pending.attempts < self.MAX_CODE_ATTEMPTS \
                    and datetime.now() <= self._pending.expires_at:
                raise
            self._fail(e)
            raise
        except WorkspaceError as e:
            self._fail(e)
            raise
        return self._state

    def _complete(self, password: str) -> None:
        identity = self._identity

        if identity.role == OWNER:
            # Owners oversee workspaces but never open one
            self._state = SessionState.WORKSPACE_LOADED
            logger.info("Owner %s logged in", identity.username)
            return

        if identity.role == ADMIN:
            self._workspace_key = self._resolve_admin_key(identity, password)
        else:
            self._workspace_key = self._resolve_worker_key(identity, password)
        self._state = SessionState.KEY_RESOLVED

        self._payload = self._load(identity.workspace)
        self._state = SessionState.WORKSPACE_LOADED
        logger.info("%s opened workspace %s", identity.username, identity.workspace)

    def _resolve_admin_key(self, identity: Identity, password: str) -> bytes:
        try:
            credential = PasswordRecord.from_dict(self.directory.credential(identity.username))
        except ValueError:
            raise CorruptedState("Stored credential is unreadable.") from None

        self.migration = self.engine.ensure_current(identity.username, password, credential)
        return self.migration.workspace_key

    def _resolve_worker_key(self, identity: Identity, password: str) -> bytes:
        admin = identity.admin_username
        if admin is None:
            raise StaleRegistration(NOT_CONFIGURED)

        state = self.engine.detect(admin)
        if state in (SchemeState.LEGACY, SchemeState.HALF_MIGRATED):
            raise MigrationRequired()
        if state is SchemeState.ORPHANED:
            raise CorruptedState()

        registry = read_registry(self.store, admin)
        if registry is None:
            raise StaleRegistration(NOT_CONFIGURED)

        pending = registry.get_pending(identity.username)
        try:
            workspace_key = registry.open(identity.username, password)
        except MissingEntryError:
            raise StaleRegistration(NOT_CONFIGURED) from None
        except StaleEntryError:
            raise StaleRegistration() from None
        except UnwrapError:
            # The password verified, so the entry itself no longer matches it
            raise StaleRegistration() from None

        if pending is not None and registry.get_pending(identity.username) is None:
            self._persist_promotion(admin, identity.username, pending)
        return workspace_key

    def _persist_promotion(self, admin: str, username: str, entry: WrappedKeyEntry) -> None:
        with self.locks.hold(admin):
            registry = read_registry(self.store, admin)
            if registry is not None and registry.get_pending(username) == entry:
                registry.promote(username)
                write_registry(self.store, registry)
                logger.info("Completed interrupted password change for %s", username)

    def _load(self, admin: str) -> Any:
        blob = read_blob(self.store, admin)
        if blob is None:
            return empty_payload()
        try:
            return WorkspaceStore.load(self._workspace_key, blob)
        except CorruptedState:
            logger.error("Workspace %s could not be decrypted with a resolved key", admin)
            raise CorruptedState("corrupted workspace") from None

    # ------------------------------------------------------------------
    # Sign-up
    # ------------------------------------------------------------------

    def sign_up(self, username: str, password: str, email: Optional[str] = None) -> SessionState:
        """Register a new Admin and open their empty workspace."""
        self.logout()
        identity, workspace_key = self.directory.sign_up(username, password, email)
        self._identity = identity
        self._workspace_key = workspace_key
        self._payload = empty_payload()
        self._state = SessionState.WORKSPACE_LOADED
        return self._state

    # ------------------------------------------------------------------
    # Actions on an open session
    # ------------------------------------------------------------------

    def _require(self, *roles: str) -> Identity:
        if not self.is_authenticated:
            raise PermissionDenied("Not logged in.")
        if roles and self._identity.role not in roles:
            raise PermissionDenied()
        return self._identity

    def save(self, payload: Any) -> None:
        """Re-encrypt and store the workspace payload."""
        identity = self._require(ADMIN, WORKER)
        admin = identity.workspace
        if self.directory.get(admin) is None:
            raise PermissionDenied("This workspace no longer exists.")
        with self.locks.hold(admin):
            WorkspaceStore.persist(self.store, admin, self._workspace_key, payload)
        self._payload = payload

    def reload(self) -> Any:
        """Decrypt the stored payload again, picking up other sessions' saves."""
        identity = self._require(ADMIN, WORKER)
        try:
            self._payload = self._load(identity.workspace)
        except CorruptedState as e:
            self._fail(e)
            raise
        return self._payload

    def add_worker(self, username: str, password: str, email: Optional[str] = None, name: str = "") -> Identity:
        admin = self._require(ADMIN)
        return self.directory.add_worker(admin.username, self._workspace_key, username, password, email, name)

    def update_worker(
        self,
        username: str,
        password: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Identity:
        admin = self._require(ADMIN)
        return self.directory.update_worker(admin.username, self._workspace_key, username, password, email, name)

    def change_password(self, current_password: str, new_password: str) -> None:
        """Change the logged-in identity's own password."""
        identity = self._require()
        if not PasswordCredential.verify(current_password, self.directory.credential(identity.username)):
            raise InvalidCredentials("Current password is incorrect.")
        self.directory.change_password(identity.username, self._workspace_key, new_password)

    def add_admin(self, username: str, password: str, email: Optional[str] = None) -> Identity:
        self._require(OWNER)
        return self.directory.add_admin(username, password, email)

    def delete_identity(self, username: str) -> list[str]:
        """
        Delete an identity. Admins may delete their own Workers; the Owner
        may delete Admins and Workers.
        """
        actor = self._require(ADMIN, OWNER)
        target = self.directory.get(username)
        if target is None:
            return []
        if actor.role == ADMIN and not (target.role == WORKER and target.admin_username == actor.username):
            raise PermissionDenied("Admins can only delete their own workers.")
        return self.directory.delete_identity(username)

    def oversight(self) -> OversightReport:
        self._require(OWNER)
        return oversight_report(self.store)
