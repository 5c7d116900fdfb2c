"""
Session handling for the Workspace Vault API.

Manages:
- One SessionController per logged-in client, addressed by a bearer token
- Idle timeout (the workspace key is dropped when a session expires)
- Logins waiting for a verification code
"""

import logging
import secrets
import threading
from typing import Callable, Optional
from datetime import datetime, timedelta
from dataclasses import dataclass, field

import httpx

from workspace import IdentityDirectory, KeyValueStore, SessionController, SessionState, WorkspaceLocks
from workspace.records import Identity

logger = logging.getLogger(__name__)

CodeSender = Callable[[Identity, str], None]


class CodeDeliveryError(Exception):
    """A verification code could not be delivered."""


def obfuscate_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "your account"
    name, domain = email.split("@", 1)
    return f"{name[:2]}***@{domain}"


def console_code_sender(ttl_minutes: int = 30) -> CodeSender:
    """Print codes to the console of the machine running the server."""
    def send(identity: Identity, code: str) -> None:
        print(f"[AUTH] Security code for {identity.username} ({obfuscate_email(identity.email)}): "
              f"{code} (expires in {ttl_minutes} minutes)")
    return send


def webhook_code_sender(
    url: str,
    ttl_minutes: int = 30,
    timeout: float = 30.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> CodeSender:
    """
    Deliver codes by POSTing them to a mail relay or chat webhook.

    The returned sender raises CodeDeliveryError when the relay is
    unreachable or refuses the code.
    """
    def send(identity: Identity, code: str) -> None:
        try:
            with httpx.Client(timeout=timeout, transport=transport) as client:
                response = client.post(url, json={
                    "username": identity.username,
                    "email": identity.email,
                    "code": code,
                    "expires_in_minutes": ttl_minutes,
                })
        except httpx.RequestError as e:
            logger.error("Could not reach code relay: %s", e)
            raise CodeDeliveryError(f"Network error: {e}") from e

        if response.status_code >= 400:
            logger.error("Code relay answered %d", response.status_code)
            raise CodeDeliveryError(f"Code delivery failed: {response.status_code}")
        logger.info("Security code for %s sent to relay", identity.username)
    return send


@dataclass
class UserSession:
    """Represents one client session."""
    token: str
    controller: SessionController
    created_at: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)

    @property
    def username(self) -> Optional[str]:
        identity = self.controller.identity
        return identity.username if identity else None

    @property
    def role(self) -> Optional[str]:
        identity = self.controller.identity
        return identity.role if identity else None


class AuthManager:
    """Keeps track of open sessions over one store."""

    def __init__(
        self,
        store: KeyValueStore,
        locks: Optional[WorkspaceLocks] = None,
        timeout_minutes: int = 30,
        kdf: str = "pbkdf2-sha256",
        require_code: bool = False,
        code_sender: Optional[CodeSender] = None,
        code_ttl_minutes: int = 30,
    ):
        """
        Initialize the auth manager.

        Args:
            store: Persistence substrate shared by all sessions
            locks: Per-workspace locks shared by all sessions
            timeout_minutes: Idle time after which a session is closed
            kdf: KDF for new credentials
            require_code: Ask Admins and Owners for a verification code
            code_sender: Delivers verification codes
            code_ttl_minutes: Lifetime of a verification code
        """
        self.store = store
        self.locks = locks or WorkspaceLocks()
        self.timeout = timedelta(minutes=timeout_minutes)
        self.kdf = kdf
        self.require_code = require_code
        self.code_sender = code_sender
        self.code_ttl = timedelta(minutes=code_ttl_minutes)
        self.directory = IdentityDirectory(store, self.locks, kdf)

        self._sessions: dict[str, UserSession] = {}
        self._lock = threading.Lock()

    def new_controller(self) -> SessionController:
        return SessionController(
            self.store,
            self.locks,
            kdf=self.kdf,
            require_code=self.require_code,
            code_sender=self.code_sender,
            code_ttl=self.code_ttl,
        )

    def _register(self, controller: SessionController) -> UserSession:
        session = UserSession(token=secrets.token_urlsafe(32), controller=controller)
        with self._lock:
            self._sessions[session.token] = session
        return session

    def login(self, identifier: str, password: str) -> UserSession:
        """
        Log in and open a session.

        The returned session may still be waiting for a verification code.

        Raises:
            WorkspaceError: Login failed; no session is kept
        """
        controller = self.new_controller()
        controller.login(identifier, password)
        return self._register(controller)

    def sign_up(self, username: str, password: str, email: Optional[str] = None) -> UserSession:
        controller = self.new_controller()
        controller.sign_up(username, password, email)
        return self._register(controller)

    def verify_code(self, token: str, code: str) -> UserSession:
        """
        Complete a login waiting for a code.

        Raises:
            KeyError: Unknown or expired token
            WorkspaceError: Wrong code or failed key resolution
        """
        session = self._lookup(token)
        if session is None:
            raise KeyError(token)
        try:
            session.controller.verify_code(code)
        finally:
            if session.controller.state is SessionState.FAILED:
                self.logout(token)
        return session

    def _lookup(self, token: str) -> Optional[UserSession]:
        with self._lock:
            session = self._sessions.get(token)
        if session is None:
            return None
        if self.is_expired(session):
            logger.info("Session of %s expired", session.username)
            self.logout(token)
            return None
        session.last_seen = datetime.now()
        return session

    def get(self, token: str) -> Optional[UserSession]:
        """An authenticated, unexpired session for the token."""
        session = self._lookup(token)
        if session is None or not session.controller.is_authenticated:
            return None
        return session

    def is_expired(self, session: UserSession) -> bool:
        return datetime.now() - session.last_seen > self.timeout

    def logout(self, token: str) -> bool:
        """Close a session and drop its workspace key."""
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is None:
            return False
        session.controller.logout()
        return True

    def logout_user(self, username: str) -> int:
        """Close every session of an identity, e.g. after it was deleted."""
        with self._lock:
            tokens = [t for t, s in self._sessions.items() if s.username == username]
        return sum(1 for t in tokens if self.logout(t))

    def purge_expired(self) -> int:
        with self._lock:
            expired = [t for t, s in self._sessions.items() if self.is_expired(s)]
        return sum(1 for t in expired if self.logout(t))

    def clear(self) -> None:
        """Close all sessions."""
        with self._lock:
            tokens = list(self._sessions)
        for token in tokens:
            self.logout(token)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
