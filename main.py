"""
Workspace Vault - Main Entry Point

A local FastAPI application giving an Owner, Admins and their Workers
shared access to per-Admin encrypted workspaces.
Runs on http://127.0.0.1:18422.
"""

import asyncio
import logging
from typing import Any, Optional
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, HTTPException, Depends, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from config import config, VERSION
from auth import AuthManager, CodeDeliveryError, UserSession, console_code_sender, webhook_code_sender
from workspace import (
    CorruptedState,
    FileStore,
    IdentityConflict,
    InvalidCredentials,
    KeyValueStore,
    MigrationRequired,
    PermissionDenied,
    StaleRegistration,
    WorkspaceError,
    WorkspaceLocks,
)
from workspace.records import OWNER, Identity

__version__ = VERSION

logger = logging.getLogger(__name__)

MIGRATION_NOTICE = (
    "Your account has been successfully migrated to a more secure format. "
    "To re-enable worker access, please update each worker's password."
)


def make_code_sender():
    if config.LOGIN_CODE_WEBHOOK_URL:
        return webhook_code_sender(config.LOGIN_CODE_WEBHOOK_URL, config.LOGIN_CODE_TTL_MINUTES)
    return console_code_sender(config.LOGIN_CODE_TTL_MINUTES)


# Global state
class AppState:
    """Application state container."""
    store: Optional[KeyValueStore] = None
    auth_manager: Optional[AuthManager] = None
    activity_logs: list[dict] = []

    def configure(self, store: KeyValueStore) -> None:
        """Point the app at a store, closing any open sessions."""
        if self.auth_manager:
            self.auth_manager.clear()
        self.store = store
        self.auth_manager = AuthManager(
            store,
            WorkspaceLocks(),
            timeout_minutes=config.SESSION_TIMEOUT_MINUTES,
            kdf=config.KDF_ALGORITHM,
            require_code=config.REQUIRE_LOGIN_CODE,
            code_sender=make_code_sender(),
            code_ttl_minutes=config.LOGIN_CODE_TTL_MINUTES,
        )
        self.activity_logs = []

    def add_log(self, level: str, message: str, details: str = ""):
        """Add an activity log entry."""
        getattr(logger, level if level in ("info", "warning", "error") else "info")("%s %s", message, details)
        self.activity_logs.append({
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            "details": details,
        })
        # Keep only the most recent entries
        if len(self.activity_logs) > config.ACTIVITY_LOG_LIMIT:
            self.activity_logs = self.activity_logs[-config.ACTIVITY_LOG_LIMIT:]

    def clear_sensitive_data(self):
        """Close all sessions, dropping every workspace key from memory."""
        if self.auth_manager:
            self.auth_manager.clear()


app_state = AppState()


async def purge_expired_sessions():
    """Close idle sessions once a minute."""
    while True:
        await asyncio.sleep(60)
        if app_state.auth_manager:
            closed = app_state.auth_manager.purge_expired()
            if closed:
                app_state.add_log("info", "Sessions expired", f"{closed} idle session(s) closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    app_state.configure(FileStore(config.store_dir))
    app_state.add_log("info", "Workspace Vault started", f"Server running on http://{config.HOST}:{config.PORT}")
    purge_task = asyncio.create_task(purge_expired_sessions())

    yield

    # Shutdown - clear sensitive data
    purge_task.cancel()
    app_state.clear_sensitive_data()
    app_state.add_log("info", "Workspace Vault stopped", "Workspace keys cleared from memory")


# Create FastAPI app
app = FastAPI(
    title="Workspace Vault",
    description="Local multi-identity encrypted workspaces",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://{config.HOST}:{config.PORT}", f"http://localhost:{config.PORT}"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


STATUS_BY_ERROR = (
    (InvalidCredentials, 401),
    (StaleRegistration, 403),
    (MigrationRequired, 403),
    (PermissionDenied, 403),
    (IdentityConflict, 409),
    (CorruptedState, 500),
)


@app.exception_handler(CodeDeliveryError)
async def code_delivery_error_handler(request: Request, exc: CodeDeliveryError):
    """The verification code never reached the user."""
    app_state.add_log("error", "Code delivery failed", str(exc))
    return JSONResponse(
        status_code=502,
        content={"detail": "Could not send the verification code. Please try again.", "error": "CodeDeliveryError"},
    )


@app.exception_handler(WorkspaceError)
async def workspace_error_handler(request: Request, exc: WorkspaceError):
    """Map workspace errors to HTTP responses."""
    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    level = "error" if status >= 500 else "warning"
    app_state.add_log(level, type(exc).__name__, str(exc))
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


async def read_json(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return data


def current_session(authorization: str = Header(default="")) -> UserSession:
    """Resolve the bearer token to an authenticated session."""
    token = authorization[7:].strip() if authorization.lower().startswith("bearer ") else ""
    session = app_state.auth_manager.get(token) if token else None
    if session is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return session


def session_info(session: UserSession) -> dict[str, Any]:
    controller = session.controller
    return {
        "token": session.token,
        "username": session.username,
        "role": session.role,
        "workspace": controller.workspace,
        "state": controller.state.value,
        "needs_verification": controller.awaiting_code,
    }


def identity_info(identity: Identity) -> dict[str, Any]:
    return {
        "username": identity.username,
        "role": identity.role,
        "email": identity.email,
        "admin_username": identity.admin_username,
        "name": identity.name,
        "created_at": identity.created_at,
    }


# ============================================================================
# Authentication API
# ============================================================================

@app.post("/api/setup/owner")
async def api_setup_owner(request: Request):
    """Create the Owner account. Only possible once."""
    data = await read_json(request)
    username = data.get("username", "")
    password = data.get("password", "")

    identity = await run_in_threadpool(app_state.auth_manager.directory.create_owner, username, password, data.get("email"))
    app_state.add_log("info", "Owner created", f"User: {identity.username}")
    return {"success": True, "identity": identity_info(identity)}


@app.post("/api/auth/signup")
async def api_signup(request: Request):
    """Register a new Admin with an empty workspace."""
    data = await read_json(request)
    username = data.get("username", "")
    password = data.get("password", "")

    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password required")

    session = await run_in_threadpool(app_state.auth_manager.sign_up, username, password, data.get("email"))
    app_state.add_log("info", "Sign-up successful", f"User: {username}")
    return {"success": True, **session_info(session)}


@app.post("/api/auth/login")
async def api_login(request: Request):
    """Handle login request. Accepts a username or an email as identifier."""
    data = await read_json(request)
    identifier = data.get("username", "") or data.get("email", "")
    password = data.get("password", "")

    if not identifier or not password:
        raise HTTPException(status_code=400, detail="Username and password required")

    session = await run_in_threadpool(app_state.auth_manager.login, identifier, password)
    info = session_info(session)

    migration = session.controller.migration
    if migration is not None and migration.migrated:
        info["message"] = MIGRATION_NOTICE
        app_state.add_log("info", "Workspace migrated", f"Workspace: {session.username}")

    if info["needs_verification"]:
        app_state.add_log("info", "Verification code sent", f"User: {session.username}")
    else:
        app_state.add_log("info", "Login successful", f"User: {session.username}")
    return {"success": True, **info}


@app.post("/api/auth/verify")
async def api_verify(request: Request):
    """Complete a login with the verification code."""
    data = await read_json(request)
    token = data.get("token", "")
    code = data.get("code", "")

    try:
        session = await run_in_threadpool(app_state.auth_manager.verify_code, token, code)
    except KeyError:
        raise HTTPException(status_code=401, detail="Login expired. Please log in again.")

    app_state.add_log("info", "Login successful", f"User: {session.username}")
    return {"success": True, **session_info(session)}


@app.post("/api/auth/logout")
async def api_logout(session: UserSession = Depends(current_session)):
    """Handle logout request."""
    username = session.username
    app_state.auth_manager.logout(session.token)
    app_state.add_log("info", "Logout successful", f"User: {username}")
    return {"success": True, "message": "Logged out"}


@app.post("/api/password")
async def api_change_password(request: Request, session: UserSession = Depends(current_session)):
    """Change the logged-in identity's password."""
    data = await read_json(request)
    current = data.get("current_password", "")
    new = data.get("new_password", "")

    if not new:
        raise HTTPException(status_code=400, detail="New password required")

    await run_in_threadpool(session.controller.change_password, current, new)
    app_state.add_log("info", "Password changed", f"User: {session.username}")
    return {"success": True}


# ============================================================================
# Workspace API
# ============================================================================

@app.get("/api/workspace")
async def get_workspace(session: UserSession = Depends(current_session)):
    """Return the decrypted workspace payload."""
    if session.role == OWNER:
        raise HTTPException(status_code=403, detail="The owner has no workspace")
    payload = await run_in_threadpool(session.controller.reload)
    return {"workspace": session.controller.workspace, "payload": payload}


@app.put("/api/workspace")
async def put_workspace(request: Request, session: UserSession = Depends(current_session)):
    """Replace the workspace payload."""
    data = await read_json(request)
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload object required")

    await run_in_threadpool(session.controller.save, payload)
    return {"success": True}


# ============================================================================
# Identity Management API
# ============================================================================

@app.post("/api/workers")
async def add_worker(request: Request, session: UserSession = Depends(current_session)):
    """Add a Worker to the Admin's workspace."""
    data = await read_json(request)
    identity = await run_in_threadpool(
        session.controller.add_worker,
        data.get("username", ""),
        data.get("password", ""),
        data.get("email"),
        data.get("name", ""),
    )
    app_state.add_log("info", "Worker added", f"{identity.username} -> {session.username}")
    return {"success": True, "identity": identity_info(identity)}


@app.put("/api/workers/{username}")
async def update_worker(username: str, request: Request, session: UserSession = Depends(current_session)):
    """Edit a Worker; a new password re-enables their access."""
    data = await read_json(request)
    identity = await run_in_threadpool(
        session.controller.update_worker,
        username,
        data.get("password") or None,
        data.get("email"),
        data.get("name"),
    )
    if data.get("password"):
        app_state.auth_manager.logout_user(username)
    app_state.add_log("info", "Worker updated", f"{username} -> {session.username}")
    return {"success": True, "identity": identity_info(identity)}


@app.delete("/api/identities/{username}")
async def delete_identity(username: str, session: UserSession = Depends(current_session)):
    """Delete a Worker, or an Admin together with their workspace."""
    deleted = await run_in_threadpool(session.controller.delete_identity, username)
    for name in deleted:
        app_state.auth_manager.logout_user(name)
    app_state.add_log("info", "Identities deleted", ", ".join(deleted))
    return {"success": True, "deleted": deleted}


@app.post("/api/admins")
async def add_admin(request: Request, session: UserSession = Depends(current_session)):
    """Add an Admin (Owner only). Their workspace is created at first login."""
    data = await read_json(request)
    identity = await run_in_threadpool(
        session.controller.add_admin,
        data.get("username", ""),
        data.get("password", ""),
        data.get("email"),
    )
    app_state.add_log("info", "Admin added", f"User: {identity.username}")
    return {"success": True, "identity": identity_info(identity)}


@app.post("/api/admins/import")
async def import_users(request: Request, session: UserSession = Depends(current_session)):
    """Import a user list exported by an older client (Owner only)."""
    if session.role != OWNER:
        raise HTTPException(status_code=403, detail="Only the owner can import users")
    data = await read_json(request)
    records = data.get("users")
    if not isinstance(records, list):
        raise HTTPException(status_code=400, detail="List of users required")

    imported = await run_in_threadpool(app_state.auth_manager.directory.import_users, records)
    app_state.add_log("info", "Users imported", f"{len(imported)} of {len(records)} user(s)")
    return {"success": True, "imported": imported}


# ============================================================================
# Oversight API
# ============================================================================

@app.get("/api/oversight")
async def get_oversight(session: UserSession = Depends(current_session)):
    """Per-Admin usage figures (Owner only)."""
    report = await run_in_threadpool(session.controller.oversight)
    return report.to_dict()


@app.get("/api/logs")
async def get_logs(session: UserSession = Depends(current_session)):
    """Get the activity log, newest first (Owner only)."""
    if session.role != OWNER:
        raise HTTPException(status_code=403, detail="Only the owner can view the activity log")
    return {"logs": list(reversed(app_state.activity_logs))}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=False,
        log_level="info",
    )
