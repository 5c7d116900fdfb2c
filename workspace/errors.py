"""
Errors surfaced by the workspace core.

Cryptographic failures never reach callers as-is: they are collapsed into
one of the kinds below.
"""


class WorkspaceError(Exception):
    """Base class for workspace errors."""

    default_message = "Workspace error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class InvalidCredentials(WorkspaceError):
    """Unknown identity or wrong password. Both look the same to the caller."""

    default_message = "Invalid username/email or password."


class CorruptedState(WorkspaceError):
    """Stored data that should be readable could not be decrypted or parsed."""

    default_message = "Stored workspace data is corrupted."


class StaleRegistration(WorkspaceError):
    """The password is correct but the identity's wrapped key entry is not usable."""

    default_message = "Account not reconfigured by administrator. Please ask your administrator to reset your password."


class MigrationRequired(WorkspaceError):
    """The workspace is still in the legacy format and only its Admin can upgrade it."""

    default_message = "This workspace requires an update. Please ask your administrator to log in first to complete the migration."


class IdentityConflict(WorkspaceError):
    """Duplicate username or email, or missing data needed to create an identity."""

    default_message = "Username or email already in use."


class PermissionDenied(WorkspaceError):
    """The identity's role does not allow this action."""

    default_message = "Not allowed."
