"""
Configuration for the Workspace Vault.
"""

import os
from pathlib import Path
from dataclasses import dataclass

# Application version - update this for each release
VERSION = "1.1.0"


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration."""

    # Server settings
    HOST: str = os.getenv("WORKSPACE_HOST", "127.0.0.1")
    PORT: int = int(os.getenv("WORKSPACE_PORT", "18422"))

    # Storage root for the file-backed key-value store
    STORAGE_DIR: Path = Path(os.getenv("WORKSPACE_STORAGE_DIR", str(Path(__file__).parent / "data")))

    # KDF for new credentials and wrapped keys ("pbkdf2-sha256" or "argon2id")
    KDF_ALGORITHM: str = os.getenv("WORKSPACE_KDF", "pbkdf2-sha256")

    # Session settings
    SESSION_TIMEOUT_MINUTES: int = int(os.getenv("WORKSPACE_SESSION_TIMEOUT", "30"))

    # Second factor for Admin and Owner logins
    REQUIRE_LOGIN_CODE: bool = _env_flag("WORKSPACE_REQUIRE_LOGIN_CODE")
    LOGIN_CODE_TTL_MINUTES: int = int(os.getenv("WORKSPACE_LOGIN_CODE_TTL", "30"))
    # Where codes are POSTed; printed to the console when unset
    LOGIN_CODE_WEBHOOK_URL: str = os.getenv("WORKSPACE_LOGIN_CODE_WEBHOOK", "")

    # Entries kept in the in-memory activity log
    ACTIVITY_LOG_LIMIT: int = 100

    def __post_init__(self):
        """Ensure storage directory exists."""
        self.STORAGE_DIR = Path(self.STORAGE_DIR)
        self.STORAGE_DIR.mkdir(parents=True, exist_ok=True)

    @property
    def store_dir(self) -> Path:
        """Directory of the key-value store."""
        path = self.STORAGE_DIR / "store"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def logs_dir(self) -> Path:
        """Directory for log files."""
        path = self.STORAGE_DIR / "logs"
        path.mkdir(parents=True, exist_ok=True)
        return path


# Global config instance
config = Config()
