"""
Password hashing and key derivation.

Both the stored password hash and every password-derived key go through
the same slow key-stretching primitive, so verifying a password and
deriving a wrapping key cost the same.

Supported KDFs:
- pbkdf2-sha256 (100,000 iterations) - default, required to read legacy data
- argon2id - optional for newly created credentials and wrapped keys
"""

import os
import hmac
import base64
import hashlib
from typing import Any
from dataclasses import dataclass

from argon2.low_level import hash_secret_raw, Type


PBKDF2_SHA256 = "pbkdf2-sha256"
ARGON2ID = "argon2id"


class PassphraseDeriver:
    """Derives symmetric keys from passwords."""

    # PBKDF2 parameters (fixed: legacy workspaces were encrypted with them)
    ITERATIONS = 100000
    HASH_NAME = "sha256"

    # Argon2id parameters (OWASP recommended)
    TIME_COST = 3  # iterations
    MEMORY_COST = 65536  # 64 MB
    PARALLELISM = 4

    KEY_LEN = 32  # 256 bits for AES-256
    SALT_LEN = 16  # 128 bits

    ALGORITHMS = (PBKDF2_SHA256, ARGON2ID)

    @classmethod
    def new_salt(cls) -> bytes:
        """Generate a fresh random salt."""
        return os.urandom(cls.SALT_LEN)

    @classmethod
    def derive(cls, passphrase: str, salt: bytes, kdf: str = PBKDF2_SHA256) -> bytes:
        """
        Derive a 256-bit key from a passphrase and a stored salt.

        Deterministic: the same passphrase, salt and KDF always yield the
        same key.

        Args:
            passphrase: The user's password
            salt: Salt bytes stored next to the derived material
            kdf: Name of the key-stretching function

        Returns:
            The derived key

        Raises:
            ValueError: If the KDF name is unknown
        """
        secret = passphrase.encode("utf-8")

        if kdf == PBKDF2_SHA256:
            return hashlib.pbkdf2_hmac(
                cls.HASH_NAME, secret, salt, cls.ITERATIONS, dklen=cls.KEY_LEN
            )

        if kdf == ARGON2ID:
            return hash_secret_raw(
                secret=secret,
                salt=salt,
                time_cost=cls.TIME_COST,
                memory_cost=cls.MEMORY_COST,
                parallelism=cls.PARALLELISM,
                hash_len=cls.KEY_LEN,
                type=Type.ID,
            )

        raise ValueError(f"Unsupported KDF: {kdf}")

    @classmethod
    def derive_key(
        cls, passphrase: str, salt: bytes | None = None, kdf: str = PBKDF2_SHA256
    ) -> tuple[bytes, bytes]:
        """
        Derive a key, generating a random salt when none is given.

        Returns:
            Tuple of (derived_key, salt)
        """
        if salt is None:
            salt = cls.new_salt()
        return cls.derive(passphrase, salt, kdf), salt


@dataclass(frozen=True)
class PasswordRecord:
    """Salted password hash. Never holds the plaintext password."""
    salt: bytes
    hash: bytes
    kdf: str = PBKDF2_SHA256

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "hash": base64.b64encode(self.hash).decode("ascii"),
            "kdf": self.kdf,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PasswordRecord":
        """
        Reconstruct from dictionary.

        Records written before the KDF was tagged are PBKDF2 records.

        Raises:
            ValueError: If the record is malformed
        """
        try:
            kdf = data.get("kdf", PBKDF2_SHA256)
            salt = base64.b64decode(data["salt"], validate=True)
            digest = base64.b64decode(data["hash"], validate=True)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise ValueError(f"Malformed password record: {type(e).__name__}") from None

        if kdf not in PassphraseDeriver.ALGORITHMS or not salt or not digest:
            raise ValueError("Malformed password record")

        return cls(salt=salt, hash=digest, kdf=kdf)


class PasswordCredential:
    """Creates and checks password records."""

    @classmethod
    def hash(cls, password: str, kdf: str = PBKDF2_SHA256) -> PasswordRecord:
        """Hash a password under a fresh random salt."""
        digest, salt = PassphraseDeriver.derive_key(password, kdf=kdf)
        return PasswordRecord(salt=salt, hash=digest, kdf=kdf)

    @classmethod
    def verify(cls, password: str, record: PasswordRecord | dict[str, Any] | None) -> bool:
        """
        Check a password against a stored record in constant time.

        Malformed or missing records verify as False, the same as a wrong
        password.
        """
        if not isinstance(record, PasswordRecord):
            try:
                record = PasswordRecord.from_dict(record)
            except ValueError:
                return False

        try:
            candidate = PassphraseDeriver.derive(password, record.salt, record.kdf)
        except ValueError:
            return False

        return hmac.compare_digest(candidate, record.hash)
