"""
Authenticated symmetric encryption.

Uses AES-256-GCM with a fresh random 96-bit nonce per call. The nonce is
stored next to the ciphertext; the GCM tag is part of the ciphertext, so
any modified byte makes decryption fail.
"""

import os
import json
import base64
import binascii
from typing import Any
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class DecryptError(Exception):
    """Raised for any decryption failure: wrong key, tampering or bad format."""

    def __init__(self, message: str = "Failed to decrypt data. The stored data may be corrupted or the key is incorrect."):
        super().__init__(message)


@dataclass(frozen=True)
class EncryptedBlob:
    """A nonce plus ciphertext, as stored at rest."""
    nonce: bytes
    ciphertext: bytes
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        data: dict[str, Any] = {
            "iv": base64.b64encode(self.nonce).decode("ascii"),
            "data": base64.b64encode(self.ciphertext).decode("ascii"),
        }
        if self.version is not None:
            data["v"] = self.version
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedBlob":
        """
        Reconstruct from dictionary.

        Raises:
            DecryptError: If the dictionary is not a valid blob
        """
        try:
            nonce = base64.b64decode(data["iv"], validate=True)
            ciphertext = base64.b64decode(data["data"], validate=True)
            version = data.get("v")
        except (KeyError, TypeError, AttributeError, binascii.Error):
            raise DecryptError() from None

        if version is not None and not isinstance(version, int):
            raise DecryptError()

        return cls(nonce=nonce, ciphertext=ciphertext, version=version)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "EncryptedBlob":
        try:
            data = json.loads(text)
        except (TypeError, ValueError):
            raise DecryptError() from None
        return cls.from_dict(data)

    @property
    def size(self) -> int:
        """Number of stored bytes (nonce + ciphertext)."""
        return len(self.nonce) + len(self.ciphertext)


class SymmetricCipher:
    """AES-256-GCM encryption of opaque byte payloads."""

    KEY_LEN = 32  # 256 bits
    NONCE_LEN = 12  # 96 bits for AES-GCM

    @classmethod
    def generate_key(cls) -> bytes:
        """Generate a random key, independent of any password."""
        return AESGCM.generate_key(bit_length=cls.KEY_LEN * 8)

    @classmethod
    def encrypt(
        cls,
        key: bytes,
        plaintext: bytes,
        associated_data: bytes | None = None,
        version: int | None = None,
    ) -> EncryptedBlob:
        """
        Encrypt bytes under a key.

        Args:
            key: 256-bit key
            plaintext: Bytes to encrypt
            associated_data: Optional data authenticated but not encrypted
            version: Optional format tag stored with the blob

        Returns:
            EncryptedBlob with a freshly generated nonce
        """
        nonce = os.urandom(cls.NONCE_LEN)
        aesgcm = AESGCM(key)
        ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
        return EncryptedBlob(nonce=nonce, ciphertext=ciphertext, version=version)

    @classmethod
    def decrypt(
        cls,
        key: bytes,
        blob: EncryptedBlob,
        associated_data: bytes | None = None,
    ) -> bytes:
        """
        Decrypt a blob.

        Raises:
            DecryptError: On a wrong key, a modified nonce or ciphertext,
                or mismatched associated data
        """
        try:
            aesgcm = AESGCM(key)
            return aesgcm.decrypt(blob.nonce, blob.ciphertext, associated_data)
        except (InvalidTag, ValueError, TypeError):
            raise DecryptError() from None

    @classmethod
    def encrypt_json(cls, key: bytes, obj: Any, version: int | None = None) -> EncryptedBlob:
        """Serialize to JSON and encrypt."""
        plaintext = json.dumps(obj, ensure_ascii=False).encode("utf-8")
        return cls.encrypt(key, plaintext, version=version)

    @classmethod
    def decrypt_json(cls, key: bytes, blob: EncryptedBlob) -> Any:
        """Decrypt and parse JSON. Unparseable plaintext is a DecryptError."""
        plaintext = cls.decrypt(key, blob)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise DecryptError() from None
