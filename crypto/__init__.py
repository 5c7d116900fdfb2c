"""
Cryptographic primitives for the workspace vault.

Handles:
- Password hashing and key derivation (PBKDF2-SHA256, Argon2id)
- Authenticated encryption (AES-256-GCM)
- Workspace key wrapping per identity
"""

from .passphrase import PassphraseDeriver, PasswordCredential, PasswordRecord
from .vault import DecryptError, EncryptedBlob, SymmetricCipher
from .key_manager import KeyRegistry, WrappedKeyEntry

__all__ = [
    "PassphraseDeriver",
    "PasswordCredential",
    "PasswordRecord",
    "DecryptError",
    "EncryptedBlob",
    "SymmetricCipher",
    "KeyRegistry",
    "WrappedKeyEntry",
]
