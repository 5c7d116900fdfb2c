"""Tests for crypto/vault.py: AES-GCM blobs."""

import pytest

from crypto.vault import DecryptError, EncryptedBlob, SymmetricCipher


@pytest.fixture
def key() -> bytes:
    return SymmetricCipher.generate_key()


def flip(data: bytes, index: int = 0) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


class TestSymmetricCipher:
    def test_decrypts_what_it_encrypts(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        assert SymmetricCipher.decrypt(key, blob) == b"payload"

    def test_fresh_nonce_per_call(self, key):
        a = SymmetricCipher.encrypt(key, b"payload")
        b = SymmetricCipher.encrypt(key, b"payload")
        assert a.nonce != b.nonce
        assert a.ciphertext != b.ciphertext
        assert len(a.nonce) == 12

    def test_wrong_key(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(SymmetricCipher.generate_key(), blob)

    def test_flipped_ciphertext_bit(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        tampered = EncryptedBlob(nonce=blob.nonce, ciphertext=flip(blob.ciphertext, 3))
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(key, tampered)

    def test_flipped_tag_bit(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        tampered = EncryptedBlob(nonce=blob.nonce, ciphertext=flip(blob.ciphertext, len(blob.ciphertext) - 1))
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(key, tampered)

    def test_flipped_nonce_bit(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        tampered = EncryptedBlob(nonce=flip(blob.nonce), ciphertext=blob.ciphertext)
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(key, tampered)

    def test_associated_data_must_match(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload", b"alice")
        assert SymmetricCipher.decrypt(key, blob, b"alice") == b"payload"
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(key, blob, b"mallory")

    def test_malformed_nonce_is_decrypt_error(self, key):
        blob = SymmetricCipher.encrypt(key, b"payload")
        with pytest.raises(DecryptError):
            SymmetricCipher.decrypt(key, EncryptedBlob(nonce=b"", ciphertext=blob.ciphertext))

    def test_json_payload(self, key):
        blob = SymmetricCipher.encrypt_json(key, {"sites": ["ü"]}, version=2)
        assert blob.version == 2
        assert SymmetricCipher.decrypt_json(key, blob) == {"sites": ["ü"]}


class TestEncryptedBlob:
    def test_legacy_blob_has_no_version(self, key):
        blob = SymmetricCipher.encrypt(key, b"x")
        data = blob.to_dict()
        assert set(data) == {"iv", "data"}
        assert EncryptedBlob.from_dict(data).version is None

    def test_version_is_kept(self, key):
        blob = SymmetricCipher.encrypt(key, b"x", version=2)
        assert EncryptedBlob.from_json(blob.to_json()) == blob

    @pytest.mark.parametrize("text", ["", "[]", "{}", '{"iv": "AAAA"}', '{"iv": "%%", "data": "AAAA"}',
                                      '{"iv": "AAAA", "data": "AAAA", "v": "2"}'])
    def test_unreadable_blobs(self, text):
        with pytest.raises(DecryptError):
            EncryptedBlob.from_json(text)
