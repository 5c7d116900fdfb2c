"""Tests for crypto/passphrase.py: password records and key derivation."""

import base64

import pytest

from crypto.passphrase import ARGON2ID, PassphraseDeriver, PasswordCredential, PasswordRecord


class TestPassphraseDeriver:
    def test_same_inputs_same_key(self):
        salt = PassphraseDeriver.new_salt()
        assert PassphraseDeriver.derive("hunter2", salt) == PassphraseDeriver.derive("hunter2", salt)

    def test_different_salts_different_keys(self):
        a = PassphraseDeriver.derive("hunter2", PassphraseDeriver.new_salt())
        b = PassphraseDeriver.derive("hunter2", PassphraseDeriver.new_salt())
        assert a != b

    def test_key_is_256_bits(self):
        key, salt = PassphraseDeriver.derive_key("hunter2")
        assert len(key) == 32
        assert len(salt) == 16

    def test_derive_key_reuses_given_salt(self):
        salt = b"s" * 16
        key, returned = PassphraseDeriver.derive_key("hunter2", salt)
        assert returned == salt
        assert key == PassphraseDeriver.derive("hunter2", salt)

    def test_argon2id(self):
        salt = PassphraseDeriver.new_salt()
        key = PassphraseDeriver.derive("hunter2", salt, ARGON2ID)
        assert len(key) == 32
        assert key != PassphraseDeriver.derive("hunter2", salt)

    def test_unknown_kdf(self):
        with pytest.raises(ValueError):
            PassphraseDeriver.derive("hunter2", b"s" * 16, "md5")


class TestPasswordCredential:
    def test_verify_correct_password(self):
        record = PasswordCredential.hash("correct horse")
        assert PasswordCredential.verify("correct horse", record)

    def test_verify_wrong_password(self):
        record = PasswordCredential.hash("correct horse")
        assert not PasswordCredential.verify("battery staple", record)

    def test_hashes_are_salted(self):
        a = PasswordCredential.hash("same")
        b = PasswordCredential.hash("same")
        assert a.salt != b.salt
        assert a.hash != b.hash

    def test_verify_from_dict(self):
        record = PasswordCredential.hash("pw")
        assert PasswordCredential.verify("pw", record.to_dict())

    def test_record_never_holds_plaintext(self):
        record = PasswordCredential.hash("visible-secret")
        assert "visible-secret" not in str(record.to_dict())

    @pytest.mark.parametrize("record", [
        None,
        {},
        {"salt": "not base64!", "hash": "AAAA"},
        {"salt": "AAAA", "hash": "AAAA", "kdf": "rot13"},
        {"salt": "", "hash": ""},
        "garbage",
    ])
    def test_malformed_records_verify_false(self, record):
        assert PasswordCredential.verify("pw", record) is False


class TestPasswordRecord:
    def test_dict_without_kdf_is_pbkdf2(self):
        record = PasswordCredential.hash("pw")
        data = record.to_dict()
        del data["kdf"]
        assert PasswordRecord.from_dict(data) == record

    def test_from_dict_rejects_missing_hash(self):
        with pytest.raises(ValueError):
            PasswordRecord.from_dict({"salt": base64.b64encode(b"x" * 16).decode()})
