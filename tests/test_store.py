"""Tests for workspace/store.py: memory and file backends."""

from pathlib import Path

import pytest

from workspace.store import FileStore, MemoryStore


@pytest.fixture(params=["memory", "file"])
def kv(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryStore()
    return FileStore(tmp_path / "store")


class TestKeyValueStore:
    def test_get_missing(self, kv):
        assert kv.get("identity/nobody") is None
        assert "identity/nobody" not in kv

    def test_put_get(self, kv):
        kv.put("identity/alice", '{"a": 1}')
        assert kv.get("identity/alice") == '{"a": 1}'
        assert "identity/alice" in kv

    def test_overwrite(self, kv):
        kv.put("keys/alice", "one")
        kv.put("keys/alice", "two")
        assert kv.get("keys/alice") == "two"

    def test_delete(self, kv):
        kv.put("keys/alice", "one")
        kv.delete("keys/alice")
        kv.delete("keys/alice")
        assert kv.get("keys/alice") is None

    def test_keys_by_prefix(self, kv):
        kv.put("identity/bob", "b")
        kv.put("identity/alice", "a")
        kv.put("credential/alice", "c")
        assert kv.keys("identity/") == ["identity/alice", "identity/bob"]
        assert len(kv.keys()) == 3

    def test_size(self, kv):
        kv.put("workspace/alice", "ü" * 4)
        assert kv.size("workspace/alice") == 8
        assert kv.size("workspace/nobody") == 0

    def test_unusual_usernames(self, kv):
        kv.put("identity/a.b@example.com", "x")
        kv.put("identity/with space", "y")
        assert kv.keys("identity/") == ["identity/a.b@example.com", "identity/with space"]


class TestFileStore:
    def test_layout(self, tmp_path: Path):
        store = FileStore(tmp_path)
        store.put("workspace/alice", "blob")
        assert (tmp_path / "workspace" / "alice.json").read_text() == "blob"

    def test_no_temp_files_left(self, tmp_path: Path):
        store = FileStore(tmp_path)
        store.put("keys/alice", "one")
        store.put("keys/alice", "two")
        assert [p.name for p in (tmp_path / "keys").iterdir()] == ["alice.json"]

    def test_survives_reopen(self, tmp_path: Path):
        FileStore(tmp_path).put("identity/alice", "x")
        assert FileStore(tmp_path).get("identity/alice") == "x"

    def test_ignores_temp_files(self, tmp_path: Path):
        store = FileStore(tmp_path)
        (tmp_path / "keys").mkdir()
        (tmp_path / "keys" / ".tmp-abc.json").write_text("partial")
        assert store.keys() == []
