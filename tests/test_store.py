"""Tests for the persistent store adapters."""

import os

import pytest

from offline_sync.errors import PersistenceError
from offline_sync.queue.store import FileStore, MemoryStore


class TestFileStore:
    """Tests for FileStore."""

    def test_get_missing_key_returns_none(self, tmp_path):
        """Unknown keys read as None."""
        assert FileStore(tmp_path).get("nothing") is None

    def test_set_then_get(self, tmp_path):
        """Written bytes are read back unchanged."""
        store = FileStore(tmp_path)
        store.set("offlineSyncQueue", b'{"a": 1}')
        assert store.get("offlineSyncQueue") == b'{"a": 1}'

    def test_survives_new_instance(self, tmp_path):
        """A fresh instance on the same directory sees earlier writes."""
        FileStore(tmp_path).set("k", b"v1")
        assert FileStore(tmp_path).get("k") == b"v1"

    def test_overwrite_leaves_no_temp_files(self, tmp_path):
        """Replacing a value leaves only the final file behind."""
        store = FileStore(tmp_path)
        store.set("k", b"first")
        store.set("k", b"second")
        assert store.get("k") == b"second"
        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]

    def test_failed_replace_keeps_previous_value(self, tmp_path, monkeypatch):
        """A write that fails midway never corrupts the stored blob."""
        store = FileStore(tmp_path)
        store.set("k", b"good")

        def boom(src, dst):
            raise OSError("simulated crash")

        monkeypatch.setattr(os, "replace", boom)
        with pytest.raises(PersistenceError):
            store.set("k", b"half-written")

        monkeypatch.undo()
        assert store.get("k") == b"good"
        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]

    def test_delete_is_idempotent(self, tmp_path):
        """Deleting twice is fine."""
        store = FileStore(tmp_path)
        store.set("k", b"v")
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None

    def test_unsafe_key_characters_are_replaced(self, tmp_path):
        """Keys are mapped to safe file names."""
        store = FileStore(tmp_path)
        store.set("../escape/me", b"v")
        assert store.get("../escape/me") == b"v"
        assert all(p.parent == tmp_path for p in tmp_path.iterdir())


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_roundtrip_and_delete(self):
        """Basic get/set/delete."""
        store = MemoryStore()
        store.set("k", b"v")
        assert store.get("k") == b"v"
        store.delete("k")
        assert store.get("k") is None
