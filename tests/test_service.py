"""Tests for SyncService wiring and the operator CLI."""

import json
from pathlib import Path

import pytest

from offline_sync import cli, settings
from offline_sync.errors import PermanentRemoteError
from offline_sync.queue.queue_log import QueueLog
from offline_sync.queue.store import FileStore
from offline_sync.service import SyncService


@pytest.fixture
def service(memory_store, remote):
    svc = SyncService(store=memory_store, client=remote, debounce_seconds=0.01)
    yield svc
    svc.stop()


class TestSyncService:
    """The inbound API end to end."""

    def test_enqueue_then_triggers_drain_queue(self, service, remote):
        entry = service.enqueue("updateProgress", {"itemId": "kanji-42", "score": 80}, "u1")
        assert service.queue_size() == 1
        assert remote.calls == []

        service.on_startup()
        service.on_network_reconnect()
        service.on_auth_ready()

        assert service.coordinator.wait_idle(2)
        assert service.queue_size() == 0
        assert remote.applied == [entry.id]

    def test_dead_letter_listing_and_resubmit(self, service, remote):
        entry = service.enqueue("addTag", {"itemId": "w7", "tag": "hard"}, "u1")

        def reject(*_):
            raise PermanentRemoteError("item no longer exists")

        remote.behaviour = reject
        summary = service.drain_now()
        assert summary.dead_lettered == 1
        assert [e.id for e in service.dead_letters()] == [entry.id]

        remote.behaviour = None
        service.resubmit(entry.id)
        assert service.drain_now().succeeded == 1
        assert service.dead_letters() == []


class TestCli:
    """The offline-sync console script."""

    @pytest.fixture
    def populated_store(self, tmp_path):
        queue = QueueLog(FileStore(tmp_path))
        queue.enqueue("updateProgress", {"itemId": "w1", "score": 1}, "u1")
        dead = queue.enqueue("addTag", {"itemId": "w7", "tag": "hard"}, "u1")
        queue.next_batch(10, exclude_keys=[("u1", "updateProgress", "w1")])
        queue.mark_failed(dead.id, "item gone", permanent=True)
        return tmp_path, dead.id

    def test_status(self, populated_store, capsys):
        store_dir, _ = populated_store
        assert cli.main(["--store-dir", str(store_dir), "status"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out == {"active": 1, "by_state": {"pending": 1, "dead_lettered": 1}}

    def test_dead_letters(self, populated_store, capsys):
        store_dir, dead_id = populated_store
        assert cli.main(["--store-dir", str(store_dir), "dead-letters"]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert [json.loads(line)["id"] for line in lines] == [dead_id]

    def test_resubmit(self, populated_store):
        store_dir, dead_id = populated_store
        assert cli.main(["--store-dir", str(store_dir), "resubmit", dead_id]) == 0
        assert QueueLog(FileStore(store_dir)).size() == 2

    def test_resubmit_unknown_id(self, populated_store):
        store_dir, _ = populated_store
        assert cli.main(["--store-dir", str(store_dir), "resubmit", "nope"]) == 1

    def test_drain_validates_the_given_store_dir(self, tmp_path, monkeypatch, capsys):
        """--store-dir is the directory checked and used; the default is left alone."""
        default_dir = tmp_path / "default-queue"
        monkeypatch.setattr(settings, "QUEUE_STORE_DIR", default_dir)
        monkeypatch.setattr(settings, "REMOTE_BASE_URL", "https://sync.example.com/api")
        store_dir = tmp_path / "operator-queue"

        assert cli.main(["--store-dir", str(store_dir), "drain"]) == 0

        assert json.loads(capsys.readouterr().out)["succeeded"] == 0
        assert store_dir.is_dir()
        assert not default_dir.exists()

    def test_drain_without_remote_is_a_config_error(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "REMOTE_BASE_URL", None)
        assert cli.main(["--store-dir", str(tmp_path), "drain"]) == 1

    def test_relative_default_store_dir_is_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "QUEUE_STORE_DIR", Path("relative/queue"))
        with pytest.raises(ValueError, match="must be absolute"):
            settings.validate_config(require_remote=False)
        settings.validate_config(require_remote=False, store_dir=tmp_path / "q")
        assert (tmp_path / "q").is_dir()
