"""Tests for IdempotencyGuard."""

from offline_sync.idempotency import IdempotencyGuard
from offline_sync.queue.store import FileStore
from offline_sync.sync_processor import SyncProcessor


class TestIdempotencyGuard:
    """Tests for should_apply/record_applied."""

    def test_unknown_id_should_apply(self, guard):
        assert guard.should_apply("e1") is True

    def test_recorded_id_is_not_applied_again(self, guard):
        guard.record_applied("e1")
        assert guard.should_apply("e1") is False
        assert guard.should_apply("e2") is True

    def test_record_is_durable(self, tmp_path):
        """The record survives a restart."""
        IdempotencyGuard(FileStore(tmp_path)).record_applied("e1")
        assert IdempotencyGuard(FileStore(tmp_path)).should_apply("e1") is False

    def test_recording_twice_keeps_one_copy(self, memory_store):
        guard = IdempotencyGuard(memory_store, history_size=2)
        guard.record_applied("e1")
        guard.record_applied("e1")
        guard.record_applied("e2")
        assert guard.should_apply("e1") is False

    def test_history_is_bounded(self, memory_store):
        """Without a queue to consult the oldest ids are evicted first."""
        guard = IdempotencyGuard(memory_store, history_size=2)
        for entry_id in ("e1", "e2", "e3"):
            guard.record_applied(entry_id)

        assert guard.should_apply("e1") is True
        assert guard.should_apply("e2") is False
        assert guard.should_apply("e3") is False

    def test_queued_ids_are_never_evicted(self, memory_store):
        """An id whose entry is still in the log outlives the cap."""
        guard = IdempotencyGuard(memory_store, history_size=2, active_ids=lambda: {"e1"})
        for entry_id in ("e1", "e2", "e3", "e4"):
            guard.record_applied(entry_id)

        assert guard.should_apply("e1") is False
        assert guard.should_apply("e2") is True
        assert guard.should_apply("e3") is True
        assert guard.should_apply("e4") is False

    def test_applied_entry_left_in_log_is_not_replayed(self, queue_log, memory_store, remote):
        """Remote success recorded, mark_done lost, many applies later: still dropped."""
        guard = IdempotencyGuard(memory_store, history_size=2, active_ids=queue_log.entry_ids)
        stuck = queue_log.enqueue("updateProgress", {"itemId": "w1", "score": 5}, "u1")
        queue_log.next_batch(10)
        guard.record_applied(stuck.id)
        for i in range(5):
            guard.record_applied(f"other-{i}")

        proc = SyncProcessor(queue_log, guard, remote, timeout=5)
        try:
            summary = proc.drain_once()
        finally:
            proc.close()

        assert summary.already_applied == 1
        assert remote.calls == []
        assert queue_log.get(stuck.id) is None
