"""Pytest fixtures for the offline sync queue tests."""

import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from offline_sync.errors import PersistenceError
from offline_sync.idempotency import IdempotencyGuard
from offline_sync.queue.queue_log import QueueLog
from offline_sync.queue.store import MemoryStore
from offline_sync.remote_client import RemoteStoreClient
from offline_sync.sync_processor import SyncProcessor


class FakeRemoteStore(RemoteStoreClient):
    """Remote store double that deduplicates by entry id, like the real backend.

    ``behaviour`` may be set to a callable taking the apply arguments; raising
    from it simulates a failed remote call.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.behaviour = None
        self.calls = []
        self.applied = []
        self.state = {}
        self.max_active_per_key = defaultdict(int)
        self._active = defaultdict(int)
        self._lock = threading.Lock()

    def apply(self, entry_id, op_type, payload, user_id):
        key = (user_id, op_type.value, payload["itemId"])
        with self._lock:
            self.calls.append(entry_id)
            self._active[key] += 1
            self.max_active_per_key[key] = max(self.max_active_per_key[key], self._active[key])
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.behaviour is not None:
                self.behaviour(entry_id, op_type, payload, user_id)
            with self._lock:
                if entry_id not in self.applied:
                    self.applied.append(entry_id)
                    self.state.setdefault(key, []).append(entry_id)
        finally:
            with self._lock:
                self._active[key] -= 1


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self):
        self.now = datetime(2024, 2, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class BrokenStore(MemoryStore):
    """Memory store whose writes start failing once ``fail_writes`` is set."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False

    def set(self, key, value):
        if self.fail_writes:
            raise PersistenceError("disk full")
        super().set(key, value)


@pytest.fixture
def memory_store():
    """Return an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def clock():
    """Return a controllable clock."""
    return FakeClock()


@pytest.fixture
def queue_log(memory_store):
    """Return a queue log with no backoff delay."""
    return QueueLog(memory_store, max_retry_count=5, backoff_base_seconds=0, backoff_max_seconds=0)


@pytest.fixture
def guard(memory_store, queue_log):
    """Return an idempotency guard sharing the queue's store."""
    return IdempotencyGuard(memory_store, active_ids=queue_log.entry_ids)


@pytest.fixture
def remote():
    """Return a fake remote store."""
    return FakeRemoteStore()


@pytest.fixture
def dead_letters():
    """Collects (entry, error) pairs reported by the processor."""
    return []


@pytest.fixture
def processor(queue_log, guard, remote, dead_letters):
    """Return a sync processor wired to the fakes."""
    proc = SyncProcessor(
        queue_log,
        guard,
        remote,
        batch_size=10,
        max_workers=4,
        timeout=5,
        on_dead_letter=lambda entry, error: dead_letters.append((entry, error)),
    )
    yield proc
    proc.close()


@pytest.fixture
def broken_store():
    """Return a store that can be told to fail writes."""
    return BrokenStore()
