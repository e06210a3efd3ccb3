"""Durable, ordered log of pending mutations."""
import json
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from offline_sync import settings
from offline_sync.errors import PersistenceError
from offline_sync.logging_conf import logger
from offline_sync.queue.models import EntryState, LogicalKey, QueueEntry, utc_now
from offline_sync.queue.store import StoreAdapter

QUEUE_STORAGE_KEY = "offlineSyncQueue"


class QueueLog:
    """The queue of pending operations, persisted as one blob keyed by entry id.

    Every operation reloads the blob, applies its transition and writes it back
    while holding the lock, so the in-memory view never outlives a write.
    Entry state only moves through the compare-and-transition helpers below.
    """

    def __init__(
        self,
        store: StoreAdapter,
        max_retry_count: int = settings.MAX_RETRY_COUNT,
        backoff_base_seconds: float = settings.BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = settings.BACKOFF_MAX_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.max_retry_count = max_retry_count
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._clock = clock
        self._lock = threading.RLock()

    def enqueue(self, op_type, payload: Dict, user_id: str) -> QueueEntry:
        """Validate and durably append a new pending entry.

        Raises:
            ValidationError: the request is malformed; nothing was written.
            PersistenceError: the durable write failed; the mutation is lost.
        """
        entry = QueueEntry.create(op_type, payload, user_id, now=self._clock())
        with self._lock:
            entries = self._load()
            entries[entry.id] = entry
            self._save(entries)

        logger.info(
            f"Enqueued {entry.type.value} operation {entry.id} for item {entry.item_id}",
            extra={"entry_id": entry.id, "op_type": entry.type.value, "user_id": user_id}
        )
        return entry

    def next_batch(self, max_size: int = settings.SYNC_BATCH_SIZE,
                   exclude_keys: Iterable[LogicalKey] = ()) -> List[QueueEntry]:
        """Claim up to max_size eligible entries, at most one per logical key.

        Only the oldest non-terminal entry of each key is a candidate. A key
        whose head is in flight, still backing off, or excluded by the caller
        yields nothing, which keeps per-key FIFO order.
        """
        if max_size <= 0:
            return []

        with self._lock:
            entries = self._load()
            now = self._clock()
            excluded = set(exclude_keys)
            seen = set()
            batch = []

            for entry in self._ordered(entries):
                if entry.is_terminal:
                    continue
                key = entry.logical_key
                if key in seen:
                    continue
                seen.add(key)
                if key in excluded or not entry.is_eligible(now):
                    continue

                entry.state = EntryState.IN_FLIGHT
                entry.claimed_at = now
                batch.append(entry)
                if len(batch) >= max_size:
                    break

            if batch:
                self._save(entries)

        if batch:
            logger.debug(f"Claimed {len(batch)} entries for sync")
        return batch

    def mark_done(self, entry_id: str) -> None:
        """Remove an entry. Removing an unknown id is a no-op."""
        with self._lock:
            entries = self._load()
            entry = entries.pop(entry_id, None)
            if entry is None:
                logger.debug(f"mark_done: {entry_id} already removed")
                return
            self._save(entries)

        logger.info(
            f"Dequeued {entry.type.value} operation {entry_id}",
            extra={"entry_id": entry_id, "op_type": entry.type.value}
        )

    def mark_failed(self, entry_id: str, error: str = "", permanent: bool = False) -> Optional[QueueEntry]:
        """Record a failed attempt on an in-flight entry.

        Returns the updated entry, or None if the entry is unknown or was not
        in flight (nothing is changed in that case).
        """
        with self._lock:
            entries = self._load()
            entry = entries.get(entry_id)
            if entry is None or entry.state != EntryState.IN_FLIGHT:
                state = entry.state.value if entry else "missing"
                logger.warning(f"mark_failed ignored for {entry_id}: state is {state}")
                return None

            now = self._clock()
            entry.retry_count = min(entry.retry_count + 1, self.max_retry_count)
            entry.last_error = error or None
            entry.claimed_at = None

            if permanent or entry.retry_count >= self.max_retry_count:
                entry.state = EntryState.DEAD_LETTERED
                entry.dead_lettered_at = now
                entry.next_attempt_at = None
            else:
                entry.state = EntryState.PENDING
                entry.next_attempt_at = now + timedelta(seconds=self.backoff_delay(entry.retry_count))

            self._save(entries)

        if entry.state == EntryState.DEAD_LETTERED:
            reason = "permanent failure" if permanent else f"{entry.retry_count} failed attempts"
            logger.warning(
                f"Dead-lettered {entry.type.value} operation {entry_id} after {reason}: {error}",
                extra={"entry_id": entry_id, "op_type": entry.type.value}
            )
        else:
            logger.info(
                f"Operation {entry_id} failed (attempt {entry.retry_count}); "
                f"retry after {entry.next_attempt_at.isoformat()}",
                extra={"entry_id": entry_id, "op_type": entry.type.value}
            )
        return entry

    def release(self, entry_id: str) -> bool:
        """Hand an unattempted in-flight entry back to pending, uncharged.

        Returns False if the entry is unknown or no longer in flight.
        """
        with self._lock:
            entries = self._load()
            entry = entries.get(entry_id)
            if entry is None or entry.state != EntryState.IN_FLIGHT:
                return False
            entry.state = EntryState.PENDING
            entry.claimed_at = None
            self._save(entries)

        logger.debug(f"Released unattempted claim on {entry_id}")
        return True

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds before an entry that failed retry_count times is eligible again."""
        if retry_count <= 0:
            return 0.0
        return min(self.backoff_base_seconds * (2 ** (retry_count - 1)), self.backoff_max_seconds)

    def dead_letters(self) -> List[QueueEntry]:
        with self._lock:
            entries = self._load()
        return [e for e in self._ordered(entries) if e.state == EntryState.DEAD_LETTERED]

    def reclaim_in_flight(self, older_than: Optional[timedelta] = None) -> int:
        """Return in-flight entries to pending. Used by the startup recovery pass.

        With ``older_than`` only claims at least that old are reclaimed.
        The retry count is left alone: a claim lost to a crash is not an attempt.
        """
        with self._lock:
            entries = self._load()
            now = self._clock()
            reclaimed = 0
            for entry in entries.values():
                if entry.state != EntryState.IN_FLIGHT:
                    continue
                if older_than is not None and entry.claimed_at and now - entry.claimed_at < older_than:
                    continue
                entry.state = EntryState.PENDING
                entry.claimed_at = None
                reclaimed += 1
            if reclaimed:
                self._save(entries)

        if reclaimed > 0:
            logger.warning(f"Reclaimed {reclaimed} stuck in-flight entries")
        return reclaimed

    def resubmit(self, entry_id: str) -> QueueEntry:
        """Move a dead letter back to pending with a fresh retry budget."""
        with self._lock:
            entries = self._load()
            entry = entries.get(entry_id)
            if entry is None or entry.state != EntryState.DEAD_LETTERED:
                raise KeyError(f"No dead-lettered entry {entry_id}")
            entry.state = EntryState.PENDING
            entry.retry_count = 0
            entry.next_attempt_at = None
            entry.dead_lettered_at = None
            self._save(entries)

        logger.info(f"Resubmitted dead-lettered operation {entry_id}", extra={"entry_id": entry_id})
        return entry

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        with self._lock:
            return self._load().get(entry_id)

    def entries(self) -> List[QueueEntry]:
        """All entries, dead letters included, in enqueue order."""
        with self._lock:
            return self._ordered(self._load())

    def entry_ids(self) -> Set[str]:
        """Ids of every entry still in the log, dead letters included."""
        with self._lock:
            return set(self._load())

    def size(self) -> int:
        """Number of active (pending or in-flight) entries."""
        return sum(1 for e in self.entries() if not e.is_terminal)

    def clear(self) -> None:
        """Drop every entry, dead letters included. Operator use only."""
        with self._lock:
            self.store.delete(QUEUE_STORAGE_KEY)
        logger.warning("Queue cleared")

    def _ordered(self, entries: Dict[str, QueueEntry]) -> List[QueueEntry]:
        # Enqueue order is the blob's key order; created_at follows the device clock
        return list(entries.values())

    def _load(self) -> Dict[str, QueueEntry]:
        try:
            raw = self.store.get(QUEUE_STORAGE_KEY)
        except OSError as e:
            raise PersistenceError(f"Failed to read queue: {e}") from e
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return {entry_id: QueueEntry.from_dict(item) for entry_id, item in data.items()}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Queue storage is unreadable: {e}", exc_info=True)
            raise PersistenceError(f"Queue storage is unreadable: {e}") from e

    def _save(self, entries: Dict[str, QueueEntry]) -> None:
        blob = json.dumps({entry_id: e.to_dict() for entry_id, e in entries.items()})
        try:
            self.store.set(QUEUE_STORAGE_KEY, blob.encode("utf-8"))
        except OSError as e:
            raise PersistenceError(f"Failed to persist queue: {e}") from e
