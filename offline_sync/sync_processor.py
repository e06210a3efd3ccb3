"""Drains the queue log against the remote store."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, List, Optional, Set

from offline_sync import settings
from offline_sync.errors import (
    ExhaustedRetriesError,
    PermanentRemoteError,
    PersistenceError,
    RetryableRemoteError,
)
from offline_sync.idempotency import IdempotencyGuard
from offline_sync.logging_conf import logger
from offline_sync.queue.models import DrainSummary, EntryState, LogicalKey, QueueEntry
from offline_sync.queue.queue_log import QueueLog
from offline_sync.remote_client import RemoteStoreClient

DeadLetterHandler = Callable[[QueueEntry, Exception], None]


class SyncProcessor:
    """Runs drain passes: claim a batch, apply it remotely, settle each entry.

    Only one pass runs at a time. Within a pass the remote calls of a batch
    run on a small thread pool; a batch never holds two entries with the same
    logical key, so per-key ordering is kept by the queue log alone.
    """

    def __init__(
        self,
        queue: QueueLog,
        guard: IdempotencyGuard,
        client: RemoteStoreClient,
        batch_size: int = settings.SYNC_BATCH_SIZE,
        max_workers: int = settings.SYNC_WORKERS,
        timeout: float = settings.REMOTE_TIMEOUT_SECONDS,
        on_dead_letter: Optional[DeadLetterHandler] = None,
    ):
        self.queue = queue
        self.guard = guard
        self.client = client
        self.batch_size = batch_size
        self.timeout = timeout
        self.on_dead_letter = on_dead_letter
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sync-remote")
        self._drain_lock = threading.Lock()
        # Keys whose timed-out remote call is still running somewhere
        self._abandoned_keys: Set[LogicalKey] = set()
        self._abandoned_lock = threading.Lock()

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def drain_once(self) -> DrainSummary:
        """Apply every currently eligible entry. Never raises.

        A call made while another pass is running returns at once with
        ``skipped=True``; the running pass owns all claims.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain pass already running; skipping")
            return DrainSummary(skipped=True)

        summary = DrainSummary()
        try:
            # Between passes nothing may be in flight; leftovers are claims
            # whose settling write failed.
            self.queue.reclaim_in_flight()

            deferred_keys: Set[LogicalKey] = set()
            while True:
                with self._abandoned_lock:
                    busy_keys = self._abandoned_keys | deferred_keys
                batch = self.queue.next_batch(self.batch_size, exclude_keys=busy_keys)
                if not batch:
                    break
                logger.info(f"Processing batch of {len(batch)} queued operations")
                self._process_batch(batch, summary, deferred_keys)
        except PersistenceError as e:
            logger.error(f"Drain pass aborted, local storage failed: {e}", exc_info=True)
        except Exception as e:
            logger.error(f"Drain pass error: {e}", exc_info=True)
        finally:
            self._drain_lock.release()

        if summary.attempted or summary.deferred:
            logger.info(
                f"Sync complete: {summary.succeeded} succeeded, {summary.retried} retried, "
                f"{summary.dead_lettered} dead-lettered, {summary.already_applied} already applied, "
                f"{summary.deferred} deferred"
            )
        return summary

    def recover(self) -> int:
        """Reclaim in-flight entries left behind by a previous process."""
        with self._drain_lock:
            return self.queue.reclaim_in_flight()

    def close(self) -> None:
        # Hung remote calls are abandoned, not awaited
        self._executor.shutdown(wait=False)

    def _process_batch(self, batch: List[QueueEntry], summary: DrainSummary, deferred_keys: Set[LogicalKey]) -> None:
        calls = []
        for entry in batch:
            try:
                should_apply = self.guard.should_apply(entry.id)
            except PersistenceError as e:
                logger.error(f"Idempotency check failed for {entry.id}: {e}")
                self._settle_failure(entry, str(e), False, summary)
                continue

            if not should_apply:
                logger.info(f"Operation {entry.id} already applied; dropping replay")
                self._settle_done(entry, summary, already_applied=True)
                continue

            call = _RemoteCall(entry)
            call.future = self._executor.submit(call.run, self.client)
            calls.append(call)

        for call in calls:
            entry = call.entry
            # Waiting for a free worker is not charged against the call's timeout
            if not call.started.wait(self.timeout) and call.future.cancel():
                logger.warning(f"No free worker for {entry.id} within {self.timeout}s; deferring it")
                self._defer(entry, summary, deferred_keys)
                continue
            call.started.wait()

            try:
                call.future.result(timeout=max(0.0, call.started_at + self.timeout - time.monotonic()))
            except FutureTimeout:
                # The call may still land remotely; the replay is deduplicated by id
                logger.warning(f"Remote apply of {entry.id} timed out after {self.timeout}s", extra={"entry_id": entry.id})
                self._hold_key_until_done(entry, call.future)
                self._settle_failure(entry, f"timed out after {self.timeout}s", False, summary)
            except PermanentRemoteError as e:
                logger.warning(f"Remote store rejected {entry.type.value} {entry.id}: {e}", extra={"entry_id": entry.id})
                self._settle_failure(entry, str(e), True, summary)
            except RetryableRemoteError as e:
                logger.warning(f"Failed to sync {entry.type.value} {entry.id}: {e}", extra={"entry_id": entry.id})
                self._settle_failure(entry, str(e), False, summary)
            except Exception as e:
                logger.error(f"Unexpected error applying {entry.id}: {e}", exc_info=True)
                self._settle_failure(entry, str(e), False, summary)
            else:
                self._settle_success(entry, summary)

    def _defer(self, entry: QueueEntry, summary: DrainSummary, deferred_keys: Set[LogicalKey]) -> None:
        """Give back a claim whose call never started; its key sits out the rest of the pass."""
        deferred_keys.add(entry.logical_key)
        summary.deferred += 1
        try:
            self.queue.release(entry.id)
        except PersistenceError as e:
            # Left in flight; the next pass reclaims it
            logger.error(f"Could not release unattempted entry {entry.id}: {e}")

    def _hold_key_until_done(self, entry: QueueEntry, future) -> None:
        """Keep the entry's key out of new batches while its call is still running."""
        key = entry.logical_key
        with self._abandoned_lock:
            self._abandoned_keys.add(key)

        def release(_):
            with self._abandoned_lock:
                self._abandoned_keys.discard(key)

        future.add_done_callback(release)

    def _settle_success(self, entry: QueueEntry, summary: DrainSummary) -> None:
        try:
            self.guard.record_applied(entry.id)
        except PersistenceError as e:
            logger.error(f"Could not record {entry.id} as applied: {e}")
            self._settle_failure(entry, str(e), False, summary)
            return
        self._settle_done(entry, summary)

    def _settle_done(self, entry: QueueEntry, summary: DrainSummary, already_applied: bool = False) -> None:
        try:
            self.queue.mark_done(entry.id)
        except PersistenceError as e:
            logger.error(f"Could not remove applied entry {entry.id}: {e}")
            return
        if already_applied:
            summary.already_applied += 1
        else:
            summary.succeeded += 1
            logger.info(f"Synced {entry.type.value} ({entry.id})", extra={"entry_id": entry.id})

    def _settle_failure(self, entry: QueueEntry, error: str, permanent: bool, summary: DrainSummary) -> None:
        try:
            updated = self.queue.mark_failed(entry.id, error, permanent=permanent)
        except PersistenceError as e:
            logger.error(f"Could not record failure of {entry.id}: {e}")
            return
        if updated is None:
            return

        if updated.state == EntryState.DEAD_LETTERED:
            summary.dead_lettered += 1
            if permanent:
                self._report_dead_letter(updated, PermanentRemoteError(error))
            else:
                self._report_dead_letter(updated, ExhaustedRetriesError(updated, error))
        else:
            summary.retried += 1

    def _report_dead_letter(self, entry: QueueEntry, error: Exception) -> None:
        logger.error(
            f"Operation {entry.id} ({entry.type.value}, item {entry.item_id}) needs attention: {error}",
            extra={"entry_id": entry.id, "op_type": entry.type.value, "user_id": entry.user_id}
        )
        if self.on_dead_letter is None:
            return
        try:
            self.on_dead_letter(entry, error)
        except Exception as e:
            logger.error(f"Dead-letter handler failed for {entry.id}: {e}", exc_info=True)


class _RemoteCall:
    """One submitted apply; records when a worker actually picks it up."""

    def __init__(self, entry: QueueEntry):
        self.entry = entry
        self.future = None
        self.started = threading.Event()
        self.started_at: Optional[float] = None

    def run(self, client: RemoteStoreClient) -> None:
        self.started_at = time.monotonic()
        self.started.set()
        client.apply(self.entry.id, self.entry.type, self.entry.payload, self.entry.user_id)
