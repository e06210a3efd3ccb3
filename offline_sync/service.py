"""Application-facing entry point: wires the queue, processor and triggers."""
from pathlib import Path
from typing import Any, Dict, List, Optional

from offline_sync import settings
from offline_sync.idempotency import IdempotencyGuard
from offline_sync.logging_conf import logger
from offline_sync.queue.models import DrainSummary, QueueEntry
from offline_sync.queue.queue_log import QueueLog
from offline_sync.queue.store import FileStore, StoreAdapter
from offline_sync.remote_client import HttpRemoteStoreClient, RemoteStoreClient
from offline_sync.sync_processor import DeadLetterHandler, SyncProcessor
from offline_sync.triggers import TriggerCoordinator


class SyncService:
    """One owned set of queue components. Nothing here is global."""

    def __init__(
        self,
        store: Optional[StoreAdapter] = None,
        client: Optional[RemoteStoreClient] = None,
        store_dir: Optional[Path] = None,
        on_dead_letter: Optional[DeadLetterHandler] = None,
        debounce_seconds: float = settings.TRIGGER_DEBOUNCE_SECONDS,
    ):
        self.store = store or FileStore(store_dir or settings.QUEUE_STORE_DIR)
        self.queue = QueueLog(self.store)
        self.guard = IdempotencyGuard(self.store, active_ids=self.queue.entry_ids)
        self.client = client or HttpRemoteStoreClient()
        self.processor = SyncProcessor(self.queue, self.guard, self.client, on_dead_letter=on_dead_letter)
        self.coordinator = TriggerCoordinator(self.processor, debounce_seconds=debounce_seconds)

    def enqueue(self, op_type, payload: Dict[str, Any], user_id: str) -> QueueEntry:
        """Durably queue a mutation. Returns once it is on disk; never touches the network.

        Raises ValidationError or PersistenceError; on PersistenceError the
        mutation was not saved and the user has to be told.
        """
        return self.queue.enqueue(op_type, payload, user_id)

    def on_startup(self) -> None:
        self.coordinator.on_startup()

    def on_network_reconnect(self) -> None:
        self.coordinator.on_network_reconnect()

    def on_auth_ready(self) -> None:
        self.coordinator.on_auth_ready()

    def drain_now(self) -> DrainSummary:
        """Run a drain pass in the calling thread."""
        return self.processor.drain_once()

    def dead_letters(self) -> List[QueueEntry]:
        return self.queue.dead_letters()

    def resubmit(self, entry_id: str) -> QueueEntry:
        return self.queue.resubmit(entry_id)

    def queue_size(self) -> int:
        return self.queue.size()

    def stop(self) -> None:
        self.coordinator.stop()
        self.processor.close()
        logger.info("Sync service stopped")
