"""Durable record of entry ids whose remote effect is known to be applied."""
import json
import threading
from typing import Callable, List, Optional, Set

from offline_sync import settings
from offline_sync.errors import PersistenceError
from offline_sync.logging_conf import logger
from offline_sync.queue.store import StoreAdapter

APPLIED_STORAGE_KEY = "offlineSyncApplied"


class IdempotencyGuard:
    """Closes the window between remote success and the local mark_done.

    If the process dies after the remote write succeeded but before the entry
    was removed, the replayed entry is recognised here and dropped without
    touching the remote store again.

    The history is trimmed to ``history_size`` oldest first, but ids that
    ``active_ids`` still reports as queued are never dropped.
    """

    def __init__(self, store: StoreAdapter, history_size: int = settings.APPLIED_HISTORY_SIZE,
                 active_ids: Optional[Callable[[], Set[str]]] = None):
        self.store = store
        self.history_size = history_size
        self.active_ids = active_ids
        self._lock = threading.Lock()

    def should_apply(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id not in self._load()

    def record_applied(self, entry_id: str) -> None:
        """Durably record entry_id. Must complete before the entry is marked done."""
        with self._lock:
            applied = self._load()
            if entry_id in applied:
                return
            applied.append(entry_id)
            if len(applied) > self.history_size:
                applied = self._trim(applied, keep=entry_id)
            self._save(applied)
        logger.debug(f"Recorded {entry_id} as applied", extra={"entry_id": entry_id})

    def _trim(self, applied: List[str], keep: str) -> List[str]:
        live = set(self.active_ids()) if self.active_ids else set()
        live.add(keep)
        excess = len(applied) - self.history_size
        trimmed = []
        for applied_id in applied:
            if excess > 0 and applied_id not in live:
                excess -= 1
                continue
            trimmed.append(applied_id)
        if excess > 0:
            logger.warning(f"Applied-id history over its cap by {excess}; all of those entries are still queued")
        return trimmed

    def _load(self) -> List[str]:
        try:
            raw = self.store.get(APPLIED_STORAGE_KEY)
        except OSError as e:
            raise PersistenceError(f"Failed to read applied ids: {e}") from e
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise PersistenceError(f"Applied-id storage is unreadable: {e}") from e
        return data if isinstance(data, list) else []

    def _save(self, applied: List[str]) -> None:
        try:
            self.store.set(APPLIED_STORAGE_KEY, json.dumps(applied).encode("utf-8"))
        except OSError as e:
            raise PersistenceError(f"Failed to persist applied ids: {e}") from e
