"""Error taxonomy for the sync queue.

Only ``ValidationError`` and ``PersistenceError`` ever reach callers of
``enqueue``. Everything raised while draining is handled by the processor.
"""


class SyncQueueError(Exception):
    """Base class for all sync queue errors."""


class ValidationError(SyncQueueError):
    """Malformed enqueue request. Rejected before anything is persisted."""


class PersistenceError(SyncQueueError):
    """The local durable write (or read) could not complete."""


class RemoteError(SyncQueueError):
    """Failure reported by the remote store client."""


class RetryableRemoteError(RemoteError):
    """Network, timeout or 5xx-class failure. Retried with backoff."""


class PermanentRemoteError(RemoteError):
    """The remote store rejected the operation as invalid. Never retried."""


class ExhaustedRetriesError(SyncQueueError):
    """Retry budget consumed without success."""

    def __init__(self, entry, last_error: str = ""):
        self.entry = entry
        self.last_error = last_error
        super().__init__(
            f"Entry {entry.id} dead-lettered after {entry.retry_count} attempts"
            + (f": {last_error}" if last_error else "")
        )
