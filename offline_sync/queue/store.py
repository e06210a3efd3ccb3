"""Durable key/value blob storage backing the queue."""
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from offline_sync.errors import PersistenceError
from offline_sync.logging_conf import logger


class StoreAdapter:
    """Get/set/delete of whole serialized blobs. Writes are all-or-nothing."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class FileStore(StoreAdapter):
    """One file per key; replaced atomically so a crash never leaves half a blob."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create store directory {self.directory}: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
            self._fsync_directory()
        except OSError as e:
            logger.error(f"Failed to write store key {key}: {e}")
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        finally:
            if tmp_name:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete store key {key}: {e}") from e

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._safe_id(key)}.json"

    def _safe_id(self, value: str) -> str:
        """Make a safe filename from a key."""
        return re.sub(r"[^A-Za-z0-9._-]", "_", value)[:200]

    def _fsync_directory(self) -> None:
        # Makes the rename itself durable; not supported on every platform.
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


class MemoryStore(StoreAdapter):
    """In-process store for tests and embedding."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)
