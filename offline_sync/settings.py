"""Configuration for the offline sync queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Durable queue storage
QUEUE_STORE_DIR = Path(os.getenv("QUEUE_STORE_DIR", str(BASE_DIR / "data" / "queue")))

# Queue policy
MAX_RETRY_COUNT = int(os.getenv("MAX_RETRY_COUNT", "5"))
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "10"))
SYNC_WORKERS = int(os.getenv("SYNC_WORKERS", "4"))
REMOTE_TIMEOUT_SECONDS = float(os.getenv("REMOTE_TIMEOUT_SECONDS", "15"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "2"))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", "300"))
TRIGGER_DEBOUNCE_SECONDS = float(os.getenv("TRIGGER_DEBOUNCE_SECONDS", "1"))
APPLIED_HISTORY_SIZE = int(os.getenv("APPLIED_HISTORY_SIZE", "1000"))

# Remote store
REMOTE_BASE_URL = os.getenv("REMOTE_BASE_URL")
REMOTE_API_TOKEN = os.getenv("REMOTE_API_TOKEN")


def validate_config(require_remote: bool = True, store_dir=None):
    """Validate required configuration.

    store_dir overrides QUEUE_STORE_DIR as the directory that must be usable.
    """
    errors = []
    queue_dir = Path(store_dir) if store_dir else QUEUE_STORE_DIR

    if require_remote and not REMOTE_BASE_URL:
        errors.append("REMOTE_BASE_URL is required")

    if MAX_RETRY_COUNT < 1:
        errors.append(f"MAX_RETRY_COUNT must be >= 1: {MAX_RETRY_COUNT}")

    if SYNC_BATCH_SIZE < 1:
        errors.append(f"SYNC_BATCH_SIZE must be >= 1: {SYNC_BATCH_SIZE}")

    if SYNC_WORKERS < 1:
        errors.append(f"SYNC_WORKERS must be >= 1: {SYNC_WORKERS}")

    if BACKOFF_BASE_SECONDS < 0 or BACKOFF_MAX_SECONDS < BACKOFF_BASE_SECONDS:
        errors.append(
            f"Invalid backoff window: base={BACKOFF_BASE_SECONDS}s max={BACKOFF_MAX_SECONDS}s"
        )

    if not queue_dir.is_absolute():
        errors.append(f"Queue store directory must be absolute: {queue_dir}")
    else:
        try:
            queue_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create queue store directory {queue_dir}: {e}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
