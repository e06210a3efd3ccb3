"""Operator commands for inspecting and replaying the local sync queue."""
import argparse
import json
import sys
from collections import Counter
from pathlib import Path

from offline_sync import settings
from offline_sync.errors import SyncQueueError
from offline_sync.logging_conf import logger
from offline_sync.queue.queue_log import QueueLog
from offline_sync.queue.store import FileStore
from offline_sync.service import SyncService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="offline-sync", description=__doc__)
    parser.add_argument("--store-dir", default=None, help="Queue store directory (default: QUEUE_STORE_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show entry counts by state")
    sub.add_parser("dead-letters", help="List dead-lettered entries as JSON lines")
    resubmit = sub.add_parser("resubmit", help="Move a dead-lettered entry back to pending")
    resubmit.add_argument("entry_id")
    sub.add_parser("drain", help="Run one drain pass against REMOTE_BASE_URL")
    return parser


def main(argv=None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    store_dir = Path(args.store_dir).resolve() if args.store_dir else settings.QUEUE_STORE_DIR

    try:
        if args.command == "drain":
            settings.validate_config(store_dir=store_dir)
            service = SyncService(store_dir=store_dir)
            try:
                summary = service.drain_now()
            finally:
                service.stop()
            print(json.dumps(summary.as_dict()))
            return 0

        queue = QueueLog(FileStore(store_dir))

        if args.command == "status":
            counts = Counter(entry.state.value for entry in queue.entries())
            print(json.dumps({"active": queue.size(), "by_state": dict(counts)}))
        elif args.command == "dead-letters":
            for entry in queue.dead_letters():
                print(json.dumps(entry.to_dict()))
        elif args.command == "resubmit":
            entry = queue.resubmit(args.entry_id)
            print(f"Resubmitted {entry.id}")
        return 0

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except KeyError as e:
        logger.error(str(e))
        return 1
    except SyncQueueError as e:
        logger.error(f"Queue error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
