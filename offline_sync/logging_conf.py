"""Logging configuration with Betterstack support."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

from offline_sync import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(entry_id)s] %(message)s"


class EntryContextFilter(logging.Filter):
    """Give every record an ``entry_id`` so the format works for library logs too.

    Queue modules pass ``extra={"entry_id": ...}``; everything else shows "-".
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "entry_id"):
            record.entry_id = "-"
        return True


def _add_handler(root_logger, handler, level, formatter):
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(EntryContextFilter())
    root_logger.addHandler(handler)


def setup_logging():
    root_logger = logging.getLogger()
    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    root_logger.setLevel(level)
    root_logger.handlers = []
    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler
    _add_handler(root_logger, logging.StreamHandler(sys.stdout), level, formatter)

    # File handler
    try:
        settings.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        log_file = settings.LOGS_DIR / "sync.log"
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        _add_handler(root_logger, file_handler, logging.INFO, formatter)
    except OSError as e:
        root_logger.warning(f"File logging disabled: {e}")

    # BetterStack handler; it ships the extra fields as structured context
    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
            if settings.BETTERSTACK_INGEST_HOST:
                handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            _add_handler(root_logger, LogtailHandler(**handler_kwargs), logging.DEBUG, formatter)
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return root_logger


logger = setup_logging()
