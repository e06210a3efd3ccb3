"""Turns startup, reconnect and auth-ready signals into drain passes."""
import threading
from typing import Optional

from offline_sync import settings
from offline_sync.errors import PersistenceError
from offline_sync.logging_conf import logger
from offline_sync.sync_processor import SyncProcessor

IDLE = "idle"
SCHEDULED = "scheduled"
RUNNING = "running"


class TriggerCoordinator:
    """Debounces trigger signals into single drain passes.

    Nothing is drained before ``on_auth_ready`` has fired once: writes cannot
    be attributed before then. Signals that arrive earlier are served by the
    pass that ``on_auth_ready`` requests. A signal arriving while a pass runs
    schedules exactly one follow-up pass.
    """

    def __init__(self, processor: SyncProcessor, debounce_seconds: float = settings.TRIGGER_DEBOUNCE_SECONDS):
        self.processor = processor
        self.debounce_seconds = debounce_seconds
        self._cond = threading.Condition()
        self._state = IDLE
        self._auth_ready = False
        self._started = False
        self._stopped = False
        self._rerun = False
        self._timer: Optional[threading.Timer] = None

    @property
    def state(self) -> str:
        with self._cond:
            return self._state

    @property
    def auth_ready(self) -> bool:
        with self._cond:
            return self._auth_ready

    def on_startup(self) -> None:
        """App started: reclaim claims from the previous process, then drain."""
        with self._cond:
            if self._started:
                return
            self._started = True

        try:
            self.processor.recover()
        except PersistenceError as e:
            logger.error(f"Startup recovery failed: {e}", exc_info=True)
        self._request("startup")

    def on_network_reconnect(self) -> None:
        self._request("network reconnect")

    def on_auth_ready(self) -> None:
        with self._cond:
            first = not self._auth_ready
            self._auth_ready = True
        if first:
            logger.info("Auth ready; queued operations may now sync")
        self._request("auth ready")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no pass is scheduled or running."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state == IDLE, timeout)

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            if self._timer:
                self._timer.cancel()
            if self._state == SCHEDULED:
                self._state = IDLE
                self._cond.notify_all()
        logger.info("Trigger coordinator stopped")

    def _request(self, source: str) -> None:
        with self._cond:
            if self._stopped:
                return
            if not self._auth_ready:
                logger.debug(f"Drain requested by {source} before auth ready; deferred")
                return
            if self._state == SCHEDULED:
                logger.debug(f"Drain requested by {source}; already scheduled")
                return
            if self._state == RUNNING:
                self._rerun = True
                return
            logger.info(f"Drain requested by {source}")
            self._schedule_locked()

    def _schedule_locked(self) -> None:
        self._state = SCHEDULED
        self._timer = threading.Timer(self.debounce_seconds, self._run)
        self._timer.daemon = True
        self._timer.start()

    def _run(self) -> None:
        with self._cond:
            if self._stopped or self._state != SCHEDULED:
                return
            self._state = RUNNING
            self._rerun = False

        skipped = False
        try:
            summary = self.processor.drain_once()
            skipped = summary.skipped or summary.deferred > 0
        except Exception as e:
            logger.error(f"Drain pass failed: {e}", exc_info=True)

        with self._cond:
            # Skipped or deferred work has to be picked up by another pass
            if (self._rerun or skipped) and not self._stopped:
                self._rerun = False
                self._schedule_locked()
            else:
                self._state = IDLE
                self._cond.notify_all()
