from __future__ import annotations

import logging
import threading
from typing import Optional

from clinicsync.config_manager import ConfigManager
from clinicsync.errors import ConflictError
from clinicsync.models import TriggerContext
from clinicsync.sync_engine import SyncController


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs a sync every ``sync.interval_seconds`` while ``sync.scheduled`` is on."""

    def __init__(self, controller: SyncController, config_manager: ConfigManager) -> None:
        self.controller = controller
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="clinicsync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def run_if_enabled(self, source: str) -> bool:
        config = self.config_manager.load()
        if not config.sync.scheduled:
            return False
        try:
            outcome = self.controller.run_once(TriggerContext(source=source))
        except ConflictError as exc:
            logger.info("Skipping %s sync: %s", source, exc)
            return False
        logger.info("%s sync %s finished with %s", source.capitalize(), outcome.log_id, outcome.status)
        return True

    def _loop(self) -> None:
        self.run_if_enabled("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            if self._stop_event.wait(timeout=interval_seconds):
                break
            self.run_if_enabled("scheduled")
