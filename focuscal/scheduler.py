from __future__ import annotations

import logging
import threading
from typing import Optional

from focuscal.config_manager import ConfigManager
from focuscal.errors import FocusCalError
from focuscal.models import MODE_DELTA
from focuscal.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="focuscal-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_targets(self, trigger: str) -> int:
        """Delta-sync every configured target once; returns how many completed without raising."""
        config = self.config_manager.load()
        completed = 0
        for target in config.sync.targets:
            if self._stop_event.is_set():
                break
            try:
                self.sync_engine.trigger_sync(target.user_id, target.calendar_id, MODE_DELTA, trigger=trigger)
            except FocusCalError as exc:
                logger.warning("Scheduled sync for %s/%s skipped: %s", target.user_id, target.calendar_id, exc)
                continue
            except Exception:
                logger.exception("Scheduled sync for %s/%s crashed", target.user_id, target.calendar_id)
                continue
            completed += 1
        return completed

    def _loop(self) -> None:
        # Run once at startup so state is initialized quickly.
        self.run_targets(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_targets(trigger="manual" if manual else "scheduled")
