from __future__ import annotations

import logging
import threading
from typing import Callable

from dsmr_app.models import WATCHDOG_INTERVAL

logger = logging.getLogger(__name__)


class _WatchdogThread(threading.Thread):
    def __init__(self, callback: Callable[[], None], interval_seconds: float):
        super().__init__(name="dsmr-watchdog", daemon=True)
        self._callback = callback
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self._callback()
            except Exception:  # pragma: no cover - keep the timer alive
                logger.exception("Watchdog callback failed")


class WatchdogService:
    """Periodic timer calling a liveness callback at a fixed interval."""

    def __init__(self, interval_seconds: float = WATCHDOG_INTERVAL):
        self._interval_seconds = interval_seconds
        self._thread: _WatchdogThread | None = None
        self._lock = threading.Lock()

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, callback: Callable[[], None]) -> None:
        """Start the timer, replacing a running one."""
        with self._lock:
            self._stop_locked()
            self._thread = _WatchdogThread(callback, self._interval_seconds)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
