"""Periodic timer that drives timeout enforcement for running tasks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class Watchdog:
    """Calls ``on_tick`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(
        self,
        *,
        interval_seconds: float,
        on_tick: Callable[[], object],
        name: str = "scheduler-watchdog",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("Watchdog interval must be > 0.")
        self.interval_seconds = interval_seconds
        self._on_tick = on_tick
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name=name)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        if self._thread.is_alive() or self._stop.is_set():
            return
        self._thread.start()
        logger.debug("Watchdog started with interval %.1fs", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        logger.debug("Watchdog stopped")

    def _run(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            try:
                self._on_tick()
            except Exception:
                logger.exception("Watchdog tick failed")
