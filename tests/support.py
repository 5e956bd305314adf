"""Helpers shared by scheduler tests."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable
from typing import Any

ECHO_AGENT_COMMAND = [sys.executable, "-m", "droid_scheduler.orchestrator.echo_agent"]


class RecordingSink:
    """Collects scheduler events for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, event: str, payload: Any) -> None:
        with self._lock:
            self.events.append((event, payload))

    def payloads(self, event: str) -> list[Any]:
        with self._lock:
            return [payload for name, payload in self.events if name == event]


def wait_for(predicate: Callable[[], bool], timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
