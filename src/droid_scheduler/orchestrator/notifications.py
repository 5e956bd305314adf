"""Notification sinks receiving scheduler events."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

TASK_CREATED = "task-created"
TASK_STATUS = "task-status"
TASK_OUTPUT = "task-output"
AGENT_STATUS = "agent-status"
PAUSED = "paused"


class NotificationSink(Protocol):
    """Push-only receiver of scheduler events."""

    def emit(self, event: str, payload: Any) -> None:
        """Deliver one event; must not block the scheduler."""


class NullNotificationSink:
    def emit(self, event: str, payload: Any) -> None:
        return None


class LoggingNotificationSink:
    """Log every event at debug level, status changes at info."""

    def emit(self, event: str, payload: Any) -> None:
        if event == TASK_OUTPUT:
            logger.debug("%s %s", event, payload)
            return
        logger.info("%s %s", event, payload)


class EchoNotificationSink:
    """Write each event as one JSON line through ``writer``."""

    def __init__(self, writer: Callable[[str], None], *, include_output: bool = True) -> None:
        self._writer = writer
        self._include_output = include_output

    def emit(self, event: str, payload: Any) -> None:
        if event == TASK_OUTPUT and not self._include_output:
            return
        self._writer(
            json.dumps({"event": event, "payload": payload}, ensure_ascii=False, default=str),
        )
