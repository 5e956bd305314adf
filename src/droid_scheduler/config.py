"""Runtime configuration for the droid scheduler."""

from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

APP_DIR_NAME = "droid-workflow-scheduler"


@dataclass(slots=True)
class Settings:
    """Process-level settings; scheduling policy itself is persisted in the store."""

    data_dir: Path = field(default_factory=lambda: default_data_dir())
    db_path: Path | None = None
    outputs_dir: Path | None = None
    agent_executable: tuple[str, ...] = ("droid",)
    kill_grace_seconds: float = 5.0
    history_limit: int = 1_000
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = self.data_dir / "scheduler.db"
        if self.outputs_dir is None:
            self.outputs_dir = self.data_dir / "tasks" / "outputs"

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from ``DROID_SCHEDULER_*`` variables."""

        resolved_data_dir = data_dir or _env_path("DROID_SCHEDULER_DATA_DIR") or default_data_dir()
        executable = os.getenv("DROID_SCHEDULER_AGENT_EXECUTABLE", "droid").strip() or "droid"
        return cls(
            data_dir=resolved_data_dir,
            db_path=_env_path("DROID_SCHEDULER_DB_PATH"),
            outputs_dir=_env_path("DROID_SCHEDULER_OUTPUTS_DIR"),
            agent_executable=tuple(shlex.split(executable)),
            kill_grace_seconds=_env_float("DROID_SCHEDULER_KILL_GRACE_SECONDS", 5.0),
            history_limit=_env_int("DROID_SCHEDULER_HISTORY_LIMIT", 1_000),
            sqlite_busy_timeout_ms=_env_int("DROID_SCHEDULER_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("DROID_SCHEDULER_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if not self.agent_executable:
            raise ValueError("DROID_SCHEDULER_AGENT_EXECUTABLE must not be empty.")
        if self.kill_grace_seconds <= 0:
            raise ValueError("DROID_SCHEDULER_KILL_GRACE_SECONDS must be > 0.")
        if self.history_limit <= 0:
            raise ValueError("DROID_SCHEDULER_HISTORY_LIMIT must be > 0.")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("DROID_SCHEDULER_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unsupported DROID_SCHEDULER_LOG_LEVEL: {self.log_level!r}")


def default_data_dir() -> Path:
    """Per-user data directory, matching the desktop app's location on each platform."""

    if sys.platform == "win32":
        base = os.getenv("APPDATA")
        return Path(base) / APP_DIR_NAME if base else Path.home() / APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error
