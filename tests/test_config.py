from __future__ import annotations

from pathlib import Path

import allure
import pytest

from droid_scheduler.config import APP_DIR_NAME, Settings, default_data_dir

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("Configuration"),
]


def test_settings_derive_paths_from_data_dir(tmp_path: Path) -> None:
    settings = Settings(data_dir=tmp_path)

    assert settings.db_path == tmp_path / "scheduler.db"
    assert settings.outputs_dir == tmp_path / "tasks" / "outputs"
    assert settings.agent_executable == ("droid",)
    settings.validate()


def test_from_env_reads_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("DROID_SCHEDULER_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("DROID_SCHEDULER_OUTPUTS_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DROID_SCHEDULER_AGENT_EXECUTABLE", "python -m fake_droid")
    monkeypatch.setenv("DROID_SCHEDULER_KILL_GRACE_SECONDS", "1.5")
    monkeypatch.setenv("DROID_SCHEDULER_HISTORY_LIMIT", "10")
    monkeypatch.setenv("DROID_SCHEDULER_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.data_dir == tmp_path
    assert settings.db_path == tmp_path / "scheduler.db"
    assert settings.outputs_dir == tmp_path / "logs"
    assert settings.agent_executable == ("python", "-m", "fake_droid")
    assert settings.kill_grace_seconds == 1.5
    assert settings.history_limit == 10
    assert settings.log_level == "DEBUG"


def test_explicit_data_dir_wins_over_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("DROID_SCHEDULER_DATA_DIR", str(tmp_path / "env"))

    settings = Settings.from_env(data_dir=tmp_path / "cli")

    assert settings.data_dir == tmp_path / "cli"


def test_from_env_rejects_invalid_numbers(monkeypatch) -> None:
    monkeypatch.setenv("DROID_SCHEDULER_HISTORY_LIMIT", "lots")

    with pytest.raises(ValueError, match="DROID_SCHEDULER_HISTORY_LIMIT"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"kill_grace_seconds": 0}, "KILL_GRACE_SECONDS"),
        ({"history_limit": 0}, "HISTORY_LIMIT"),
        ({"agent_executable": ()}, "AGENT_EXECUTABLE"),
        ({"log_level": "LOUD"}, "LOG_LEVEL"),
    ],
)
def test_validate_rejects_bad_values(tmp_path: Path, overrides: dict, message: str) -> None:
    settings = Settings(data_dir=tmp_path, **overrides)

    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_default_data_dir_is_per_user() -> None:
    assert default_data_dir().name == APP_DIR_NAME
