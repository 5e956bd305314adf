"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from droid_scheduler.orchestrator.catalogs import StoreAgentCatalog, StoreProjectCatalog
from droid_scheduler.orchestrator.models import Project
from droid_scheduler.orchestrator.scheduler import TaskScheduler
from droid_scheduler.orchestrator.store import StateStore
from droid_scheduler.orchestrator.supervisor import ProcessSupervisor
from droid_scheduler.storage.common import utc_now
from support import ECHO_AGENT_COMMAND, RecordingSink


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[StateStore]:
    state_store = StateStore(tmp_path / "data" / "scheduler.db", tmp_path / "data" / "outputs")
    assert state_store.init_schema()
    try:
        yield state_store
    finally:
        state_store.close()


@pytest.fixture()
def project(store: StateStore, tmp_path: Path) -> Project:
    workdir = tmp_path / "project"
    workdir.mkdir()
    created = StoreProjectCatalog(store).add_project(name="demo", path=workdir)
    assert created is not None
    return created


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_scheduler(
    store: StateStore,
    sink: RecordingSink,
) -> Iterator[Callable[..., TaskScheduler]]:
    """Build schedulers wired to the echo agent; all are shut down after the test."""

    created: list[TaskScheduler] = []

    def _factory(
        *,
        paused: bool = False,
        executable: str | list[str] | None = None,
        kill_grace_seconds: float = 0.5,
        clock: Callable[[], datetime] = utc_now,
        **config_changes: Any,
    ) -> TaskScheduler:
        scheduler = TaskScheduler(
            store=store,
            supervisor=ProcessSupervisor(
                executable=executable or ECHO_AGENT_COMMAND,
                kill_grace_seconds=kill_grace_seconds,
            ),
            projects=StoreProjectCatalog(store),
            agents=StoreAgentCatalog(store),
            sink=sink,
            paused=paused,
            start_watchdog=False,
            clock=clock,
        )
        if config_changes:
            assert scheduler.update_config(**config_changes) is not None
        created.append(scheduler)
        return scheduler

    yield _factory
    for scheduler in created:
        scheduler.shutdown()
        scheduler.supervisor.wait_idle(timeout=10)
