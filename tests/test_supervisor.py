from __future__ import annotations

import contextlib
import os
import signal
import sys
import threading
from pathlib import Path

import allure
import pytest

from droid_scheduler.orchestrator.models import (
    AgentDefinition,
    AgentSource,
    AutoLevel,
    Task,
    TaskStatus,
)
from droid_scheduler.orchestrator.protocol import InitEvent, ResultEvent, StreamEvent
from droid_scheduler.orchestrator.supervisor import (
    ProcessSupervisor,
    build_run_args,
    compose_prompt,
)
from droid_scheduler.storage.common import utc_now
from support import ECHO_AGENT_COMMAND, wait_for

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("Process Supervisor"),
]


def _task(task_id: str = "t-1", prompt: str = "fix the bug", **overrides) -> Task:
    values = {
        "task_id": task_id,
        "name": "task",
        "prompt": prompt,
        "project_id": "p-1",
        "agent_id": "global:writer",
        "status": TaskStatus.RUNNING,
        "priority": 5,
        "auto_level": AutoLevel.HIGH,
        "created_at": utc_now(),
    }
    values.update(overrides)
    return Task(**values)


def _agent(source: AgentSource, **overrides) -> AgentDefinition:
    values = {
        "agent_id": "agent-1",
        "name": "reviewer",
        "project_id": "p-1",
        "created_at": utc_now(),
        "updated_at": utc_now(),
        "source": source,
    }
    values.update(overrides)
    return AgentDefinition(**values)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, StreamEvent]] = []
        self.exits: list[tuple[str, int | None, str | None]] = []
        self.exited = threading.Event()

    def on_output(self, task_id: str, event: StreamEvent) -> None:
        self.events.append((task_id, event))

    def on_exit(self, task_id: str, code: int | None, signal_name: str | None) -> None:
        self.exits.append((task_id, code, signal_name))
        self.exited.set()


def test_build_run_args_order_and_options() -> None:
    task = _task(enabled_tools=["Read", "Edit"], disabled_tools=["Bash"])

    args = build_run_args(
        executable="droid",
        task=task,
        project_path="/work/demo",
        default_model="default-model",
        agent=_agent(AgentSource.IMPORTED, source_path="/agents/reviewer.md"),
    )

    assert args == [
        "droid",
        "exec",
        "--output-format",
        "stream-json",
        "--auto",
        "high",
        "--cwd",
        "/work/demo",
        "--model",
        "default-model",
        "--droid",
        "reviewer",
        "--enabled-tools",
        "Read,Edit",
        "--disabled-tools",
        "Bash",
        "fix the bug",
    ]


def test_build_run_args_prefers_task_model_and_omits_empty_options() -> None:
    args = build_run_args(
        executable=["python", "-m", "fake"],
        task=_task(model="task-model"),
        project_path="/work",
        default_model="default-model",
    )

    assert args[:3] == ["python", "-m", "fake"]
    assert args[args.index("--model") + 1] == "task-model"
    assert "--droid" not in args
    assert "--enabled-tools" not in args
    assert args[-1] == "fix the bug"


def test_compose_prompt_prepends_created_agent_system_prompt() -> None:
    created = _agent(AgentSource.CREATED, system_prompt="You review code.\n")

    assert compose_prompt(_task(), created) == (
        "=== SYSTEM PROMPT ===\nYou review code.\n=== END SYSTEM PROMPT ===\n\n"
        "=== TASK ===\nfix the bug"
    )
    assert compose_prompt(_task(), _agent(AgentSource.CREATED)) == "fix the bug"
    assert compose_prompt(_task(), _agent(AgentSource.IMPORTED, system_prompt="x")) == "fix the bug"
    assert compose_prompt(_task(), None) == "fix the bug"


def test_spawn_streams_events_then_reports_exit(tmp_path: Path) -> None:
    recorder = _Recorder()
    supervisor = ProcessSupervisor(executable=ECHO_AGENT_COMMAND)
    supervisor.set_callbacks(recorder.on_output, recorder.on_exit)

    result = supervisor.spawn(_task(), str(tmp_path), "default-model")

    assert result.ok and result.pid is not None
    assert recorder.exited.wait(timeout=15)
    assert supervisor.wait_idle(timeout=5)
    assert recorder.exits == [("t-1", 0, None)]
    events = [event for _, event in recorder.events]
    assert isinstance(events[0], InitEvent)
    assert any(isinstance(event, ResultEvent) for event in events)
    assert supervisor.running_count() == 0
    assert supervisor.get_pid("t-1") is None


def test_spawn_refuses_duplicate_and_reports_missing_executable(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(executable=ECHO_AGENT_COMMAND, kill_grace_seconds=0.5)
    task = _task(prompt="sleep:30")
    try:
        assert supervisor.spawn(task, str(tmp_path), "m").ok
        duplicate = supervisor.spawn(task, str(tmp_path), "m")
        assert duplicate.ok is False
        assert duplicate.error == "Task already running"
        assert supervisor.running_task_ids() == ["t-1"]
    finally:
        supervisor.kill_all()
        assert supervisor.wait_idle(timeout=10)

    missing = ProcessSupervisor(executable=str(tmp_path / "no-such-droid"))
    failed = missing.spawn(_task(), str(tmp_path), "m")
    assert failed.ok is False
    assert failed.error
    assert missing.running_count() == 0


def test_kill_unknown_task_returns_false() -> None:
    assert ProcessSupervisor().kill("missing") is False


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_kill_escalates_when_process_ignores_terminate(tmp_path: Path) -> None:
    recorder = _Recorder()
    supervisor = ProcessSupervisor(executable=ECHO_AGENT_COMMAND, kill_grace_seconds=0.3)
    supervisor.set_callbacks(recorder.on_output, recorder.on_exit)

    assert supervisor.spawn(_task(prompt="ignore-term sleep:30"), str(tmp_path), "m").ok
    assert wait_for(lambda: any(isinstance(event, InitEvent) for _, event in recorder.events))

    assert supervisor.kill("t-1") is True
    assert supervisor.kill("t-1") is True
    assert recorder.exited.wait(timeout=15)
    assert recorder.exits == [("t-1", None, "SIGKILL")]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_exit_is_reported_while_background_child_holds_pipes(tmp_path: Path) -> None:
    recorder = _Recorder()
    supervisor = ProcessSupervisor(executable=ECHO_AGENT_COMMAND)
    supervisor.set_callbacks(recorder.on_output, recorder.on_exit)

    result = supervisor.spawn(_task(prompt="linger:20"), str(tmp_path), "m")
    assert result.ok and result.pid is not None
    try:
        assert recorder.exited.wait(timeout=10)
        assert recorder.exits == [("t-1", 0, None)]
        assert supervisor.running_count() == 0
        assert supervisor.kill("t-1") is False
        assert any(isinstance(event, ResultEvent) for _, event in recorder.events)
    finally:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(result.pid, signal.SIGKILL)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_agent_runs_in_its_own_process_group(tmp_path: Path) -> None:
    recorder = _Recorder()
    supervisor = ProcessSupervisor(executable=ECHO_AGENT_COMMAND, kill_grace_seconds=0.5)
    supervisor.set_callbacks(recorder.on_output, recorder.on_exit)

    result = supervisor.spawn(_task(prompt="sleep:30"), str(tmp_path), "m")
    assert result.ok and result.pid is not None
    try:
        assert wait_for(lambda: any(isinstance(event, InitEvent) for _, event in recorder.events))
        assert os.getpgid(result.pid) == result.pid
        assert os.getpgid(result.pid) != os.getpgrp()
    finally:
        supervisor.kill_all()
        assert recorder.exited.wait(timeout=15)
    assert recorder.exits == [("t-1", None, "SIGTERM")]
