from __future__ import annotations

import json
import re
import shlex
import subprocess
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from droid_scheduler import __version__
from droid_scheduler.main import droid_scheduler
from support import wait_for

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("CLI Ops"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("DROID_SCHEDULER_DATA_DIR", str(data_dir))
    monkeypatch.setenv(
        "DROID_SCHEDULER_AGENT_EXECUTABLE",
        f"{shlex.quote(sys.executable)} -m droid_scheduler.orchestrator.echo_agent",
    )
    monkeypatch.setenv("DROID_SCHEDULER_KILL_GRACE_SECONDS", "0.5")
    return data_dir


def _invoke(*args: str) -> Result:
    return CliRunner().invoke(droid_scheduler, list(args))


def _captured(pattern: str, result: Result) -> str:
    match = re.search(pattern, result.output)
    assert match is not None, result.output
    return match.group(1)


def _add_project(tmp_path: Path) -> str:
    workdir = tmp_path / "project"
    workdir.mkdir(exist_ok=True)
    result = _invoke("projects", "add", "--name", "demo", "--path", str(workdir))
    assert result.exit_code == 0, result.output
    return _captured(r"project_id=(\S+)", result)


def test_version_option() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_create_run_and_inspect_task(cli_env: Path, tmp_path: Path) -> None:
    project_id = _add_project(tmp_path)
    created = _invoke(
        "tasks",
        "create",
        "--name",
        "greet",
        "--prompt",
        "say hello",
        "--project-id",
        project_id,
        "--agent-id",
        "global:writer",
        "--priority",
        "9",
    )
    assert created.exit_code == 0, created.output
    task_id = _captured(r"task_id=(\S+)", created)

    listed = _invoke("tasks", "list", "--status", "pending")
    assert task_id in listed.output

    ran = _invoke("run", "--until-idle", "--poll-interval", "0.05")
    assert ran.exit_code == 0, ran.output
    events = [
        json.loads(line)
        for line in ran.output.splitlines()
        if line.startswith('{"event"')
    ]
    statuses = [
        event["payload"]["status"]
        for event in events
        if event["event"] == "task-status" and event["payload"]["task_id"] == task_id
    ]
    assert statuses == ["running", "completed"]
    assert "Scheduler stopped" in ran.output

    inspected = _invoke("tasks", "inspect", task_id)
    assert "Status: completed" in inspected.output
    assert "Priority: 9" in inspected.output
    output = _invoke("tasks", "output", task_id)
    assert output.output.splitlines()[0] == "say hello"
    status = _invoke("status")
    assert "completed=1" in status.output
    states = _invoke("agents", "states")
    assert "global:writer status=idle" in states.output


def test_task_mutations_and_errors(cli_env: Path, tmp_path: Path) -> None:
    project_id = _add_project(tmp_path)
    created = _invoke(
        "tasks",
        "create",
        "--name",
        "later",
        "--prompt",
        "wait",
        "--project-id",
        project_id,
        "--agent-id",
        "global:writer",
    )
    task_id = _captured(r"task_id=(\S+)", created)

    priority = _invoke("tasks", "priority", task_id, "42")
    assert "priority=10" in priority.output
    queue = _invoke("agents", "queue", "global:writer")
    assert task_id in queue.output

    cancelled = _invoke("tasks", "cancel", task_id)
    assert cancelled.exit_code == 0
    again = _invoke("tasks", "cancel", task_id)
    assert again.exit_code != 0
    assert "Task is not pending or running" in again.output

    retry = _invoke("tasks", "retry", task_id)
    assert retry.exit_code != 0
    missing = _invoke("tasks", "inspect", "missing")
    assert "Task not found" in missing.output


def test_config_show_and_set(cli_env: Path) -> None:
    updated = _invoke("config", "set", "max_parallel_tasks=6", "retry-on-failure=false")
    assert updated.exit_code == 0, updated.output
    assert "max_parallel_tasks=6" in updated.output
    assert "retry_on_failure=false" in updated.output

    shown = _invoke("config", "show")
    assert "max_parallel_tasks=6" in shown.output
    assert "default_auto_level=medium" in shown.output

    rejected = _invoke("config", "set", "max_tasks_per_agent=9")
    assert rejected.exit_code != 0
    assert "max_tasks_per_agent" in rejected.output
    unknown = _invoke("config", "set", "speed=fast")
    assert "Unknown config key" in unknown.output


def test_agents_import_and_list(cli_env: Path, tmp_path: Path) -> None:
    project_id = _add_project(tmp_path)
    agent_file = tmp_path / "reviewer.md"
    agent_file.write_text("# reviewer\n", encoding="utf-8")

    imported = _invoke("agents", "import", "--project-id", project_id, str(agent_file))
    assert imported.exit_code == 0, imported.output
    assert f"agent_id=imported:{project_id}:reviewer.md" in imported.output

    added = _invoke(
        "agents",
        "add",
        "--project-id",
        project_id,
        "--name",
        "writer",
        "--system-prompt",
        "Write docs.",
    )
    assert added.exit_code == 0, added.output

    listed = _invoke("agents", "list", "--project-id", project_id)
    assert "name=reviewer role=sub source=imported" in listed.output
    assert "name=writer role=sub source=created" in listed.output

    unknown_project = _invoke("agents", "import", "--project-id", "nope", str(agent_file))
    assert "Project not found" in unknown_project.output


def _create_task(project_id: str, prompt: str, name: str = "task") -> str:
    result = _invoke(
        "tasks",
        "create",
        "--name",
        name,
        "--prompt",
        prompt,
        "--project-id",
        project_id,
        "--agent-id",
        "global:writer",
    )
    assert result.exit_code == 0, result.output
    return _captured(r"task_id=(\S+)", result)


def test_tasks_created_while_run_process_streams_are_kept(cli_env: Path, tmp_path: Path) -> None:
    project_id = _add_project(tmp_path)
    streaming = _create_task(project_id, "repeat:2000", name="streaming")
    run_process = subprocess.Popen(  # noqa: S603
        [
            sys.executable,
            "-m",
            "droid_scheduler.main",
            "run",
            "--until-idle",
            "--poll-interval",
            "0.05",
            "--hide-output",
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    try:
        assert wait_for(
            lambda: "Status: running" in _invoke("tasks", "inspect", streaming).output,
            timeout=30,
        )
        created = [_create_task(project_id, "say hello", name=f"cli-{index}") for index in range(5)]
        output, _ = run_process.communicate(timeout=120)
    finally:
        if run_process.poll() is None:
            run_process.kill()
            run_process.wait()
    assert run_process.returncode == 0, output

    for task_id in created:
        inspected = _invoke("tasks", "inspect", task_id)
        assert inspected.exit_code == 0, inspected.output

    ran = _invoke("run", "--until-idle", "--poll-interval", "0.05", "--hide-output")
    assert ran.exit_code == 0, ran.output
    assert "completed=6" in _invoke("status").output
