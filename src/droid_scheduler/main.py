"""CLI entrypoint for droid-scheduler."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from droid_scheduler import __version__
from droid_scheduler.orchestrator.controllers import (
    AgentAddCommand,
    AgentImportCommand,
    AgentListCommand,
    ConfigSetCommand,
    ProjectAddCommand,
    RefCommand,
    RunCommand,
    SchedulerCliController,
    SchedulerCommandError,
    StatusCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskOutputCommand,
    TaskPriorityCommand,
)
from droid_scheduler.orchestrator.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    AgentRole,
    AutoLevel,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SchedulerCliController()

_DATA_DIR_OPTION = click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Scheduler data directory (defaults to DROID_SCHEDULER_DATA_DIR or the per-user dir).",
)
_AUTO_LEVELS = click.Choice([level.value for level in AutoLevel])


@click.group()
@click.version_option(version=__version__, prog_name="droid-scheduler")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to DROID_SCHEDULER_LOG_LEVEL or INFO).",
)
def droid_scheduler(log_level: str | None) -> None:
    """Schedule headless droid agent runs across local projects."""

    level = (log_level or os.getenv("DROID_SCHEDULER_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@droid_scheduler.group()
def projects() -> None:
    """Project catalog commands."""


@projects.command("add")
@_DATA_DIR_OPTION
@click.option("--name", required=True, help="Display name.")
@click.option(
    "--path",
    "project_path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Project directory the agent runs in.",
)
@click.option("--description", default=None, help="Optional description.")
@click.option("--default-model", default=None, help="Model used when a task sets none.")
def projects_add(
    data_dir: Path | None,
    name: str,
    project_path: Path,
    description: str | None,
    default_model: str | None,
) -> None:
    """Register a project directory."""

    _run(
        lambda: CONTROLLER.add_project(
            ProjectAddCommand(
                data_dir=data_dir,
                name=name,
                path=project_path,
                description=description,
                default_model=default_model,
            ),
        ),
    )


@projects.command("list")
@_DATA_DIR_OPTION
def projects_list(data_dir: Path | None) -> None:
    """List registered projects."""

    _run(lambda: CONTROLLER.list_projects(StatusCommand(data_dir=data_dir)))


@projects.command("remove")
@_DATA_DIR_OPTION
@click.argument("project_id")
def projects_remove(data_dir: Path | None, project_id: str) -> None:
    """Remove a project from the catalog."""

    _run(lambda: CONTROLLER.remove_project(RefCommand(data_dir=data_dir, ref_id=project_id)))


@droid_scheduler.group()
def agents() -> None:
    """Agent catalog and run-state commands."""


@agents.command("add")
@_DATA_DIR_OPTION
@click.option("--project-id", required=True, help="Owning project id.")
@click.option("--name", required=True, help="Agent name.")
@click.option("--system-prompt", required=True, help="System prompt prepended to every task.")
@click.option(
    "--role",
    type=click.Choice([role.value for role in AgentRole]),
    default=AgentRole.SUB.value,
    show_default=True,
)
@click.option("--description", default=None)
@click.option("--model", default=None, help="Preferred model for this agent.")
@click.option("--auto-level", type=_AUTO_LEVELS, default=None)
def agents_add(  # noqa: PLR0913
    data_dir: Path | None,
    project_id: str,
    name: str,
    system_prompt: str,
    role: str,
    description: str | None,
    model: str | None,
    auto_level: str | None,
) -> None:
    """Create an agent with its own system prompt."""

    _run(
        lambda: CONTROLLER.add_agent(
            AgentAddCommand(
                data_dir=data_dir,
                project_id=project_id,
                name=name,
                system_prompt=system_prompt,
                role=role,
                description=description,
                model=model,
                auto_level=auto_level,
            ),
        ),
    )


@agents.command("import")
@_DATA_DIR_OPTION
@click.option("--project-id", required=True, help="Owning project id.")
@click.argument("agent_file", type=click.Path(dir_okay=False, path_type=Path))
def agents_import(data_dir: Path | None, project_id: str, agent_file: Path) -> None:
    """Register an agent defined by a markdown file (selected with --droid)."""

    _run(
        lambda: CONTROLLER.import_agent(
            AgentImportCommand(data_dir=data_dir, project_id=project_id, path=agent_file),
        ),
    )


@agents.command("list")
@_DATA_DIR_OPTION
@click.option("--project-id", default=None, help="Only agents of this project.")
def agents_list(data_dir: Path | None, project_id: str | None) -> None:
    """List agent definitions."""

    _run(lambda: CONTROLLER.list_agents(AgentListCommand(data_dir=data_dir, project_id=project_id)))


@agents.command("states")
@_DATA_DIR_OPTION
def agents_states(data_dir: Path | None) -> None:
    """Show per-agent scheduling state."""

    _run(lambda: CONTROLLER.agent_states(StatusCommand(data_dir=data_dir)))


@agents.command("queue")
@_DATA_DIR_OPTION
@click.argument("agent_id")
def agents_queue(data_dir: Path | None, agent_id: str) -> None:
    """Show tasks queued for one agent."""

    _run(lambda: CONTROLLER.agent_queue(RefCommand(data_dir=data_dir, ref_id=agent_id)))


@agents.command("stop")
@_DATA_DIR_OPTION
@click.argument("agent_id")
def agents_stop(data_dir: Path | None, agent_id: str) -> None:
    """Cancel the task an agent is currently running."""

    _run(lambda: CONTROLLER.stop_agent(RefCommand(data_dir=data_dir, ref_id=agent_id)))


@droid_scheduler.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("create")
@_DATA_DIR_OPTION
@click.option("--name", required=True, help="Task name.")
@click.option("--prompt", required=True, help="Prompt passed to the agent.")
@click.option("--project-id", required=True, help="Project the task runs against.")
@click.option("--agent-id", required=True, help="Agent executing the task.")
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY, clamp=True),
    default=None,
    help="1 (lowest) to 10 (highest), default 5.",
)
@click.option("--auto-level", type=_AUTO_LEVELS, default=None)
@click.option("--model", default=None)
@click.option("--enabled-tool", "enabled_tools", multiple=True, help="Can be repeated.")
@click.option("--disabled-tool", "disabled_tools", multiple=True, help="Can be repeated.")
def tasks_create(  # noqa: PLR0913
    data_dir: Path | None,
    name: str,
    prompt: str,
    project_id: str,
    agent_id: str,
    priority: int | None,
    auto_level: str | None,
    model: str | None,
    enabled_tools: tuple[str, ...],
    disabled_tools: tuple[str, ...],
) -> None:
    """Submit a task; it is admitted by `droid-scheduler run`."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                data_dir=data_dir,
                name=name,
                prompt=prompt,
                project_id=project_id,
                agent_id=agent_id,
                priority=priority,
                auto_level=auto_level,
                model=model,
                enabled_tools=enabled_tools,
                disabled_tools=disabled_tools,
            ),
        ),
    )


@tasks.command("list")
@_DATA_DIR_OPTION
@click.option("--status", type=click.Choice([status.value for status in TaskStatus]), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def tasks_list(data_dir: Path | None, status: str | None, limit: int) -> None:
    """List pending tasks followed by history, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(data_dir=data_dir, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@_DATA_DIR_OPTION
@click.argument("task_id")
def tasks_inspect(data_dir: Path | None, task_id: str) -> None:
    """Show task details."""

    _run(lambda: CONTROLLER.inspect_task(RefCommand(data_dir=data_dir, ref_id=task_id)))


@tasks.command("output")
@_DATA_DIR_OPTION
@click.option("--events/--text", default=False, show_default=True, help="Raw events or text.")
@click.argument("task_id")
def tasks_output(data_dir: Path | None, events: bool, task_id: str) -> None:
    """Print the persisted output log of a task."""

    _run(
        lambda: CONTROLLER.task_output(
            TaskOutputCommand(data_dir=data_dir, task_id=task_id, events=events),
        ),
    )


@tasks.command("cancel")
@_DATA_DIR_OPTION
@click.argument("task_id")
def tasks_cancel(data_dir: Path | None, task_id: str) -> None:
    """Cancel a pending or running task."""

    _run(lambda: CONTROLLER.cancel_task(RefCommand(data_dir=data_dir, ref_id=task_id)))


@tasks.command("retry")
@_DATA_DIR_OPTION
@click.argument("task_id")
def tasks_retry(data_dir: Path | None, task_id: str) -> None:
    """Resubmit a failed task as a new task."""

    _run(lambda: CONTROLLER.retry_task(RefCommand(data_dir=data_dir, ref_id=task_id)))


@tasks.command("priority")
@_DATA_DIR_OPTION
@click.argument("task_id")
@click.argument("priority", type=int)
def tasks_priority(data_dir: Path | None, task_id: str, priority: int) -> None:
    """Change the priority of a waiting task (clamped to 1..10)."""

    _run(
        lambda: CONTROLLER.set_priority(
            TaskPriorityCommand(data_dir=data_dir, task_id=task_id, priority=priority),
        ),
    )


@droid_scheduler.group()
def config() -> None:
    """Scheduling policy commands."""


@config.command("show")
@_DATA_DIR_OPTION
def config_show(data_dir: Path | None) -> None:
    """Print the persisted scheduler config."""

    _run(lambda: CONTROLLER.show_config(StatusCommand(data_dir=data_dir)))


@config.command("set")
@_DATA_DIR_OPTION
@click.argument("assignments", nargs=-1, required=True)
def config_set(data_dir: Path | None, assignments: tuple[str, ...]) -> None:
    """Update config values given as `key=value` pairs."""

    _run(
        lambda: CONTROLLER.set_config(
            ConfigSetCommand(data_dir=data_dir, assignments=assignments),
        ),
    )


@droid_scheduler.command("status")
@_DATA_DIR_OPTION
def status(data_dir: Path | None) -> None:
    """Show running, pending, completed and failed counts."""

    _run(lambda: CONTROLLER.status(StatusCommand(data_dir=data_dir)))


@droid_scheduler.command("run")
@_DATA_DIR_OPTION
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Exit once no task is pending or running.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.05),
    default=1.0,
    show_default=True,
    help="Seconds between admission passes.",
)
@click.option(
    "--show-output/--hide-output",
    default=True,
    show_default=True,
    help="Echo task-output events.",
)
def run(data_dir: Path | None, until_idle: bool, poll_interval: float, show_output: bool) -> None:
    """Run the scheduler in the foreground, echoing events as JSON lines."""

    _run(
        lambda: CONTROLLER.run(
            RunCommand(
                data_dir=data_dir,
                until_idle=until_idle,
                poll_interval_seconds=poll_interval,
                include_output=show_output,
                writer=click.echo,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SchedulerCommandError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    droid_scheduler()
