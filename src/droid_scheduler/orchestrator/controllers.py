"""Controllers for scheduler CLI commands."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from droid_scheduler.config import Settings
from droid_scheduler.orchestrator.catalogs import StoreAgentCatalog, StoreProjectCatalog
from droid_scheduler.orchestrator.models import (
    AgentRole,
    AutoLevel,
    SchedulerConfig,
    Task,
    TaskCreate,
    TaskStatus,
)
from droid_scheduler.orchestrator.notifications import (
    EchoNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
)
from droid_scheduler.orchestrator.scheduler import TaskScheduler
from droid_scheduler.orchestrator.store import StateStore
from droid_scheduler.orchestrator.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class SchedulerCommandError(RuntimeError):
    """Command could not be applied; the message is shown to the operator."""


@dataclass(slots=True)
class ProjectAddCommand:
    data_dir: Path | None
    name: str
    path: Path
    description: str | None = None
    default_model: str | None = None


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for creating an agent with its own system prompt."""

    data_dir: Path | None
    project_id: str
    name: str
    system_prompt: str
    role: str = AgentRole.SUB.value
    description: str | None = None
    model: str | None = None
    auto_level: str | None = None


@dataclass(slots=True)
class AgentImportCommand:
    data_dir: Path | None
    project_id: str
    path: Path


@dataclass(slots=True)
class AgentListCommand:
    data_dir: Path | None
    project_id: str | None = None


@dataclass(slots=True)
class RefCommand:
    """CLI input for commands addressing one project, agent or task by id."""

    data_dir: Path | None
    ref_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task submission."""

    data_dir: Path | None
    name: str
    prompt: str
    project_id: str
    agent_id: str
    priority: int | None = None
    auto_level: str | None = None
    model: str | None = None
    enabled_tools: tuple[str, ...] = ()
    disabled_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskListCommand:
    data_dir: Path | None
    status: str | None = None
    limit: int = 50


@dataclass(slots=True)
class TaskOutputCommand:
    data_dir: Path | None
    task_id: str
    events: bool = False


@dataclass(slots=True)
class TaskPriorityCommand:
    data_dir: Path | None
    task_id: str
    priority: int


@dataclass(slots=True)
class ConfigSetCommand:
    """CLI input for config updates given as ``key=value`` pairs."""

    data_dir: Path | None
    assignments: tuple[str, ...]


@dataclass(slots=True)
class StatusCommand:
    data_dir: Path | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for the foreground scheduler loop."""

    data_dir: Path | None
    until_idle: bool = False
    poll_interval_seconds: float = 1.0
    include_output: bool = True
    writer: Callable[[str], None] | None = field(default=None, repr=False)


class SchedulerCliController:
    """Coordinates project, agent, task and scheduler CLI operations."""

    # -- projects --------------------------------------------------------------

    def add_project(self, command: ProjectAddCommand) -> list[str]:
        with _store(_settings(command.data_dir)) as store:
            project = StoreProjectCatalog(store).add_project(
                name=command.name,
                path=command.path,
                description=command.description,
                default_model=command.default_model,
            )
        if project is None:
            raise SchedulerCommandError("Failed to save project.")
        return [f"Project added: project_id={project.project_id} name={project.name}"]

    def list_projects(self, command: StatusCommand) -> list[str]:
        with _store(_settings(command.data_dir)) as store:
            projects = StoreProjectCatalog(store).list_projects()
        if not projects:
            return ["No projects."]
        return [
            f"{project.project_id} name={project.name} path={project.path} "
            f"model={project.default_model or '-'}"
            for project in projects
        ]

    def remove_project(self, command: RefCommand) -> list[str]:
        with _store(_settings(command.data_dir)) as store:
            removed = StoreProjectCatalog(store).remove_project(command.ref_id)
        if not removed:
            raise SchedulerCommandError(f"Project not found: {command.ref_id}")
        return [f"Project removed: {command.ref_id}"]

    # -- agents ----------------------------------------------------------------

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        with _store(_settings(command.data_dir)) as store:
            _require_project(store, command.project_id)
            agent = StoreAgentCatalog(store).create_agent(
                name=command.name,
                project_id=command.project_id,
                system_prompt=command.system_prompt,
                role=AgentRole(command.role),
                description=command.description,
                model=command.model,
                auto_level=AutoLevel(command.auto_level) if command.auto_level else None,
            )
        if agent is None:
            raise SchedulerCommandError("Failed to save agent.")
        return [f"Agent added: agent_id={agent.agent_id} name={agent.name}"]

    def import_agent(self, command: AgentImportCommand) -> list[str]:
        if not command.path.is_file():
            raise SchedulerCommandError(f"Agent file not found: {command.path}")
        with _store(_settings(command.data_dir)) as store:
            _require_project(store, command.project_id)
            agent = StoreAgentCatalog(store).import_agent_file(
                project_id=command.project_id,
                path=command.path,
            )
        if agent is None:
            raise SchedulerCommandError("Failed to save agent.")
        return [f"Agent imported: agent_id={agent.agent_id} name={agent.name}"]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        with _store(_settings(command.data_dir)) as store:
            agents = StoreAgentCatalog(store).list_agents(command.project_id)
        if not agents:
            return ["No agents."]
        return [
            f"{agent.agent_id} name={agent.name} role={agent.role.value} "
            f"source={agent.source.value} project={agent.project_id}"
            for agent in agents
        ]

    def agent_states(self, command: StatusCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            states = scheduler.get_agent_states()
        if not states:
            return ["No agent activity yet."]
        return [
            f"{state.agent_id} status={state.status.value} "
            f"current={state.current_task_id or '-'} queued={len(state.queued_task_ids)} "
            f"completed={state.completed_count} failed={state.failed_count}"
            for state in states
        ]

    def agent_queue(self, command: RefCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            tasks = scheduler.get_agent_queue(command.ref_id)
        if not tasks:
            return [f"Queue is empty for agent {command.ref_id}."]
        return [_task_line(task) for task in tasks]

    def stop_agent(self, command: RefCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            stopped = scheduler.stop_agent(command.ref_id)
        if not stopped:
            raise SchedulerCommandError(f"Agent has no running task: {command.ref_id}")
        return [f"Agent stopped: {command.ref_id}"]

    # -- tasks -----------------------------------------------------------------

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            task = scheduler.create_task(
                TaskCreate(
                    name=command.name,
                    prompt=command.prompt,
                    project_id=command.project_id,
                    agent_id=command.agent_id,
                    priority=command.priority,
                    auto_level=AutoLevel(command.auto_level) if command.auto_level else None,
                    model=command.model,
                    enabled_tools=list(command.enabled_tools),
                    disabled_tools=list(command.disabled_tools),
                ),
            )
        if task is None:
            raise SchedulerCommandError("Failed to save task.")
        return [
            f"Task created: task_id={task.task_id} status={task.status.value} "
            f"priority={task.priority}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _scheduler(_settings(command.data_dir)) as scheduler:
            listing = scheduler.list_tasks()
        tasks = [*listing.pending, *reversed(listing.history)]
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        if not tasks:
            return ["No tasks."]
        return [_task_line(task) for task in tasks[: command.limit]]

    def inspect_task(self, command: RefCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            task = scheduler.get_task(command.ref_id)
        if task is None:
            raise SchedulerCommandError(f"Task not found: {command.ref_id}")
        usage = (
            f"input={task.usage.input_tokens} output={task.usage.output_tokens}"
            if task.usage is not None
            else "-"
        )
        return [
            f"Task: {task.task_id}",
            f"Name: {task.name}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Project: {task.project_id}",
            f"Agent: {task.agent_id}",
            f"Auto level: {task.auto_level.value}",
            f"Model: {task.model or '-'}",
            f"Session: {task.session_id or '-'}",
            f"Retries: {task.retry_count}",
            f"Usage: {usage}",
            f"Error: {task.error or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
        ]

    def task_output(self, command: TaskOutputCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            if command.events:
                return [
                    json.dumps(event, ensure_ascii=False)
                    for event in scheduler.get_task_events(command.task_id)
                ]
            return scheduler.get_task_output(command.task_id)

    def cancel_task(self, command: RefCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            cancelled = scheduler.cancel_task(command.ref_id)
        if not cancelled:
            raise SchedulerCommandError(f"Task is not pending or running: {command.ref_id}")
        return [f"Task cancelled: {command.ref_id}"]

    def retry_task(self, command: RefCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            task = scheduler.retry_task(command.ref_id)
        if task is None:
            raise SchedulerCommandError(f"Task is not a failed task: {command.ref_id}")
        return [f"Task resubmitted: task_id={task.task_id} from={command.ref_id}"]

    def set_priority(self, command: TaskPriorityCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            task = scheduler.update_task_priority(command.task_id, command.priority)
        if task is None:
            raise SchedulerCommandError(f"Task is not waiting: {command.task_id}")
        return [f"Task priority updated: task_id={task.task_id} priority={task.priority}"]

    # -- scheduler -------------------------------------------------------------

    def show_config(self, command: StatusCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            config = scheduler.get_config()
        return [f"{key}={_format_value(value)}" for key, value in asdict(config).items()]

    def set_config(self, command: ConfigSetCommand) -> list[str]:
        changes = dict(_parse_assignment(item) for item in command.assignments)
        if not changes:
            raise SchedulerCommandError("Nothing to update.")
        with _scheduler(_settings(command.data_dir)) as scheduler:
            config = scheduler.update_config(**changes)
        if config is None:
            raise SchedulerCommandError("Failed to save config.")
        return [f"{key}={_format_value(getattr(config, key))}" for key in sorted(changes)]

    def status(self, command: StatusCommand) -> list[str]:
        with _scheduler(_settings(command.data_dir)) as scheduler:
            status = scheduler.get_status()
        return [
            f"Scheduler: running={status.running} pending={status.pending} "
            f"completed={status.completed} failed={status.failed}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        """Run admission in the foreground until interrupted or idle."""

        settings = _settings(command.data_dir)
        sink: NotificationSink = (
            EchoNotificationSink(command.writer, include_output=command.include_output)
            if command.writer is not None
            else LoggingNotificationSink()
        )
        interrupted = False
        with _scheduler(settings, paused=False, start_watchdog=True, sink=sink) as scheduler:
            recovered = scheduler.recover_orphaned_tasks()
            scheduler.schedule_next()
            try:
                while not (command.until_idle and _is_idle(scheduler)):
                    time.sleep(command.poll_interval_seconds)
                    # picks up tasks submitted by other processes
                    scheduler.schedule_next()
            except KeyboardInterrupt:
                interrupted = True
                logger.info("Interrupted, shutting down scheduler")
            status = scheduler.get_status()

        return [
            f"Scheduler stopped: interrupted={'yes' if interrupted else 'no'} "
            f"recovered={recovered} running={status.running} pending={status.pending} "
            f"completed={status.completed} failed={status.failed}",
        ]


def _settings(data_dir: Path | None) -> Settings:
    settings = Settings.from_env(data_dir=data_dir)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[StateStore]:
    store = StateStore(
        settings.db_path,
        settings.outputs_dir,
        history_limit=settings.history_limit,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        if not store.init_schema():
            raise SchedulerCommandError(f"Failed to initialize scheduler store: {settings.db_path}")
        yield store
    finally:
        store.close()


@contextmanager
def _scheduler(
    settings: Settings,
    *,
    paused: bool = True,
    start_watchdog: bool = False,
    sink: NotificationSink | None = None,
) -> Iterator[TaskScheduler]:
    with _store(settings) as store:
        scheduler = TaskScheduler(
            store=store,
            supervisor=ProcessSupervisor(
                executable=list(settings.agent_executable),
                kill_grace_seconds=settings.kill_grace_seconds,
            ),
            projects=StoreProjectCatalog(store),
            agents=StoreAgentCatalog(store),
            sink=sink or LoggingNotificationSink(),
            paused=paused,
            start_watchdog=start_watchdog,
        )
        try:
            yield scheduler
        finally:
            scheduler.shutdown()
            scheduler.supervisor.wait_idle(timeout=settings.kill_grace_seconds + 1.0)


def _require_project(store: StateStore, project_id: str) -> None:
    if StoreProjectCatalog(store).get_project(project_id) is None:
        raise SchedulerCommandError(f"Project not found: {project_id}")


def _is_idle(scheduler: TaskScheduler) -> bool:
    status = scheduler.get_status()
    return status.running == 0 and status.pending == 0 and scheduler.supervisor.running_count() == 0


def _task_line(task: Task) -> str:
    return (
        f"{task.task_id} status={task.status.value} priority={task.priority} "
        f"agent={task.agent_id} name={task.name}"
    )


def _format_value(value: object) -> str:
    if isinstance(value, AutoLevel):
        return value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_assignment(raw: str) -> tuple[str, object]:
    key, separator, value = raw.partition("=")
    key = key.strip().replace("-", "_")
    if not separator or not key:
        raise SchedulerCommandError(f"Expected key=value, got {raw!r}")
    defaults = SchedulerConfig()
    if key not in {item.name for item in fields(SchedulerConfig)}:
        raise SchedulerCommandError(f"Unknown config key: {key}")
    default = getattr(defaults, key)
    value = value.strip()
    try:
        if isinstance(default, bool):
            normalized = value.lower()
            if normalized not in _TRUE_VALUES | _FALSE_VALUES:
                raise ValueError(f"expected a boolean, got {value!r}")
            return key, normalized in _TRUE_VALUES
        if isinstance(default, AutoLevel):
            return key, AutoLevel(value)
        if isinstance(default, int):
            return key, int(value)
        if isinstance(default, float):
            return key, float(value)
    except ValueError as error:
        raise SchedulerCommandError(f"Invalid value for {key}: {error}") from error
    return key, value
