"""Domain models for the task scheduler and its persisted state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_waiting(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.QUEUED)


class AgentStatus(str, Enum):
    """Per-agent scheduling state."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class AutoLevel(str, Enum):
    """Autonomy level passed to the agent executable."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    FULL = "full"


class AgentScope(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"


class AgentRole(str, Enum):
    MAIN = "main"
    SUB = "sub"


class AgentSource(str, Enum):
    """Where an agent definition comes from."""

    CREATED = "created"
    IMPORTED = "imported"


MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


@dataclass(slots=True)
class TaskUsage:
    """Token usage reported by the agent's final result event."""

    input_tokens: int
    output_tokens: int


@dataclass(slots=True)
class Task:
    """One request to run the agent executable with a prompt against a project."""

    task_id: str
    name: str
    prompt: str
    project_id: str
    agent_id: str
    status: TaskStatus
    priority: int
    auto_level: AutoLevel
    created_at: datetime
    model: str | None = None
    enabled_tools: list[str] = field(default_factory=list)
    disabled_tools: list[str] = field(default_factory=list)
    session_id: str | None = None
    pid: int | None = None
    output: list[str] = field(default_factory=list)
    usage: TaskUsage | None = None
    retry_count: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    name: str
    prompt: str
    project_id: str
    agent_id: str
    priority: int | None = None
    auto_level: AutoLevel | None = None
    model: str | None = None
    enabled_tools: list[str] = field(default_factory=list)
    disabled_tools: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentRunState:
    """Scheduling state tracked for one agent id."""

    agent_id: str
    name: str
    path: str = ""
    scope: AgentScope = AgentScope.GLOBAL
    project_path: str | None = None
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: str | None = None
    queued_task_ids: list[str] = field(default_factory=list)
    completed_count: int = 0
    failed_count: int = 0


@dataclass(slots=True)
class SchedulerConfig:
    """Persisted scheduling policy."""

    max_parallel_tasks: int = 4
    max_tasks_per_agent: int = 1
    default_auto_level: AutoLevel = AutoLevel.MEDIUM
    default_model: str = "claude-sonnet-4-20250514"
    task_timeout_seconds: float = 30 * 60.0
    watchdog_interval_seconds: float = 5.0
    retry_on_failure: bool = True
    max_retries: int = 2
    retry_delay_seconds: float = 5.0


@dataclass(slots=True)
class SchedulerStatus:
    """Aggregate counters for status display."""

    running: int
    pending: int
    completed: int
    failed: int
    paused: bool


@dataclass(slots=True)
class TaskListing:
    pending: list[Task]
    history: list[Task]


@dataclass(slots=True)
class Project:
    """A local project directory that tasks run against."""

    project_id: str
    name: str
    path: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    main_agent_id: str | None = None
    default_model: str | None = None


@dataclass(slots=True)
class AgentDefinition:
    """Named agent configuration selectable as the executor of a task."""

    agent_id: str
    name: str
    project_id: str
    created_at: datetime
    updated_at: datetime
    role: AgentRole = AgentRole.SUB
    source: AgentSource = AgentSource.CREATED
    system_prompt: str = ""
    description: str | None = None
    model: str | None = None
    auto_level: AutoLevel | None = None
    enabled_tools: list[str] = field(default_factory=list)
    disabled_tools: list[str] = field(default_factory=list)
    sub_agent_ids: list[str] = field(default_factory=list)
    source_path: str | None = None


@dataclass(slots=True)
class WorkflowStep:
    step_id: str
    agent_id: str
    name: str
    prompt: str | None = None
    depends_on: list[str] = field(default_factory=list)
    condition: str | None = None


@dataclass(slots=True)
class Workflow:
    """Stored multi-step workflow definition."""

    workflow_id: str
    name: str
    project_id: str
    main_agent_id: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    steps: list[WorkflowStep] = field(default_factory=list)
    auto_dispatch: bool = False


def task_to_dict(task: Task) -> dict[str, object]:
    """JSON-friendly representation of a task for notifications and CLI output."""

    return {
        "id": task.task_id,
        "name": task.name,
        "prompt": task.prompt,
        "project_id": task.project_id,
        "agent_id": task.agent_id,
        "status": task.status.value,
        "priority": task.priority,
        "auto_level": task.auto_level.value,
        "model": task.model,
        "enabled_tools": list(task.enabled_tools),
        "disabled_tools": list(task.disabled_tools),
        "session_id": task.session_id,
        "pid": task.pid,
        "output": list(task.output),
        "usage": (
            {
                "input_tokens": task.usage.input_tokens,
                "output_tokens": task.usage.output_tokens,
            }
            if task.usage is not None
            else None
        ),
        "retry_count": task.retry_count,
        "error": task.error,
        "created_at": _iso(task.created_at),
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
