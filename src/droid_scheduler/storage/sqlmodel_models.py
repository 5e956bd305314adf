"""SQLModel ORM tables for scheduler state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

PENDING_COLLECTION = "pending"
HISTORY_COLLECTION = "history"
CONFIG_ROW_ID = 1


class SchedulerTaskRow(SQLModel, table=True):
    __tablename__ = "scheduler_tasks"  # type: ignore[bad-override]

    collection: str = Field(primary_key=True)
    task_id: str = Field(primary_key=True)
    position: int = Field(index=True)
    name: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    project_id: str = Field(index=True)
    agent_id: str = Field(index=True)
    status: str = Field(index=True)
    priority: int
    auto_level: str
    model: str | None = None
    enabled_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    disabled_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    session_id: str | None = None
    pid: int | None = None
    output_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    input_tokens: int | None = None
    output_tokens: int | None = None
    retry_count: int = 0
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class AgentRunStateRow(SQLModel, table=True):
    __tablename__ = "agent_run_states"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    position: int = Field(index=True)
    name: str
    path: str = ""
    scope: str = "global"
    project_path: str | None = None
    status: str = "idle"
    current_task_id: str | None = None
    queued_task_ids_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    completed_count: int = 0
    failed_count: int = 0


class SchedulerConfigRow(SQLModel, table=True):
    __tablename__ = "scheduler_config"  # type: ignore[bad-override]

    config_id: int = Field(default=CONFIG_ROW_ID, primary_key=True)
    max_parallel_tasks: int
    max_tasks_per_agent: int
    default_auto_level: str
    default_model: str
    task_timeout_seconds: float
    watchdog_interval_seconds: float
    retry_on_failure: bool
    max_retries: int
    retry_delay_seconds: float


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    position: int = Field(index=True)
    name: str
    path: str
    description: str | None = None
    main_agent_id: str | None = None
    default_model: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentDefinitionRow(SQLModel, table=True):
    __tablename__ = "agent_definitions"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    position: int = Field(index=True)
    name: str
    project_id: str = Field(index=True)
    role: str = "sub"
    source: str = "created"
    system_prompt: str = Field(default="", sa_column=Column(Text, nullable=False))
    description: str | None = None
    model: str | None = None
    auto_level: str | None = None
    enabled_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    disabled_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    sub_agent_ids_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    source_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowRow(SQLModel, table=True):
    __tablename__ = "workflows"  # type: ignore[bad-override]

    workflow_id: str = Field(primary_key=True)
    position: int = Field(index=True)
    name: str
    project_id: str = Field(index=True)
    main_agent_id: str
    description: str | None = None
    steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    auto_dispatch: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
