"""Durable scheduler state backed by SQLModel + SQLite and per-task log files.

Every collection is read as a full snapshot and written back as a full
replacement inside one transaction. ``StateStore.transaction`` widens that to
a whole read-modify-write cycle across processes. Failures never propagate:
reads fall back to an empty default and writes report ``False``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from droid_scheduler.orchestrator.models import (
    AgentDefinition,
    AgentRole,
    AgentRunState,
    AgentScope,
    AgentSource,
    AgentStatus,
    AutoLevel,
    Project,
    SchedulerConfig,
    Task,
    TaskStatus,
    TaskUsage,
    Workflow,
    WorkflowStep,
)
from droid_scheduler.storage.alembic_runner import upgrade_head
from droid_scheduler.storage.common import as_utc, build_sqlite_engine
from droid_scheduler.storage.sqlmodel_models import (
    CONFIG_ROW_ID,
    HISTORY_COLLECTION,
    PENDING_COLLECTION,
    AgentDefinitionRow,
    AgentRunStateRow,
    ProjectRow,
    SchedulerConfigRow,
    SchedulerTaskRow,
    WorkflowRow,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000

_STORE_ERRORS = (SQLAlchemyError, OSError, ValueError, TypeError)


class StateStore:
    """Single source of truth for tasks, agent run-state and scheduler config."""

    def __init__(
        self,
        db_path: Path,
        outputs_dir: Path,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.outputs_dir = outputs_dir
        self.history_limit = history_limit
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._local = threading.local()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> bool:
        """Run schema migrations and create the output log directory."""

        try:
            upgrade_head(self.db_path)
            self.outputs_dir.mkdir(parents=True, exist_ok=True)
        except _STORE_ERRORS:
            logger.exception("Failed to initialize scheduler store at %s", self.db_path)
            return False
        return True

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold one SQLite write lock across every read and save in the block.

        Opens ``BEGIN IMMEDIATE`` so writers in other processes wait on the busy
        timeout until the block commits, which makes a get -> mutate -> save
        cycle atomic. Nested blocks on the same thread join the outer one. If
        the lock cannot be taken the block still runs, with each call in its own
        transaction as outside a block.
        """

        if self._active_session() is not None:
            yield
            return

        session = Session(self.engine)
        try:
            session.connection().exec_driver_sql("BEGIN IMMEDIATE")
        except SQLAlchemyError:
            logger.exception("Failed to lock scheduler store at %s", self.db_path)
            session.close()
            yield
            return

        self._local.session = session
        try:
            yield
        except BaseException:
            session.rollback()
            raise
        else:
            try:
                session.commit()
            except SQLAlchemyError:
                logger.exception("Failed to commit scheduler store transaction")
                session.rollback()
        finally:
            self._local.session = None
            session.close()

    def _active_session(self) -> Session | None:
        return getattr(self._local, "session", None)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = self._active_session()
        if active is None:
            with Session(self.engine) as session:
                yield session
            return
        try:
            yield active
        finally:
            # rows are converted to dataclasses right away; the next replace
            # re-adds the same keys
            active.expunge_all()

    # -- tasks -----------------------------------------------------------------

    def get_pending_tasks(self) -> list[Task]:
        return self._read_tasks(PENDING_COLLECTION)

    def save_pending_tasks(self, tasks: Sequence[Task]) -> bool:
        return self._write_tasks(PENDING_COLLECTION, tasks)

    def get_history_tasks(self) -> list[Task]:
        return self._read_tasks(HISTORY_COLLECTION)

    def save_history_tasks(self, tasks: Sequence[Task]) -> bool:
        """Persist history, keeping only the newest ``history_limit`` records."""

        trimmed = list(tasks)[-self.history_limit :] if self.history_limit > 0 else []
        return self._write_tasks(HISTORY_COLLECTION, trimmed)

    def _read_tasks(self, collection: str) -> list[Task]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(SchedulerTaskRow)
                    .where(SchedulerTaskRow.collection == collection)
                    .order_by(col(SchedulerTaskRow.position).asc()),
                ).all()
                return [_task_from_row(row) for row in rows]
        except _STORE_ERRORS:
            logger.exception("Failed to read %s tasks", collection)
            return []

    def _write_tasks(self, collection: str, tasks: Sequence[Task]) -> bool:
        rows = [_task_to_row(task, collection, index) for index, task in enumerate(tasks)]
        return self._replace(
            SchedulerTaskRow,
            rows,
            label=f"{collection} tasks",
            where=col(SchedulerTaskRow.collection) == collection,
        )

    # -- agent run states ------------------------------------------------------

    def get_agent_states(self) -> list[AgentRunState]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(AgentRunStateRow).order_by(col(AgentRunStateRow.position).asc()),
                ).all()
                return [_agent_state_from_row(row) for row in rows]
        except _STORE_ERRORS:
            logger.exception("Failed to read agent run states")
            return []

    def save_agent_states(self, states: Sequence[AgentRunState]) -> bool:
        rows = [_agent_state_to_row(state, index) for index, state in enumerate(states)]
        return self._replace(AgentRunStateRow, rows, label="agent run states")

    # -- config ----------------------------------------------------------------

    def get_config(self) -> SchedulerConfig:
        """Load persisted config, falling back to defaults."""

        try:
            with self._session() as session:
                row = session.get(SchedulerConfigRow, CONFIG_ROW_ID)
                if row is None:
                    return SchedulerConfig()
                return SchedulerConfig(
                    max_parallel_tasks=row.max_parallel_tasks,
                    max_tasks_per_agent=row.max_tasks_per_agent,
                    default_auto_level=AutoLevel(row.default_auto_level),
                    default_model=row.default_model,
                    task_timeout_seconds=row.task_timeout_seconds,
                    watchdog_interval_seconds=row.watchdog_interval_seconds,
                    retry_on_failure=row.retry_on_failure,
                    max_retries=row.max_retries,
                    retry_delay_seconds=row.retry_delay_seconds,
                )
        except _STORE_ERRORS:
            logger.exception("Failed to read scheduler config")
            return SchedulerConfig()

    def save_config(self, config: SchedulerConfig) -> bool:
        row = SchedulerConfigRow(
            config_id=CONFIG_ROW_ID,
            max_parallel_tasks=config.max_parallel_tasks,
            max_tasks_per_agent=config.max_tasks_per_agent,
            default_auto_level=AutoLevel(config.default_auto_level).value,
            default_model=config.default_model,
            task_timeout_seconds=config.task_timeout_seconds,
            watchdog_interval_seconds=config.watchdog_interval_seconds,
            retry_on_failure=config.retry_on_failure,
            max_retries=config.max_retries,
            retry_delay_seconds=config.retry_delay_seconds,
        )
        return self._replace(SchedulerConfigRow, [row], label="scheduler config")

    # -- catalogs --------------------------------------------------------------

    def get_projects(self) -> list[Project]:
        try:
            with self._session() as session:
                rows = session.exec(select(ProjectRow).order_by(col(ProjectRow.position).asc()))
                return [
                    Project(
                        project_id=row.project_id,
                        name=row.name,
                        path=row.path,
                        description=row.description,
                        main_agent_id=row.main_agent_id,
                        default_model=row.default_model,
                        created_at=as_utc(row.created_at),
                        updated_at=as_utc(row.updated_at),
                    )
                    for row in rows.all()
                ]
        except _STORE_ERRORS:
            logger.exception("Failed to read projects")
            return []

    def save_projects(self, projects: Sequence[Project]) -> bool:
        rows = [
            ProjectRow(
                project_id=project.project_id,
                position=index,
                name=project.name,
                path=project.path,
                description=project.description,
                main_agent_id=project.main_agent_id,
                default_model=project.default_model,
                created_at=project.created_at,
                updated_at=project.updated_at,
            )
            for index, project in enumerate(projects)
        ]
        return self._replace(ProjectRow, rows, label="projects")

    def get_agent_definitions(self) -> list[AgentDefinition]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(AgentDefinitionRow).order_by(col(AgentDefinitionRow.position).asc()),
                ).all()
                return [_agent_definition_from_row(row) for row in rows]
        except _STORE_ERRORS:
            logger.exception("Failed to read agent definitions")
            return []

    def save_agent_definitions(self, definitions: Sequence[AgentDefinition]) -> bool:
        rows = [
            AgentDefinitionRow(
                agent_id=definition.agent_id,
                position=index,
                name=definition.name,
                project_id=definition.project_id,
                role=AgentRole(definition.role).value,
                source=AgentSource(definition.source).value,
                system_prompt=definition.system_prompt,
                description=definition.description,
                model=definition.model,
                auto_level=(
                    AutoLevel(definition.auto_level).value
                    if definition.auto_level is not None
                    else None
                ),
                enabled_tools_json=json.dumps(definition.enabled_tools),
                disabled_tools_json=json.dumps(definition.disabled_tools),
                sub_agent_ids_json=json.dumps(definition.sub_agent_ids),
                source_path=definition.source_path,
                created_at=definition.created_at,
                updated_at=definition.updated_at,
            )
            for index, definition in enumerate(definitions)
        ]
        return self._replace(AgentDefinitionRow, rows, label="agent definitions")

    def get_workflows(self) -> list[Workflow]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(WorkflowRow).order_by(col(WorkflowRow.position).asc()),
                ).all()
                return [
                    Workflow(
                        workflow_id=row.workflow_id,
                        name=row.name,
                        project_id=row.project_id,
                        main_agent_id=row.main_agent_id,
                        description=row.description,
                        steps=[WorkflowStep(**step) for step in json.loads(row.steps_json)],
                        auto_dispatch=row.auto_dispatch,
                        created_at=as_utc(row.created_at),
                        updated_at=as_utc(row.updated_at),
                    )
                    for row in rows
                ]
        except _STORE_ERRORS:
            logger.exception("Failed to read workflows")
            return []

    def save_workflows(self, workflows: Sequence[Workflow]) -> bool:
        rows = [
            WorkflowRow(
                workflow_id=workflow.workflow_id,
                position=index,
                name=workflow.name,
                project_id=workflow.project_id,
                main_agent_id=workflow.main_agent_id,
                description=workflow.description,
                steps_json=json.dumps(
                    [
                        {
                            "step_id": step.step_id,
                            "agent_id": step.agent_id,
                            "name": step.name,
                            "prompt": step.prompt,
                            "depends_on": step.depends_on,
                            "condition": step.condition,
                        }
                        for step in workflow.steps
                    ],
                ),
                auto_dispatch=workflow.auto_dispatch,
                created_at=workflow.created_at,
                updated_at=workflow.updated_at,
            )
            for index, workflow in enumerate(workflows)
        ]
        return self._replace(WorkflowRow, rows, label="workflows")

    # -- per-task logs ---------------------------------------------------------

    def append_task_output(self, task_id: str, line: str) -> bool:
        """Append one text line to the task's plain output log."""

        try:
            self.outputs_dir.mkdir(parents=True, exist_ok=True)
            with self._output_log_path(task_id).open("a", encoding="utf-8") as handle:
                handle.write(f"{line}\n")
        except OSError:
            logger.exception("Failed to append output for task %s", task_id)
            return False
        return True

    def get_task_output(self, task_id: str) -> list[str]:
        path = self._output_log_path(task_id)
        try:
            if not path.exists():
                return []
            return [line for line in path.read_text("utf-8").split("\n") if line]
        except OSError:
            logger.exception("Failed to read output for task %s", task_id)
            return []

    def append_task_event(self, task_id: str, payload: dict[str, Any]) -> bool:
        """Append one structured event as a JSON line to the task's event log."""

        try:
            encoded = json.dumps(payload, ensure_ascii=False, default=str)
            self.outputs_dir.mkdir(parents=True, exist_ok=True)
            with self._event_log_path(task_id).open("a", encoding="utf-8") as handle:
                handle.write(f"{encoded}\n")
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to append event for task %s", task_id)
            return False
        return True

    def get_task_events(self, task_id: str) -> list[dict[str, Any]]:
        path = self._event_log_path(task_id)
        events: list[dict[str, Any]] = []
        try:
            if not path.exists():
                return []
            for line in path.read_text("utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt event line for task %s", task_id)
        except OSError:
            logger.exception("Failed to read events for task %s", task_id)
            return []
        return events

    def _output_log_path(self, task_id: str) -> Path:
        return self.outputs_dir / f"{task_id}.log"

    def _event_log_path(self, task_id: str) -> Path:
        return self.outputs_dir / f"{task_id}.jsonl"

    # -- internals -------------------------------------------------------------

    def _replace(
        self,
        table: type[SQLModel],
        rows: Sequence[SQLModel],
        *,
        label: str,
        where: Any = None,
    ) -> bool:
        statement = delete(table)
        if where is not None:
            statement = statement.where(where)
        try:
            with self._session() as session:
                session.exec(statement)  # type: ignore[call-overload]
                session.add_all(rows)
                if session is self._active_session():
                    session.flush()
                else:
                    session.commit()
        except _STORE_ERRORS:
            logger.exception("Failed to save %s", label)
            return False
        return True


def _task_to_row(task: Task, collection: str, position: int) -> SchedulerTaskRow:
    return SchedulerTaskRow(
        collection=collection,
        task_id=task.task_id,
        position=position,
        name=task.name,
        prompt=task.prompt,
        project_id=task.project_id,
        agent_id=task.agent_id,
        status=TaskStatus(task.status).value,
        priority=task.priority,
        auto_level=AutoLevel(task.auto_level).value,
        model=task.model,
        enabled_tools_json=json.dumps(task.enabled_tools),
        disabled_tools_json=json.dumps(task.disabled_tools),
        session_id=task.session_id,
        pid=task.pid,
        output_json=json.dumps(task.output, ensure_ascii=False),
        input_tokens=task.usage.input_tokens if task.usage is not None else None,
        output_tokens=task.usage.output_tokens if task.usage is not None else None,
        retry_count=task.retry_count,
        error=task.error,
        created_at=task.created_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


def _task_from_row(row: SchedulerTaskRow) -> Task:
    usage = None
    if row.input_tokens is not None or row.output_tokens is not None:
        usage = TaskUsage(
            input_tokens=row.input_tokens or 0,
            output_tokens=row.output_tokens or 0,
        )
    return Task(
        task_id=row.task_id,
        name=row.name,
        prompt=row.prompt,
        project_id=row.project_id,
        agent_id=row.agent_id,
        status=TaskStatus(row.status),
        priority=row.priority,
        auto_level=AutoLevel(row.auto_level),
        model=row.model,
        enabled_tools=list(json.loads(row.enabled_tools_json)),
        disabled_tools=list(json.loads(row.disabled_tools_json)),
        session_id=row.session_id,
        pid=row.pid,
        output=list(json.loads(row.output_json)),
        usage=usage,
        retry_count=row.retry_count,
        error=row.error,
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
    )


def _agent_state_to_row(state: AgentRunState, position: int) -> AgentRunStateRow:
    return AgentRunStateRow(
        agent_id=state.agent_id,
        position=position,
        name=state.name,
        path=state.path,
        scope=AgentScope(state.scope).value,
        project_path=state.project_path,
        status=AgentStatus(state.status).value,
        current_task_id=state.current_task_id,
        queued_task_ids_json=json.dumps(state.queued_task_ids),
        completed_count=state.completed_count,
        failed_count=state.failed_count,
    )


def _agent_state_from_row(row: AgentRunStateRow) -> AgentRunState:
    return AgentRunState(
        agent_id=row.agent_id,
        name=row.name,
        path=row.path,
        scope=AgentScope(row.scope),
        project_path=row.project_path,
        status=AgentStatus(row.status),
        current_task_id=row.current_task_id,
        queued_task_ids=list(json.loads(row.queued_task_ids_json)),
        completed_count=row.completed_count,
        failed_count=row.failed_count,
    )


def _agent_definition_from_row(row: AgentDefinitionRow) -> AgentDefinition:
    return AgentDefinition(
        agent_id=row.agent_id,
        name=row.name,
        project_id=row.project_id,
        role=AgentRole(row.role),
        source=AgentSource(row.source),
        system_prompt=row.system_prompt,
        description=row.description,
        model=row.model,
        auto_level=AutoLevel(row.auto_level) if row.auto_level is not None else None,
        enabled_tools=list(json.loads(row.enabled_tools_json)),
        disabled_tools=list(json.loads(row.disabled_tools_json)),
        sub_agent_ids=list(json.loads(row.sub_agent_ids_json)),
        source_path=row.source_path,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )
