"""Admission control and task lifecycle for agent runs.

The scheduler is driven from discrete trigger points (task creation, process
exit, resume, watchdog tick, retry-delay expiry). Every trigger reads full
snapshots from the store, mutates them in memory and writes them back while
holding one re-entrant lock, so this object is the single writer of
scheduler state within a process.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import fields, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from droid_scheduler.orchestrator.catalogs import AgentCatalog, ProjectCatalog
from droid_scheduler.orchestrator.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    AgentRunState,
    AgentScope,
    AgentStatus,
    AutoLevel,
    SchedulerConfig,
    SchedulerStatus,
    Task,
    TaskCreate,
    TaskListing,
    TaskStatus,
    TaskUsage,
    task_to_dict,
)
from droid_scheduler.orchestrator.notifications import (
    AGENT_STATUS,
    PAUSED,
    TASK_CREATED,
    TASK_OUTPUT,
    TASK_STATUS,
    NotificationSink,
    NullNotificationSink,
)
from droid_scheduler.orchestrator.protocol import (
    AssistantEvent,
    ErrorEvent,
    InitEvent,
    OtherEvent,
    RawTextEvent,
    ResultEvent,
    StreamEvent,
)
from droid_scheduler.orchestrator.store import StateStore
from droid_scheduler.orchestrator.supervisor import ProcessSupervisor
from droid_scheduler.orchestrator.watchdog import Watchdog
from droid_scheduler.storage.common import utc_now

logger = logging.getLogger(__name__)

_CONFIG_FIELDS = frozenset(item.name for item in fields(SchedulerConfig))


class ConfigValidationError(ValueError):
    """Rejected scheduler config update."""


def validate_config(config: SchedulerConfig) -> None:
    """Raise ``ConfigValidationError`` for non-positive limits or inconsistent ceilings."""

    for name in ("max_parallel_tasks", "max_tasks_per_agent"):
        if getattr(config, name) < 1:
            raise ConfigValidationError(f"{name} must be >= 1.")
    for name in ("task_timeout_seconds", "watchdog_interval_seconds"):
        if getattr(config, name) <= 0:
            raise ConfigValidationError(f"{name} must be > 0.")
    if config.max_retries < 0:
        raise ConfigValidationError("max_retries must be >= 0.")
    if config.retry_delay_seconds < 0:
        raise ConfigValidationError("retry_delay_seconds must be >= 0.")
    if config.max_tasks_per_agent > config.max_parallel_tasks:
        raise ConfigValidationError(
            "max_tasks_per_agent must not exceed max_parallel_tasks "
            f"({config.max_tasks_per_agent} > {config.max_parallel_tasks}).",
        )
    if not config.default_model.strip():
        raise ConfigValidationError("default_model must not be empty.")


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


class TaskScheduler:
    """Queues, admits, supervises and retries agent runs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        supervisor: ProcessSupervisor,
        projects: ProjectCatalog,
        agents: AgentCatalog,
        sink: NotificationSink | None = None,
        paused: bool = False,
        start_watchdog: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.projects = projects
        self.agents = agents
        self.sink = sink or NullNotificationSink()
        self._clock = clock
        self._lock = threading.RLock()
        self._paused = paused
        self._closed = False
        self._retry_timers: set[threading.Timer] = set()
        self._retry_not_before: dict[str, float] = {}

        self.supervisor.set_callbacks(self._handle_process_output, self._handle_process_exit)
        self.watchdog = Watchdog(
            interval_seconds=self.store.get_config().watchdog_interval_seconds,
            on_tick=self.check_timeouts,
        )
        if start_watchdog:
            self.watchdog.start()

    @property
    def paused(self) -> bool:
        return self._paused

    # -- tasks -----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> Task | None:
        """Persist a new pending task and trigger admission unless paused."""

        with self._lock, self.store.transaction():
            config = self.store.get_config()
            project = self.projects.get_project(payload.project_id)
            project_model = project.default_model if project is not None else None
            tasks = self.store.get_pending_tasks()
            task = Task(
                task_id=str(uuid4()),
                name=payload.name,
                prompt=payload.prompt,
                project_id=payload.project_id,
                agent_id=payload.agent_id,
                status=TaskStatus.PENDING,
                priority=clamp_priority(
                    payload.priority if payload.priority is not None else DEFAULT_PRIORITY,
                ),
                auto_level=AutoLevel(payload.auto_level or config.default_auto_level),
                model=payload.model or project_model or config.default_model,
                enabled_tools=list(payload.enabled_tools),
                disabled_tools=list(payload.disabled_tools),
                created_at=self._clock(),
            )
            tasks.append(task)
            if not self.store.save_pending_tasks(tasks):
                logger.error("Task %s was not persisted; creation aborted", task.task_id)
                return None

            self._update_agent_queue(task.agent_id, task.task_id, add=True)
            self._emit(TASK_CREATED, task_to_dict(task))
            logger.info(
                "Task %s created for agent %s (priority=%d)",
                task.task_id,
                task.agent_id,
                task.priority,
            )
            if not self._paused:
                self.schedule_next()
            return task

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending or running task; False if it is no longer active."""

        with self._lock, self.store.transaction():
            pending = self.store.get_pending_tasks()
            task = _find_task(pending, task_id)
            if task is None:
                return False

            if task.status == TaskStatus.RUNNING:
                self.supervisor.kill(task_id)
            task.status = TaskStatus.CANCELLED
            task.completed_at = self._clock()
            self._retry_not_before.pop(task_id, None)
            self._move_to_history(task, pending)
            self._release_agent(task.agent_id, task_id, AgentStatus.IDLE)
            self._emit(TASK_STATUS, {"task_id": task_id, "status": task.status.value})
            logger.info("Task %s cancelled", task_id)
            return True

    def retry_task(self, task_id: str) -> Task | None:
        """Submit a fresh copy of a failed task from history."""

        with self._lock, self.store.transaction():
            old = _find_task(self.store.get_history_tasks(), task_id)
            if old is None or old.status != TaskStatus.FAILED:
                return None
            return self.create_task(
                TaskCreate(
                    name=old.name,
                    prompt=old.prompt,
                    project_id=old.project_id,
                    agent_id=old.agent_id,
                    auto_level=old.auto_level,
                    model=old.model,
                    priority=old.priority,
                ),
            )

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = _find_task(self.store.get_pending_tasks(), task_id)
            if task is not None:
                return task
            return _find_task(self.store.get_history_tasks(), task_id)

    def list_tasks(self) -> TaskListing:
        with self._lock:
            return TaskListing(
                pending=self.store.get_pending_tasks(),
                history=self.store.get_history_tasks(),
            )

    def get_task_output(self, task_id: str) -> list[str]:
        return self.store.get_task_output(task_id)

    def get_task_events(self, task_id: str) -> list[dict[str, Any]]:
        return self.store.get_task_events(task_id)

    def update_task_priority(self, task_id: str, priority: int) -> Task | None:
        """Change priority of a waiting task; running and finished tasks are refused."""

        with self._lock, self.store.transaction():
            tasks = self.store.get_pending_tasks()
            task = _find_task(tasks, task_id)
            if task is None or task.status == TaskStatus.RUNNING:
                return None
            task.priority = clamp_priority(priority)
            if not self.store.save_pending_tasks(tasks):
                return None
            return task

    # -- agents ----------------------------------------------------------------

    def get_agent_states(self) -> list[AgentRunState]:
        return self.store.get_agent_states()

    def get_agent_state(self, agent_id: str) -> AgentRunState | None:
        return next(
            (state for state in self.store.get_agent_states() if state.agent_id == agent_id),
            None,
        )

    def get_agent_queue(self, agent_id: str) -> list[Task]:
        with self._lock:
            state = self.get_agent_state(agent_id)
            if state is None:
                return []
            by_id = {task.task_id: task for task in self.store.get_pending_tasks()}
            return [by_id[task_id] for task_id in state.queued_task_ids if task_id in by_id]

    def stop_agent(self, agent_id: str) -> bool:
        """Cancel the task currently occupying ``agent_id``."""

        with self._lock, self.store.transaction():
            state = self.get_agent_state(agent_id)
            if state is None or state.current_task_id is None:
                return False
            return self.cancel_task(state.current_task_id)

    # -- control ---------------------------------------------------------------

    def get_config(self) -> SchedulerConfig:
        return self.store.get_config()

    def update_config(self, **changes: Any) -> SchedulerConfig | None:
        """Merge, validate and persist config changes; None if the save failed."""

        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ConfigValidationError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        if "default_auto_level" in changes:
            try:
                changes["default_auto_level"] = AutoLevel(changes["default_auto_level"])
            except ValueError as error:
                raise ConfigValidationError(str(error)) from error

        with self._lock, self.store.transaction():
            config = replace(self.store.get_config(), **changes)
            validate_config(config)
            if not self.store.save_config(config):
                return None
            logger.info("Scheduler config updated: %s", ", ".join(sorted(changes)))
            return config

    def get_status(self) -> SchedulerStatus:
        with self._lock:
            pending = self.store.get_pending_tasks()
            history = self.store.get_history_tasks()
            return SchedulerStatus(
                running=sum(1 for task in pending if task.status == TaskStatus.RUNNING),
                pending=sum(1 for task in pending if task.status.is_waiting),
                completed=sum(1 for task in history if task.status == TaskStatus.COMPLETED),
                failed=sum(1 for task in history if task.status == TaskStatus.FAILED),
                paused=self._paused,
            )

    def pause(self) -> bool:
        with self._lock:
            self._paused = True
            self._emit(PAUSED, True)
            logger.info("Scheduler paused")
            return True

    def resume(self) -> bool:
        with self._lock:
            self._paused = False
            self._emit(PAUSED, False)
            logger.info("Scheduler resumed")
            self.schedule_next()
            return True

    def recover_orphaned_tasks(self) -> int:
        """Return tasks persisted as running without a live process to the pending pool."""

        with self._lock, self.store.transaction():
            tasks = self.store.get_pending_tasks()
            orphans = [
                task
                for task in tasks
                if task.status == TaskStatus.RUNNING and not self.supervisor.is_running(task.task_id)
            ]
            if not orphans:
                return 0
            for task in orphans:
                logger.warning("Recovered orphaned running task %s", task.task_id)
                task.status = TaskStatus.PENDING
                task.pid = None
            if not self.store.save_pending_tasks(tasks):
                return 0
            for task in orphans:
                self._set_agent_status(task.agent_id, AgentStatus.IDLE, None)
            return len(orphans)

    def shutdown(self) -> None:
        """Stop the watchdog and retry timers and kill all agent processes."""

        with self._lock:
            self._closed = True
            timers = list(self._retry_timers)
            self._retry_timers.clear()
        self.watchdog.stop()
        for timer in timers:
            timer.cancel()
        self.supervisor.kill_all()
        logger.info("Scheduler shut down")

    # -- admission -------------------------------------------------------------

    def schedule_next(self) -> int:
        """Run one admission cycle; returns how many tasks were started."""

        with self._lock, self.store.transaction():
            if self._paused or self._closed:
                return 0
            config = self.store.get_config()
            max_parallel = max(1, config.max_parallel_tasks)
            max_per_agent = max(1, min(config.max_tasks_per_agent, max_parallel))
            tasks = self.store.get_pending_tasks()
            if self._running_total(tasks) >= max_parallel:
                return 0

            now = time.monotonic()
            candidates = sorted(
                (
                    task
                    for task in tasks
                    if task.status.is_waiting
                    and self._retry_not_before.get(task.task_id, 0.0) <= now
                ),
                key=lambda task: (-task.priority, task.created_at, task.task_id),
            )
            started = 0
            for task in candidates:
                if self._running_total(tasks) >= max_parallel:
                    break
                running_for_agent = sum(
                    1
                    for other in tasks
                    if other.agent_id == task.agent_id and other.status == TaskStatus.RUNNING
                )
                if running_for_agent >= max_per_agent:
                    continue
                if self._start_task(task, tasks, config):
                    started += 1
            return started

    def _running_total(self, pending: list[Task]) -> int:
        """Occupied slots: live processes, or tasks still running in the store.

        A process leaves the supervisor before its exit handler has moved the
        task out of ``running``; the slot stays taken until that happens.
        """

        in_store = sum(1 for task in pending if task.status == TaskStatus.RUNNING)
        return max(self.supervisor.running_count(), in_store)

    def _start_task(self, task: Task, pending: list[Task], config: SchedulerConfig) -> bool:
        project = self.projects.get_project(task.project_id)
        if project is None:
            self._fail_task(task, pending, "Project not found")
            return False

        agent = self.agents.get_agent(task.agent_id)
        task.status = TaskStatus.RUNNING
        task.started_at = self._clock()
        task.pid = None
        self._retry_not_before.pop(task.task_id, None)

        result = self.supervisor.spawn(
            task,
            project.path,
            config.default_model,
            agent,
        )
        if not result.ok:
            error = "Failed to start process"
            if result.error:
                error = f"{error}: {result.error}"
            self._fail_task(task, pending, error)
            return False

        task.pid = result.pid
        if not self.store.save_pending_tasks(pending):
            logger.error("Running state of task %s was not persisted", task.task_id)
        self._set_agent_status(task.agent_id, AgentStatus.RUNNING, task.task_id)
        self._emit(TASK_STATUS, {"task_id": task.task_id, "status": task.status.value})
        return True

    def _fail_task(self, task: Task, pending: list[Task], error: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = error
        task.completed_at = self._clock()
        self._move_to_history(task, pending)
        self._release_agent(task.agent_id, task.task_id, AgentStatus.ERROR)
        self._emit(
            TASK_STATUS,
            {"task_id": task.task_id, "status": task.status.value, "error": error},
        )
        logger.warning("Task %s failed: %s", task.task_id, error)

    # -- process callbacks -----------------------------------------------------

    def _handle_process_output(self, task_id: str, event: StreamEvent) -> None:
        with self._lock, self.store.transaction():
            pending = self.store.get_pending_tasks()
            task = _find_task(pending, task_id)
            if task is None and _find_task(self.store.get_history_tasks(), task_id) is None:
                return

            payload = event.to_payload()
            self.store.append_task_event(task_id, payload)
            changed = False
            if isinstance(event, InitEvent):
                if event.session_id and task is not None:
                    task.session_id = event.session_id
                    changed = True
            elif isinstance(event, AssistantEvent | RawTextEvent):
                if event.text:
                    if task is not None:
                        task.output.append(event.text)
                        changed = True
                    self.store.append_task_output(task_id, event.text)
            elif isinstance(event, ResultEvent):
                if event.has_usage and task is not None:
                    task.usage = TaskUsage(
                        input_tokens=event.input_tokens or 0,
                        output_tokens=event.output_tokens or 0,
                    )
                    changed = True
            elif isinstance(event, ErrorEvent):
                logger.debug("Task %s stderr: %s", task_id, event.error)
            elif isinstance(event, OtherEvent):
                logger.debug("Task %s emitted %s event", task_id, event.event_type)

            if changed:
                self.store.save_pending_tasks(pending)
            self._emit(TASK_OUTPUT, {"task_id": task_id, "event": payload})

    def _handle_process_exit(self, task_id: str, code: int | None, signal_name: str | None) -> None:
        with self._lock, self.store.transaction():
            if self._closed:
                logger.info("Task %s process ended during shutdown", task_id)
                return
            pending = self.store.get_pending_tasks()
            task = _find_task(pending, task_id)
            if task is None or task.status != TaskStatus.RUNNING:
                logger.debug("Ignoring exit of task %s that is no longer running", task_id)
                self.schedule_next()
                return

            config = self.store.get_config()
            task.pid = None
            if code == 0:
                task.status = TaskStatus.COMPLETED
                task.completed_at = self._clock()
                self._increment_agent_count(task.agent_id, completed=True)
            elif config.retry_on_failure and task.retry_count < config.max_retries:
                task.retry_count += 1
                task.status = TaskStatus.PENDING
                if not self.store.save_pending_tasks(pending):
                    logger.error("Retry state of task %s was not persisted", task_id)
                self._emit(
                    TASK_STATUS,
                    {
                        "task_id": task_id,
                        "status": task.status.value,
                        "retry_count": task.retry_count,
                    },
                )
                logger.warning(
                    "Task %s exited with code %s, retry %d/%d in %.1fs",
                    task_id,
                    code,
                    task.retry_count,
                    config.max_retries,
                    config.retry_delay_seconds,
                )
                self._schedule_retry(task_id, config.retry_delay_seconds)
                self.schedule_next()
                return
            else:
                task.status = TaskStatus.FAILED
                task.error = f"Process exited with code {code}"
                if signal_name is not None:
                    task.error = f"{task.error} (signal {signal_name})"
                task.completed_at = self._clock()
                self._increment_agent_count(task.agent_id, completed=False)

            self._move_to_history(task, pending)
            self._release_agent(task.agent_id, task_id, AgentStatus.IDLE)
            status_payload: dict[str, Any] = {"task_id": task_id, "status": task.status.value}
            if task.error is not None and task.status == TaskStatus.FAILED:
                status_payload["error"] = task.error
            self._emit(TASK_STATUS, status_payload)
            logger.info("Task %s finished with status %s", task_id, task.status.value)
            self.schedule_next()

    def _schedule_retry(self, task_id: str, delay_seconds: float) -> None:
        self._retry_not_before[task_id] = time.monotonic() + delay_seconds
        timer = threading.Timer(delay_seconds, self._retry_delay_elapsed)
        timer.daemon = True
        timer.args = (timer,)
        self._retry_timers.add(timer)
        timer.start()

    def _retry_delay_elapsed(self, timer: threading.Timer) -> None:
        with self._lock:
            self._retry_timers.discard(timer)
            now = time.monotonic()
            for task_id, not_before in list(self._retry_not_before.items()):
                if not_before <= now:
                    del self._retry_not_before[task_id]
            self.schedule_next()

    # -- watchdog --------------------------------------------------------------

    def check_timeouts(self, now: datetime | None = None) -> list[str]:
        """Cancel running tasks older than the configured timeout.

        Also terminates tracked processes whose task is no longer running in
        the store, which happens when another process cancelled it.
        """

        with self._lock, self.store.transaction():
            if self._closed:
                return []
            config = self.store.get_config()
            current = now or self._clock()
            tasks = self.store.get_pending_tasks()
            expired = [
                task
                for task in tasks
                if task.status == TaskStatus.RUNNING
                and task.started_at is not None
                and (current - task.started_at).total_seconds() > config.task_timeout_seconds
            ]
            for task in expired:
                logger.warning(
                    "Task %s timed out after %.0fs",
                    task.task_id,
                    config.task_timeout_seconds,
                )
                self.cancel_task(task.task_id)

            running_ids = {
                task.task_id
                for task in self.store.get_pending_tasks()
                if task.status == TaskStatus.RUNNING
            }
            for task_id in self.supervisor.running_task_ids():
                if task_id not in running_ids:
                    logger.info("Terminating process of task %s cancelled elsewhere", task_id)
                    self.supervisor.kill(task_id)
            return [task.task_id for task in expired]

    # -- state helpers ---------------------------------------------------------

    def _move_to_history(self, task: Task, pending: list[Task]) -> None:
        pending[:] = [other for other in pending if other.task_id != task.task_id]
        if not self.store.save_pending_tasks(pending):
            logger.error("Failed to remove task %s from pending tasks", task.task_id)
        history = self.store.get_history_tasks()
        history.append(task)
        if not self.store.save_history_tasks(history):
            logger.error("Failed to append task %s to history", task.task_id)

    def _agent_states_with(self, agent_id: str) -> tuple[list[AgentRunState], AgentRunState]:
        states = self.store.get_agent_states()
        for state in states:
            if state.agent_id == agent_id:
                return states, state
        definition = self.agents.get_agent(agent_id)
        if definition is not None:
            state = AgentRunState(
                agent_id=agent_id,
                name=definition.name,
                path=definition.source_path or "",
                scope=AgentScope.PROJECT,
            )
        else:
            _, _, suffix = agent_id.partition(":")
            state = AgentRunState(agent_id=agent_id, name=suffix or agent_id)
        states.append(state)
        return states, state

    def _update_agent_queue(self, agent_id: str, task_id: str, *, add: bool) -> None:
        states, state = self._agent_states_with(agent_id)
        if add:
            if task_id not in state.queued_task_ids:
                state.queued_task_ids.append(task_id)
        else:
            state.queued_task_ids = [queued for queued in state.queued_task_ids if queued != task_id]
        self.store.save_agent_states(states)

    def _set_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        current_task_id: str | None,
    ) -> None:
        states, state = self._agent_states_with(agent_id)
        state.status = status
        state.current_task_id = current_task_id
        self.store.save_agent_states(states)
        self._emit(AGENT_STATUS, {"agent_id": agent_id, "status": status.value})

    def _release_agent(self, agent_id: str, task_id: str, status: AgentStatus) -> None:
        """Drop a finished task from its agent's queue and free the agent if it held it."""

        states, state = self._agent_states_with(agent_id)
        state.queued_task_ids = [queued for queued in state.queued_task_ids if queued != task_id]
        status_changed = False
        if state.current_task_id == task_id or state.current_task_id is None:
            state.current_task_id = None
            status_changed = state.status != status
            state.status = status
        self.store.save_agent_states(states)
        if status_changed:
            self._emit(AGENT_STATUS, {"agent_id": agent_id, "status": status.value})

    def _increment_agent_count(self, agent_id: str, *, completed: bool) -> None:
        states, state = self._agent_states_with(agent_id)
        if completed:
            state.completed_count += 1
        else:
            state.failed_count += 1
        self.store.save_agent_states(states)

    def _emit(self, event: str, payload: Any) -> None:
        try:
            self.sink.emit(event, payload)
        except Exception:
            logger.exception("Notification sink failed for %s", event)


def _find_task(tasks: list[Task], task_id: str) -> Task | None:
    return next((task for task in tasks if task.task_id == task_id), None)
