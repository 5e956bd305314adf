"""Subprocess supervision for agent executable runs.

Each agent starts in its own session, so termination signals reach any helper
processes it started. Pipes are polled with ``select``, which ties this module
to POSIX.
"""

from __future__ import annotations

import logging
import os
import select
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from droid_scheduler.orchestrator.models import AgentDefinition, AgentSource, Task
from droid_scheduler.orchestrator.protocol import (
    ErrorEvent,
    LineBuffer,
    StreamEvent,
    decode_line,
)

logger = logging.getLogger(__name__)

DEFAULT_AGENT_EXECUTABLE = "droid"
DEFAULT_KILL_GRACE_SECONDS = 5.0
_READ_CHUNK_BYTES = 64 * 1024
_READ_POLL_SECONDS = 0.1

OutputCallback = Callable[[str, StreamEvent], None]
ExitCallback = Callable[[str, int | None, str | None], None]


@dataclass(slots=True)
class SpawnResult:
    """Outcome of a spawn request."""

    ok: bool
    pid: int | None = None
    error: str | None = None


@dataclass(slots=True)
class _RunningProcess:
    task_id: str
    process: subprocess.Popen[bytes]
    started_monotonic: float
    readers: list[threading.Thread] = field(default_factory=list)
    kill_timer: threading.Timer | None = None
    exited: threading.Event = field(default_factory=threading.Event)


def compose_prompt(task: Task, agent: AgentDefinition | None) -> str:
    """Prepend a created agent's system prompt to the task prompt."""

    if agent is None or agent.source != AgentSource.CREATED or not agent.system_prompt.strip():
        return task.prompt
    return (
        "=== SYSTEM PROMPT ===\n"
        f"{agent.system_prompt.strip()}\n"
        "=== END SYSTEM PROMPT ===\n"
        "\n"
        "=== TASK ===\n"
        f"{task.prompt}"
    )


def build_run_args(
    *,
    executable: str | list[str],
    task: Task,
    project_path: str,
    default_model: str,
    agent: AgentDefinition | None = None,
) -> list[str]:
    """Build the argv for one agent run; the prompt is always the last argument."""

    head = [executable] if isinstance(executable, str) else list(executable)
    args = [
        *head,
        "exec",
        "--output-format",
        "stream-json",
        "--auto",
        task.auto_level.value,
        "--cwd",
        project_path,
        "--model",
        task.model or default_model,
    ]
    if agent is not None and agent.source == AgentSource.IMPORTED and agent.source_path:
        args.extend(["--droid", Path(agent.source_path).stem])
    if task.enabled_tools:
        args.extend(["--enabled-tools", ",".join(task.enabled_tools)])
    if task.disabled_tools:
        args.extend(["--disabled-tools", ",".join(task.disabled_tools)])
    args.append(compose_prompt(task, agent))
    return args


class ProcessSupervisor:
    """Owns one OS process per running task and reports its output and exit."""

    def __init__(
        self,
        *,
        executable: str | list[str] = DEFAULT_AGENT_EXECUTABLE,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        env: dict[str, str] | None = None,
    ) -> None:
        self.executable = executable
        self.kill_grace_seconds = kill_grace_seconds
        self.env = env
        self._processes: dict[str, _RunningProcess] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._on_output: OutputCallback | None = None
        self._on_exit: ExitCallback | None = None

    def set_callbacks(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        self._on_output = on_output
        self._on_exit = on_exit

    def spawn(
        self,
        task: Task,
        project_path: str,
        default_model: str,
        agent: AgentDefinition | None = None,
    ) -> SpawnResult:
        """Start the agent executable for ``task``; never duplicates a tracked task."""

        with self._lock:
            if task.task_id in self._processes:
                logger.warning("Task %s already has a running process", task.task_id)
                return SpawnResult(ok=False, error="Task already running")

            run_args = build_run_args(
                executable=self.executable,
                task=task,
                project_path=project_path,
                default_model=default_model,
                agent=agent,
            )
            env = dict(self.env) if self.env is not None else os.environ.copy()
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=project_path,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as error:
                logger.error("Failed to spawn process for task %s: %s", task.task_id, error)
                return SpawnResult(ok=False, error=str(error))

            running = _RunningProcess(
                task_id=task.task_id,
                process=process,
                started_monotonic=time.monotonic(),
            )
            self._processes[task.task_id] = running

        running.readers = [
            threading.Thread(
                target=self._pump_stdout,
                args=(running, process.stdout),
                daemon=True,
                name=f"agent-stdout-{task.task_id[:8]}",
            ),
            threading.Thread(
                target=self._pump_stderr,
                args=(running, process.stderr),
                daemon=True,
                name=f"agent-stderr-{task.task_id[:8]}",
            ),
        ]
        for reader in running.readers:
            reader.start()
        threading.Thread(
            target=self._wait_for_exit,
            args=(running,),
            daemon=True,
            name=f"agent-exit-{task.task_id[:8]}",
        ).start()
        logger.info("Spawned agent process pid=%s for task %s", process.pid, task.task_id)
        return SpawnResult(ok=True, pid=process.pid)

    def kill(self, task_id: str) -> bool:
        """SIGTERM the agent's process group, escalating to SIGKILL after the grace period."""

        with self._lock:
            running = self._processes.get(task_id)
        if running is None:
            return False
        if running.kill_timer is not None:
            return True

        try:
            _signal_group(running.process, signal.SIGTERM)
        except OSError as error:
            logger.error("Failed to terminate task %s: %s", task_id, error)
            return False

        timer = threading.Timer(self.kill_grace_seconds, self._force_kill, args=(running,))
        timer.daemon = True
        running.kill_timer = timer
        timer.start()
        return True

    def kill_all(self) -> None:
        with self._lock:
            task_ids = list(self._processes)
        for task_id in task_ids:
            self.kill(task_id)

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._processes

    def running_count(self) -> int:
        with self._lock:
            return len(self._processes)

    def running_task_ids(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def get_pid(self, task_id: str) -> int | None:
        with self._lock:
            running = self._processes.get(task_id)
            return running.process.pid if running is not None else None

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no process is tracked; returns False on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._processes, timeout=timeout)

    def _force_kill(self, running: _RunningProcess) -> None:
        with self._lock:
            still_tracked = self._processes.get(running.task_id) is running
        if not still_tracked or running.process.poll() is not None:
            return
        logger.warning(
            "Task %s did not exit within %.1fs, sending SIGKILL",
            running.task_id,
            self.kill_grace_seconds,
        )
        try:
            _signal_group(running.process, signal.SIGKILL)
        except OSError as error:
            logger.error("Failed to kill task %s: %s", running.task_id, error)

    def _pump_stdout(self, running: _RunningProcess, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        buffer = LineBuffer()
        with stream:
            for chunk in _read_chunks(running, stream):
                for line in buffer.feed(chunk):
                    self._emit(running.task_id, decode_line(line))
        for line in buffer.flush():
            self._emit(running.task_id, decode_line(line))

    def _pump_stderr(self, running: _RunningProcess, stream: IO[bytes] | None) -> None:
        if stream is None:
            return
        with stream:
            for chunk in _read_chunks(running, stream):
                text = chunk.decode("utf-8", errors="replace").strip()
                if text:
                    self._emit(running.task_id, ErrorEvent(error=text))

    def _wait_for_exit(self, running: _RunningProcess) -> None:
        returncode = running.process.wait()
        running.exited.set()
        for reader in running.readers:
            reader.join()
        if running.kill_timer is not None:
            running.kill_timer.cancel()

        code, signal_name = _split_returncode(returncode)
        with self._idle:
            if self._processes.get(running.task_id) is running:
                del self._processes[running.task_id]
            self._idle.notify_all()
        logger.info(
            "Agent process for task %s exited code=%s signal=%s after %.1fs",
            running.task_id,
            code,
            signal_name,
            time.monotonic() - running.started_monotonic,
        )
        if self._on_exit is None:
            return
        try:
            self._on_exit(running.task_id, code, signal_name)
        except Exception:
            logger.exception("Exit callback failed for task %s", running.task_id)

    def _emit(self, task_id: str, event: StreamEvent) -> None:
        if self._on_output is None:
            return
        try:
            self._on_output(task_id, event)
        except Exception:
            logger.exception("Output callback failed for task %s", task_id)


def _read_chunks(running: _RunningProcess, stream: IO[bytes]) -> Iterator[bytes]:
    """Yield pipe chunks until EOF, or until the pipe runs dry once the agent has exited.

    A background child of the agent inherits the pipe and can hold it open
    long after the agent itself is gone, so EOF alone is not an end marker.
    """

    fd = stream.fileno()
    while True:
        exited = running.exited.is_set()
        ready, _, _ = select.select([fd], [], [], 0 if exited else _READ_POLL_SECONDS)
        if not ready:
            if exited:
                return
            continue
        chunk = os.read(fd, _READ_CHUNK_BYTES)
        if not chunk:
            return
        yield chunk


def _signal_group(process: subprocess.Popen[bytes], signum: signal.Signals) -> None:
    """Signal the process group the agent leads; a group that is already gone is fine."""

    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        logger.debug("Process group %s already exited", process.pid)


def _split_returncode(returncode: int) -> tuple[int | None, str | None]:
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)
