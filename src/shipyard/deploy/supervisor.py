"""Process supervisor adapter.

ProcessSupervisor is the narrow capability interface the deployment
engine drives: start/stop/restart/describe/remove plus per-process log
subscription. LocalProcessSupervisor implements it with plain
subprocesses on this host:

- Spawning with the service environment layered over the host env
- Watchdog task per process (crash → ERRORED)
- Async stdout/stderr readers feeding a ring buffer and log handlers
- Stop flow: SIGTERM → wait stop_timeout → SIGKILL
"""

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from subprocess import PIPE, Popen
from typing import IO, Any

from shipyard.core.exceptions import SupervisorError
from shipyard.deploy.models import RuntimeState

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_INTERVAL = 1.0  # seconds between exit checks
DEFAULT_STOP_TIMEOUT = 5.0  # seconds between SIGTERM and SIGKILL
DEFAULT_LOG_BUFFER_SIZE = 500

LogHandler = Callable[[str], Awaitable[None] | None]
ExitListener = Callable[[str, RuntimeState, int | None], Awaitable[None] | None]


@dataclass(frozen=True)
class ProcessHandle:
    """Opaque reference to a supervised process."""

    name: str
    pid: int


@dataclass(frozen=True)
class ProcessDescription:
    """Live description of a supervised process.

    Attributes:
        state: Process state mapped onto RuntimeState.
        raw: Supervisor-specific details (pid, exit code, restarts, ...).

    """

    state: RuntimeState
    raw: dict[str, Any] = field(default_factory=dict)


class ProcessSupervisor(ABC):
    """Capabilities the deployment engine needs from a process manager."""

    @abstractmethod
    async def start(
        self,
        name: str,
        entry_point: Path,
        working_dir: Path,
        env: dict[str, str],
    ) -> ProcessHandle:
        """Start a named process. Raises SupervisorError on failure."""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """Stop and forget a named process. Raises SupervisorError if unknown."""

    @abstractmethod
    async def restart(self, name: str, env: dict[str, str] | None = None) -> ProcessHandle:
        """Restart a named process, optionally with a new environment."""

    @abstractmethod
    async def describe(self, name: str) -> ProcessDescription | None:
        """Describe a process; None if the supervisor has no such process."""

    @abstractmethod
    async def remove_if_exists(self, name: str) -> None:
        """Stop and forget a process if present; never raises for unknown names."""

    @abstractmethod
    def subscribe_logs(self, name: str, handler: LogHandler) -> Callable[[], None]:
        """Register a per-line output handler; returns an unsubscribe callable."""

    @abstractmethod
    def tail_logs(self, name: str, count: int = 100) -> list[str]:
        """Most recent output lines for a process name."""

    @abstractmethod
    def clear_logs(self, name: str) -> None:
        """Discard retained output for a process name."""

    def set_exit_listener(self, listener: ExitListener | None) -> None:  # noqa: B027
        """Register a callback for processes that exit on their own.

        Supervisors without exit notification ignore it; the engine then
        relies on describe() to notice drift.
        """

    async def shutdown(self) -> None:  # noqa: B027
        """Release supervisor resources."""


@dataclass
class _ManagedProcess:
    """Book-keeping for one supervised process."""

    name: str
    command: list[str]
    working_dir: Path
    env: dict[str, str]
    entry_point: Path
    process: Popen[bytes]
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    restarts: int = 0
    state: RuntimeState = RuntimeState.RUNNING
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async callback, logging its failures."""
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Callback %r failed", callback)


class LocalProcessSupervisor(ProcessSupervisor):
    """Supervises processes spawned directly on this host.

    Attributes:
        runtime_command: Interpreter prefix (e.g. ["node"]).
        watchdog_interval: Seconds between exit checks.
        stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
        log_buffer_size: Lines of output retained per process name.

    """

    def __init__(
        self,
        runtime_command: list[str],
        watchdog_interval: float = DEFAULT_WATCHDOG_INTERVAL,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        log_buffer_size: int = DEFAULT_LOG_BUFFER_SIZE,
    ) -> None:
        """Initialize local supervisor.

        Args:
            runtime_command: Interpreter prefix used to launch entry points.
            watchdog_interval: Seconds between exit checks.
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
            log_buffer_size: Lines of output retained per process name.

        """
        self.runtime_command = list(runtime_command)
        self.watchdog_interval = watchdog_interval
        self.stop_timeout = stop_timeout
        self.log_buffer_size = log_buffer_size

        self._processes: dict[str, _ManagedProcess] = {}
        self._logs: dict[str, deque[str]] = {}
        self._log_handlers: dict[str, set[LogHandler]] = {}
        self._exit_listener: ExitListener | None = None
        self._running = True

    def set_exit_listener(self, listener: ExitListener | None) -> None:
        """Register a callback invoked when a process exits on its own."""
        self._exit_listener = listener

    # Spawning

    def _spawn(
        self,
        managed_name: str,
        command: list[str],
        working_dir: Path,
        env: dict[str, str],
    ) -> Popen[bytes]:
        """Popen a process with the service env layered over the host env."""
        process_env = {**os.environ, **env}
        try:
            process = Popen(
                command,
                cwd=working_dir,
                env=process_env,
                stdout=PIPE,
                stderr=PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.exception("Failed to spawn %s", managed_name)
            raise SupervisorError(f"Failed to spawn {managed_name}: {e}") from e

        if process.poll() is not None:
            raise SupervisorError(
                f"Process {managed_name} exited immediately with code {process.returncode}"
            )
        return process

    async def start(
        self,
        name: str,
        entry_point: Path,
        working_dir: Path,
        env: dict[str, str],
    ) -> ProcessHandle:
        """Start a named process.

        Raises:
            SupervisorError: If a process with that name is already running
                or the spawn fails.

        """
        existing = self._processes.get(name)
        if existing is not None and existing.process.poll() is None:
            raise SupervisorError(f"Process {name} is already running (PID {existing.process.pid})")
        if existing is not None:
            self._forget(name)

        if not entry_point.is_file():
            raise SupervisorError(f"Entry point not found: {entry_point}")

        command = [*self.runtime_command, str(entry_point)]
        logger.info("Starting %s: %s (cwd %s)", name, " ".join(command), working_dir)

        process = self._spawn(name, command, working_dir, env)
        managed = _ManagedProcess(
            name=name,
            command=command,
            working_dir=working_dir,
            env=dict(env),
            entry_point=entry_point,
            process=process,
        )
        self._processes[name] = managed
        self._start_tasks(managed)
        return ProcessHandle(name=name, pid=process.pid)

    def _start_tasks(self, managed: _ManagedProcess) -> None:
        """Start watchdog and output readers for a process."""
        process = managed.process
        managed.tasks = [
            asyncio.create_task(self._watchdog(managed, process)),
        ]
        if process.stdout is not None:
            managed.tasks.append(asyncio.create_task(self._read_stream(managed.name, process.stdout, "out")))
        if process.stderr is not None:
            managed.tasks.append(asyncio.create_task(self._read_stream(managed.name, process.stderr, "err")))

    async def _watchdog(self, managed: _ManagedProcess, process: Popen[bytes]) -> None:
        """Detect a process exiting without a stop request."""
        while self._running and managed.process is process:
            if process.poll() is not None:
                exit_code = process.returncode
                if exit_code != 0:
                    managed.state = RuntimeState.ERRORED
                    logger.error("Process %s exited with code %d", managed.name, exit_code)
                else:
                    managed.state = RuntimeState.STOPPED
                    logger.info("Process %s exited cleanly", managed.name)
                if self._exit_listener is not None:
                    await _invoke(self._exit_listener, managed.name, managed.state, exit_code)
                return
            await asyncio.sleep(self.watchdog_interval)

    async def _read_stream(self, name: str, stream: IO[bytes], tag: str) -> None:
        """Forward output lines to the ring buffer and log handlers."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                line: bytes = await loop.run_in_executor(None, stream.readline)
            except (OSError, ValueError):
                break
            if not line:
                break
            decoded = line.decode("utf-8", errors="replace").rstrip()
            self._buffer(name).append(f"[{tag}] {decoded}")
            for handler in list(self._log_handlers.get(name, ())):
                await _invoke(handler, decoded)

    # Stopping

    async def _terminate(self, managed: _ManagedProcess) -> None:
        """SIGTERM, wait, then SIGKILL."""
        process = managed.process
        if process.poll() is not None:
            return

        logger.info("Stopping %s (PID %d)", managed.name, process.pid)
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except OSError:
            logger.warning("Failed to send SIGTERM to %s (process may have exited)", managed.name)

        waited = 0.0
        while waited < self.stop_timeout:
            if process.poll() is not None:
                logger.info("Process %s terminated via SIGTERM", managed.name)
                return
            await asyncio.sleep(0.1)
            waited += 0.1

        if process.poll() is None:
            logger.warning("Sending SIGKILL to %s (PID %d)", managed.name, process.pid)
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except OSError:
                logger.warning("Failed to send SIGKILL to %s", managed.name)
            await asyncio.to_thread(process.wait, 2)

    def _cancel_tasks(self, managed: _ManagedProcess) -> None:
        for task in managed.tasks:
            if not task.done():
                task.cancel()
        managed.tasks = []

    def _forget(self, name: str) -> None:
        managed = self._processes.pop(name, None)
        if managed is not None:
            self._cancel_tasks(managed)

    async def stop(self, name: str) -> None:
        """Stop a process and remove it from supervision.

        Raises:
            SupervisorError: If no process with that name is supervised.

        """
        managed = self._processes.get(name)
        if managed is None:
            raise SupervisorError(f"Process not found: {name}")

        # Detach the watchdog first so a requested stop is not reported as a crash
        self._cancel_tasks(managed)
        try:
            await self._terminate(managed)
        finally:
            self._processes.pop(name, None)

    async def restart(self, name: str, env: dict[str, str] | None = None) -> ProcessHandle:
        """Restart a process with its stored launch spec.

        Args:
            name: Process name.
            env: Replacement environment; the previous one is reused when None.

        Raises:
            SupervisorError: If the process is unknown or fails to respawn.

        """
        managed = self._processes.get(name)
        if managed is None:
            raise SupervisorError(f"Process not found: {name}")

        self._cancel_tasks(managed)
        await self._terminate(managed)

        if env is not None:
            managed.env = dict(env)

        try:
            process = self._spawn(name, managed.command, managed.working_dir, managed.env)
        except SupervisorError:
            managed.state = RuntimeState.ERRORED
            raise

        managed.process = process
        managed.restarts += 1
        managed.started_at = datetime.now(UTC)
        managed.state = RuntimeState.RUNNING
        self._start_tasks(managed)
        logger.info("Restarted %s (PID %d, restarts=%d)", name, process.pid, managed.restarts)
        return ProcessHandle(name=name, pid=process.pid)

    async def remove_if_exists(self, name: str) -> None:
        """Stop and forget a process if it is supervised."""
        if name not in self._processes:
            return
        try:
            await self.stop(name)
        except SupervisorError:
            logger.exception("Failed to remove existing process %s", name)
            self._forget(name)

    async def describe(self, name: str) -> ProcessDescription | None:
        """Describe a supervised process, or None if unknown."""
        managed = self._processes.get(name)
        if managed is None:
            return None

        process = managed.process
        exit_code = process.poll()
        state = managed.state
        if exit_code is None:
            state = RuntimeState.RUNNING
        elif state == RuntimeState.RUNNING:
            state = RuntimeState.ERRORED if exit_code != 0 else RuntimeState.STOPPED

        return ProcessDescription(
            state=state,
            raw={
                "name": name,
                "pid": process.pid,
                "status": state.value,
                "exit_code": exit_code,
                "restarts": managed.restarts,
                "started_at": managed.started_at.isoformat(),
                "entry_point": str(managed.entry_point),
                "cwd": str(managed.working_dir),
            },
        )

    # Logs

    def _buffer(self, name: str) -> deque[str]:
        buffer = self._logs.get(name)
        if buffer is None:
            buffer = deque(maxlen=self.log_buffer_size)
            self._logs[name] = buffer
        return buffer

    def subscribe_logs(self, name: str, handler: LogHandler) -> Callable[[], None]:
        """Register a handler called with each output line of ``name``."""
        self._log_handlers.setdefault(name, set()).add(handler)

        def unsubscribe() -> None:
            handlers = self._log_handlers.get(name)
            if handlers is not None:
                handlers.discard(handler)
                if not handlers:
                    del self._log_handlers[name]

        return unsubscribe

    def tail_logs(self, name: str, count: int = 100) -> list[str]:
        """Most recent output lines, oldest first."""
        buffer = self._logs.get(name)
        if not buffer or count <= 0:
            return []
        return list(buffer)[-count:]

    def clear_logs(self, name: str) -> None:
        """Discard retained output."""
        buffer = self._logs.get(name)
        if buffer is not None:
            buffer.clear()

    async def shutdown(self) -> None:
        """Stop every supervised process and cancel background tasks."""
        self._running = False
        for name in list(self._processes):
            managed = self._processes[name]
            self._cancel_tasks(managed)
            try:
                await self._terminate(managed)
            except Exception:
                logger.exception("Failed to stop %s during shutdown", name)
        self._processes.clear()
        self._log_handlers.clear()
        logger.info("Process supervisor shutdown complete")
