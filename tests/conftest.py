"""Pytest configuration and fixtures for shipyard tests."""

import io
import json
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from shipyard.core.config import ServerConfig
from shipyard.core.exceptions import SupervisorError
from shipyard.deploy.engine import DeploymentEngine
from shipyard.deploy.models import RuntimeState
from shipyard.deploy.supervisor import (
    ExitListener,
    LogHandler,
    ProcessDescription,
    ProcessHandle,
    ProcessSupervisor,
)
from shipyard.server.app import build_engine


def make_bundle(files: dict[str, str | bytes], prefix: str = "") -> bytes:
    """Build a gzip-compressed tar archive in memory.

    Args:
        files: Relative path -> content.
        prefix: Prepended to every member name (e.g. "./").

    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=f"{prefix}{name}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def node_bundle(main: str | None = "index.js", name: str = "demo-app", **extra: Any) -> bytes:
    """Bundle with a package.json and an entry file at ``main``."""
    manifest: dict[str, Any] = {"name": name, "version": "1.0.0", **extra}
    files: dict[str, str | bytes] = {}
    if main is not None:
        manifest["main"] = main
        files[main] = "console.log('hello');\n"
    files["package.json"] = json.dumps(manifest)
    return make_bundle(files)


class FakeSupervisor(ProcessSupervisor):
    """In-memory ProcessSupervisor that records every call."""

    def __init__(self) -> None:
        self.processes: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_start: Exception | None = None
        self.fail_describe: Exception | None = None
        self.logs: dict[str, list[str]] = {}
        self.handlers: dict[str, list[LogHandler]] = {}
        self.exit_listener: ExitListener | None = None
        self.shut_down = False
        self._next_pid = 1000

    async def start(
        self,
        name: str,
        entry_point: Path,
        working_dir: Path,
        env: dict[str, str],
    ) -> ProcessHandle:
        self.calls.append(("start", name))
        if self.fail_start is not None:
            raise self.fail_start
        if name in self.processes:
            raise SupervisorError(f"Process {name} is already running")
        self._next_pid += 1
        self.processes[name] = {
            "entry_point": entry_point,
            "working_dir": working_dir,
            "env": dict(env),
            "state": RuntimeState.RUNNING,
            "pid": self._next_pid,
            "restarts": 0,
        }
        return ProcessHandle(name=name, pid=self._next_pid)

    async def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        if name not in self.processes:
            raise SupervisorError(f"Process not found: {name}")
        del self.processes[name]

    async def restart(self, name: str, env: dict[str, str] | None = None) -> ProcessHandle:
        self.calls.append(("restart", name))
        process = self.processes.get(name)
        if process is None:
            raise SupervisorError(f"Process not found: {name}")
        if env is not None:
            process["env"] = dict(env)
        process["restarts"] += 1
        process["state"] = RuntimeState.RUNNING
        return ProcessHandle(name=name, pid=process["pid"])

    async def describe(self, name: str) -> ProcessDescription | None:
        self.calls.append(("describe", name))
        if self.fail_describe is not None:
            raise self.fail_describe
        process = self.processes.get(name)
        if process is None:
            return None
        return ProcessDescription(
            state=process["state"],
            raw={"name": name, "pid": process["pid"], "restarts": process["restarts"]},
        )

    async def remove_if_exists(self, name: str) -> None:
        self.calls.append(("remove_if_exists", name))
        self.processes.pop(name, None)

    def subscribe_logs(self, name: str, handler: LogHandler) -> Callable[[], None]:
        self.handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            self.handlers[name].remove(handler)

        return unsubscribe

    def tail_logs(self, name: str, count: int = 100) -> list[str]:
        return self.logs.get(name, [])[-count:]

    def clear_logs(self, name: str) -> None:
        self.logs[name] = []

    def set_exit_listener(self, listener: ExitListener | None) -> None:
        self.exit_listener = listener

    async def shutdown(self) -> None:
        self.shut_down = True

    # Test helpers

    def emit_line(self, name: str, line: str) -> None:
        """Record an output line and push it to subscribers."""
        self.logs.setdefault(name, []).append(f"[out] {line}")
        for handler in list(self.handlers.get(name, [])):
            handler(line)

    async def crash(self, name: str, exit_code: int = 1) -> None:
        """Mark a process errored and notify the exit listener."""
        self.processes[name]["state"] = RuntimeState.ERRORED
        if self.exit_listener is not None:
            await self.exit_listener(name, RuntimeState.ERRORED, exit_code)

    def count(self, method: str) -> int:
        return sum(1 for call, _ in self.calls if call == method)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Empty data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def server_config(data_dir: Path) -> ServerConfig:
    """Config with dependency install disabled and a known password."""
    return ServerConfig(
        data_dir=data_dir,
        install_command=[],
        admin_password="s3cret",
        jwt_secret="test-secret",
        heartbeat_interval_seconds=0.05,
    )


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    """In-memory supervisor."""
    return FakeSupervisor()


@pytest.fixture
def engine(server_config: ServerConfig, fake_supervisor: FakeSupervisor) -> DeploymentEngine:
    """Engine over an empty, loaded data directory."""
    deployment_engine = build_engine(server_config, fake_supervisor)
    deployment_engine.registry.load()
    return deployment_engine
