"""Tests for LocalProcessSupervisor with real child processes.

The runtime command is the current Python interpreter so tests do not
need Node.js installed.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from shipyard.core.exceptions import SupervisorError
from shipyard.deploy.models import RuntimeState
from shipyard.deploy.supervisor import LocalProcessSupervisor


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
async def supervisor():
    """Supervisor running Python scripts, shut down after the test."""
    sup = LocalProcessSupervisor(
        runtime_command=[sys.executable, "-u"],
        watchdog_interval=0.05,
        stop_timeout=2.0,
        log_buffer_size=50,
    )
    yield sup
    await sup.shutdown()


def _script(tmp_path: Path, body: str, name: str = "app.py") -> Path:
    path = tmp_path / name
    path.write_text(body)
    return path


SLEEPER = "import os, time\nprint('started', os.environ.get('GREETING', ''))\ntime.sleep(60)\n"


class TestLifecycle:
    """Tests for start/describe/stop/restart."""

    async def test_describe_unknown_is_none(self, supervisor):
        """Describe before start reports no process."""
        assert await supervisor.describe("api") is None

    async def test_start_and_describe(self, supervisor, tmp_path):
        """Started process is described as running."""
        entry = _script(tmp_path, SLEEPER)

        handle = await supervisor.start("api", entry, tmp_path, {})
        description = await supervisor.describe("api")

        assert handle.pid > 0
        assert description.state == RuntimeState.RUNNING
        assert description.raw["pid"] == handle.pid
        assert description.raw["cwd"] == str(tmp_path)

    async def test_env_passed_and_output_captured(self, supervisor, tmp_path):
        """Service env reaches the process; stdout lands in the buffer."""
        entry = _script(tmp_path, SLEEPER)

        await supervisor.start("api", entry, tmp_path, {"GREETING": "hi"})
        await _wait_for(lambda: supervisor.tail_logs("api"))

        assert supervisor.tail_logs("api") == ["[out] started hi"]

    async def test_missing_entry_point(self, supervisor, tmp_path):
        """Starting a missing file fails."""
        with pytest.raises(SupervisorError, match="Entry point not found"):
            await supervisor.start("api", tmp_path / "nope.js", tmp_path, {})

    async def test_stop(self, supervisor, tmp_path):
        """Stop terminates and forgets the process."""
        await supervisor.start("api", _script(tmp_path, SLEEPER), tmp_path, {})

        await supervisor.stop("api")

        assert await supervisor.describe("api") is None

    async def test_stop_unknown(self, supervisor):
        """Stopping an unknown name raises."""
        with pytest.raises(SupervisorError):
            await supervisor.stop("api")

    async def test_remove_if_exists_tolerates_unknown(self, supervisor):
        """Removing an unknown name is a no-op."""
        await supervisor.remove_if_exists("api")

    async def test_restart_with_new_env(self, supervisor, tmp_path):
        """Restart respawns with the replacement env."""
        await supervisor.start("api", _script(tmp_path, SLEEPER), tmp_path, {"GREETING": "one"})
        first_pid = (await supervisor.describe("api")).raw["pid"]

        await supervisor.restart("api", env={"GREETING": "two"})
        await _wait_for(lambda: "[out] started two" in supervisor.tail_logs("api"))

        description = await supervisor.describe("api")
        assert description.raw["pid"] != first_pid
        assert description.raw["restarts"] == 1


class TestExitDetection:
    """Tests for the watchdog."""

    async def test_crash_reported(self, supervisor, tmp_path):
        """Non-zero exit becomes ERRORED and notifies the listener."""
        exits: list[tuple[str, RuntimeState, int | None]] = []
        supervisor.set_exit_listener(lambda name, state, code: exits.append((name, state, code)))
        entry = _script(tmp_path, "import sys, time\ntime.sleep(0.3)\nsys.stderr.write('boom\\n')\nsys.exit(3)\n")

        await supervisor.start("api", entry, tmp_path, {})
        await _wait_for(lambda: exits)

        assert exits == [("api", RuntimeState.ERRORED, 3)]
        assert (await supervisor.describe("api")).state == RuntimeState.ERRORED
        await _wait_for(lambda: "[err] boom" in supervisor.tail_logs("api"))

    async def test_requested_stop_not_reported(self, supervisor, tmp_path):
        """A stop request is not a crash."""
        exits: list[str] = []
        supervisor.set_exit_listener(lambda name, state, code: exits.append(name))

        await supervisor.start("api", _script(tmp_path, SLEEPER), tmp_path, {})
        await supervisor.stop("api")
        await asyncio.sleep(0.2)

        assert exits == []


class TestLogs:
    """Tests for log subscription and buffer."""

    async def test_subscribe_and_unsubscribe(self, supervisor, tmp_path):
        """Handlers receive lines until unsubscribed."""
        lines: list[str] = []
        unsubscribe = supervisor.subscribe_logs("api", lines.append)
        entry = _script(tmp_path, "print('a')\nprint('b')\nimport time\ntime.sleep(60)\n")

        await supervisor.start("api", entry, tmp_path, {})
        await _wait_for(lambda: len(lines) == 2)
        unsubscribe()

        assert lines == ["a", "b"]

    async def test_clear(self, supervisor, tmp_path):
        """Cleared buffer is empty."""
        await supervisor.start("api", _script(tmp_path, SLEEPER), tmp_path, {})
        await _wait_for(lambda: supervisor.tail_logs("api"))

        supervisor.clear_logs("api")

        assert supervisor.tail_logs("api") == []

    async def test_tail_unknown(self, supervisor):
        """Unknown names have no output."""
        assert supervisor.tail_logs("ghost", 10) == []
