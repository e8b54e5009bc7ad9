"""Dependency installation step run before each start.

The installer is an opaque external command (``npm install --omit=dev``
by default) executed inside the extracted release directory.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from shipyard.core.exceptions import DependencyInstallError

logger = logging.getLogger(__name__)

# Characters of installer output kept in error messages
OUTPUT_PREVIEW_CHARS = 2000


@dataclass(frozen=True)
class InstallResult:
    """Outcome of a successful installation.

    Attributes:
        command: Command that ran.
        output: Combined stdout/stderr.
        skipped: True if no install command is configured.

    """

    command: tuple[str, ...]
    output: str = ""
    skipped: bool = False


class DependencyInstaller:
    """Runs the configured install command with a timeout.

    Attributes:
        command: Command and arguments; empty disables the step.
        timeout: Seconds before the command is killed.

    """

    def __init__(self, command: list[str], timeout: float) -> None:
        """Initialize installer.

        Args:
            command: Command and arguments.
            timeout: Seconds before the command is killed.

        """
        self.command = tuple(command)
        self.timeout = timeout

    async def install(self, working_dir: Path, env: dict[str, str] | None = None) -> InstallResult:
        """Install dependencies in a release directory.

        Args:
            working_dir: Extracted release directory.
            env: Optional environment for the command (inherits when None).

        Returns:
            InstallResult.

        Raises:
            DependencyInstallError: On non-zero exit, spawn failure, or timeout.

        """
        if not self.command:
            logger.debug("Dependency install disabled, skipping for %s", working_dir)
            return InstallResult(command=(), skipped=True)

        logger.info("Running %s in %s", " ".join(self.command), working_dir)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=working_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise DependencyInstallError(f"Failed to run {self.command[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.error("Dependency install timed out after %.0fs in %s", self.timeout, working_dir)
            raise DependencyInstallError(
                f"Dependency install timed out after {self.timeout:.0f}s",
                timed_out=True,
            ) from None

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if output:
            logger.debug("Install output for %s:\n%s", working_dir, output)

        if process.returncode != 0:
            raise DependencyInstallError(
                f"Dependency install failed with exit code {process.returncode}: "
                f"{output[-OUTPUT_PREVIEW_CHARS:]}",
                output=output,
            )

        return InstallResult(command=self.command, output=output)
