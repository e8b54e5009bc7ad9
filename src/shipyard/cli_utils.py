"""Shared CLI helpers: exit codes, console, config loading."""

from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from shipyard.core.config import ServerConfig, load_config
from shipyard.core.exceptions import ConfigError

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2

# Shared console for output
console = Console()


def load_config_or_exit(path: Path | None, overrides: dict[str, Any] | None = None) -> ServerConfig:
    """Load configuration, exiting with EXIT_CONFIG_ERROR on failure."""
    try:
        return load_config(path, overrides)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
