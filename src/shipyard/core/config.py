"""Server configuration for shipyard.

Configuration is layered:
1. Model defaults
2. ``server:`` section of an optional YAML file (e.g. shipyard.yaml)
3. ``SHIPYARD_*`` environment variables
4. Explicit overrides (CLI flags)

Example shipyard.yaml:

    server:
      data_dir: /var/lib/shipyard
      port: 3000
      install_command: ["npm", "install", "--omit=dev"]
      install_timeout_seconds: 300
"""

import logging
import os
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shipyard.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "shipyard.yaml"
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
DEFAULT_TOKEN_TTL_SECONDS = 365 * 24 * 60 * 60

# Environment variable -> config field
ENV_OVERRIDES: dict[str, str] = {
    "SHIPYARD_DATA_DIR": "data_dir",
    "SHIPYARD_HOST": "host",
    "SHIPYARD_PORT": "port",
    "SHIPYARD_ADMIN_PASSWORD": "admin_password",
    "SHIPYARD_JWT_SECRET": "jwt_secret",
}


class ServerConfig(BaseModel):
    """Runtime configuration for the deployment controller.

    Attributes:
        data_dir: Root directory holding one subdirectory per service.
        host: Bind address for the HTTP server.
        port: Bind port for the HTTP server.
        max_upload_bytes: Largest accepted bundle upload.
        install_command: Dependency installation command run inside the
            extracted release. Empty list disables the step.
        install_timeout_seconds: Upper bound for the installation step.
        extract_timeout_seconds: Upper bound for bundle extraction.
        runtime_command: Interpreter prefix used to launch the entry point.
        default_entry_point: Entry point used when the manifest has no ``main``.
        admin_password: Shared credential exchanged for API tokens.
        jwt_secret: HMAC secret for API tokens.
        token_ttl_seconds: Lifetime of issued tokens.
        prune_orphan_bundles: Delete unreferenced bundles during startup recovery.
        log_buffer_size: Lines of process output retained per service.
        observer_queue_size: Pending events retained per observer before dropping.
        heartbeat_interval_seconds: Idle interval before an SSE heartbeat.
        stop_timeout_seconds: Grace period between SIGTERM and SIGKILL.

    """

    model_config = ConfigDict(frozen=True)

    data_dir: Path = Field(default=Path("./data"))
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=1, le=65535)
    max_upload_bytes: int = Field(default=DEFAULT_MAX_UPLOAD_BYTES, gt=0)
    install_command: list[str] = Field(
        default_factory=lambda: ["npm", "install", "--omit=dev"],
    )
    install_timeout_seconds: float = Field(default=300.0, gt=0)
    extract_timeout_seconds: float = Field(default=120.0, gt=0)
    runtime_command: list[str] = Field(default_factory=lambda: ["node"])
    default_entry_point: str = "index.js"
    admin_password: str | None = None
    jwt_secret: str = "default-secret-change-me"
    token_ttl_seconds: int = Field(default=DEFAULT_TOKEN_TTL_SECONDS, gt=0)
    prune_orphan_bundles: bool = True
    log_buffer_size: int = Field(default=500, gt=0)
    observer_queue_size: int = Field(default=1000, gt=0)
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    stop_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("install_command", "runtime_command", mode="before")
    @classmethod
    def coerce_command(cls, v: Any) -> list[str]:
        """Accept a single string as a whitespace-separated command."""
        if v is None:
            return []
        if isinstance(v, str):
            return v.split()
        return [str(part) for part in v]

    @model_validator(mode="after")
    def validate_runtime_command(self) -> Self:
        """Runtime command is required to launch anything."""
        if not self.runtime_command:
            raise ValueError("runtime_command must not be empty")
        return self

    @property
    def install_enabled(self) -> bool:
        """Whether the dependency installation step runs on start."""
        return bool(self.install_command)


def _read_yaml_section(path: Path) -> dict[str, Any]:
    """Read the ``server:`` section from a YAML config file."""
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    section = data.get("server", {}) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'server' section in {path} must be a mapping")
    return section


def load_config(
    path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ServerConfig:
    """Load server configuration.

    Args:
        path: Optional YAML config file. When None, ``shipyard.yaml`` in the
            current directory is used if present.
        overrides: Explicit values that win over file and environment.

    Returns:
        Validated ServerConfig.

    Raises:
        ConfigError: If the file is unreadable or a value fails validation.

    """
    values: dict[str, Any] = {}

    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILE)
        if candidate.exists():
            path = candidate
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    if path is not None:
        values.update(_read_yaml_section(path))
        logger.debug("Loaded config file %s", path)

    for env_name, field_name in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[field_name] = env_value

    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return ServerConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
