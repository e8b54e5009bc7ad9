"""Per-service metadata persistence.

Each service directory holds a ``releases.json`` document:

    {
      "env": {"PORT": "8080"},
      "releases": [{"id": ..., "filename": ..., "createdAt": ..., "metadata": {...}}],
      "activeReleaseId": "..." | null
    }

Writes go to a temp file that is fsynced and renamed over the target, so
a reader sees either the previous document or the new one, never a
partial write. A successful ``save`` is the commit point for every
deployment operation.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shipyard.core.exceptions import StorageError
from shipyard.deploy.models import Release, Service

logger = logging.getLogger(__name__)

METADATA_FILE = "releases.json"
SERVICE_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


def normalize_env(env: Any) -> dict[str, str]:
    """Coerce an env mapping to string keys and string values.

    Scalars are stringified; booleans become "true"/"false"; None becomes "".

    Raises:
        ValueError: If env is not a mapping or holds nested values.

    """
    if env is None:
        return {}
    if not isinstance(env, dict):
        raise ValueError("env must be an object of string values")

    result: dict[str, str] = {}
    for key, value in env.items():
        if isinstance(value, (dict, list)):
            raise ValueError(f"env value for {key!r} must be a scalar")
        if isinstance(value, bool):
            result[str(key)] = "true" if value else "false"
        elif value is None:
            result[str(key)] = ""
        else:
            result[str(key)] = str(value)
    return result


class ReleaseRecord(BaseModel):
    """Persisted projection of a Release."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    filename: str
    created_at: str = Field(alias="createdAt")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def coerce_metadata(cls, v: Any) -> dict[str, Any]:
        """Non-object metadata is treated as absent."""
        return v if isinstance(v, dict) else {}


class ServiceMeta(BaseModel):
    """Persisted projection of a Service."""

    model_config = ConfigDict(populate_by_name=True)

    env: dict[str, str] = Field(default_factory=dict)
    releases: list[ReleaseRecord] = Field(default_factory=list)
    active_release_id: str | None = Field(default=None, alias="activeReleaseId")

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v: Any) -> dict[str, str]:
        """Accept scalar env values written by older versions."""
        return normalize_env(v)

    @classmethod
    def from_service(cls, service: Service) -> "ServiceMeta":
        """Project a Service into its persisted form."""
        return cls(
            env=dict(service.env),
            releases=[
                ReleaseRecord(
                    id=r.id,
                    filename=r.filename,
                    created_at=r.created_at,
                    metadata=dict(r.metadata),
                )
                for r in service.releases
            ],
            active_release_id=service.active_release_id,
        )

    def to_service(self, name: str) -> Service:
        """Rebuild a Service.

        An active pointer that references no listed release is dropped.
        """
        releases = tuple(
            Release(id=r.id, filename=r.filename, created_at=r.created_at, metadata=r.metadata)
            for r in self.releases
        )
        active = self.active_release_id
        if active is not None and not any(r.id == active for r in releases):
            logger.warning(
                "Service %s: active release %s is not in the release list, clearing",
                name,
                active,
            )
            active = None
        return Service(name=name, env=dict(self.env), releases=releases, active_release_id=active)

    def to_document(self) -> dict[str, Any]:
        """JSON document using the persisted field names."""
        return self.model_dump(by_alias=True)


class MetadataStore:
    """Reads and atomically writes per-service ``releases.json`` files.

    Attributes:
        data_dir: Root data directory (one subdirectory per service).

    """

    def __init__(self, data_dir: Path) -> None:
        """Initialize metadata store.

        Args:
            data_dir: Root data directory.

        """
        self.data_dir = data_dir

    def metadata_path(self, service: str) -> Path:
        """Path of a service's metadata file."""
        return self.data_dir / service / METADATA_FILE

    def ensure_data_dir(self) -> None:
        """Create the data directory if missing."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {self.data_dir}: {e}") from e
        logger.info("Using data directory %s", self.data_dir)

    def list_service_names(self) -> list[str]:
        """Names of all service directories under the data directory."""
        if not self.data_dir.is_dir():
            return []

        names: list[str] = []
        for entry in sorted(self.data_dir.iterdir()):
            if not entry.is_dir():
                continue
            if not SERVICE_NAME_PATTERN.match(entry.name):
                logger.debug("Skipping non-service directory %s", entry)
                continue
            names.append(entry.name)
        return names

    def load(self, service: str) -> ServiceMeta | None:
        """Load a service's metadata.

        Args:
            service: Service name.

        Returns:
            ServiceMeta, or None if the file does not exist.

        Raises:
            StorageError: If the file is unreadable or not a valid document.

        """
        path = self.metadata_path(service)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read metadata {path}: {e}") from e

        if not isinstance(data, dict):
            raise StorageError(f"Metadata {path} is not a JSON object")

        try:
            return ServiceMeta.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Invalid metadata in {path}: {e}") from e

    def save(self, service: str, meta: ServiceMeta) -> None:
        """Atomically replace a service's metadata file.

        Args:
            service: Service name.
            meta: Document to persist.

        Raises:
            StorageError: If any step of the write fails.

        """
        path = self.metadata_path(service)
        temp_path = path.with_name(f"{METADATA_FILE}.tmp")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(meta.to_document(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to write metadata {path}: {e}") from e

        logger.debug("Saved metadata for %s (%d releases)", service, len(meta.releases))

    def remove_stale_temp(self, service: str) -> bool:
        """Delete a leftover temp file from an interrupted save."""
        temp_path = self.metadata_path(service).with_name(f"{METADATA_FILE}.tmp")
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.exception("Failed to remove stale %s", temp_path)
                return False
            return True
        return False
