"""Domain models for services, releases and runtime state.

Service and Release are immutable values: every engine mutation builds a
new Service with ``dataclasses.replace`` and swaps it into the registry
only after the metadata file has been written.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class RuntimeState(StrEnum):
    """Cached process state of a service.

    Transitions:
        STOPPED → RUNNING (start succeeded)
        RUNNING → STOPPED (stop, or supervisor reports no process)
        RUNNING → ERRORED (process crashed)
        ERRORED → RUNNING (start/restart)
    """

    STOPPED = "stopped"
    RUNNING = "running"
    ERRORED = "errored"


def new_release_id() -> str:
    """Generate a globally unique release identifier."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Release:
    """One uploaded bundle.

    Attributes:
        id: Unique release identifier, never reused.
        filename: Bundle filename inside the service's releases directory.
        created_at: ISO-8601 creation timestamp (UTC).
        metadata: Best-effort manifest fields; empty when unparseable.

    """

    id: str
    filename: str
    created_at: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        release_id: str,
        filename: str,
        metadata: dict[str, Any] | None = None,
    ) -> "Release":
        """Build a release for a freshly stored bundle."""
        return cls(
            id=release_id,
            filename=filename,
            created_at=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the persisted/wire field names."""
        return {
            "id": self.id,
            "filename": self.filename,
            "createdAt": self.created_at,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class Service:
    """A named deployable unit.

    Attributes:
        name: Unique lowercase-alnum-hyphen identifier.
        env: Environment passed to the process on start.
        releases: Releases in insertion order.
        active_release_id: Release used on next start, or None.

    """

    name: str
    env: dict[str, str] = field(default_factory=dict)
    releases: tuple[Release, ...] = ()
    active_release_id: str | None = None

    def find_release(self, release_id: str) -> Release | None:
        """Return release by id, or None."""
        for release in self.releases:
            if release.id == release_id:
                return release
        return None

    @property
    def active_release(self) -> Release | None:
        """The active release object, or None."""
        if self.active_release_id is None:
            return None
        return self.find_release(self.active_release_id)

    def with_release(self, release: Release) -> "Service":
        """Append a release and make it active."""
        return replace(
            self,
            releases=(*self.releases, release),
            active_release_id=release.id,
        )

    def with_active(self, release_id: str) -> "Service":
        """Point the active release at an existing release."""
        return replace(self, active_release_id=release_id)

    def without_release(self, release_id: str) -> "Service":
        """Remove a release.

        If it was active, the last remaining release (most recently added
        in list order) becomes active, or None when the list is empty.
        """
        remaining = tuple(r for r in self.releases if r.id != release_id)
        active = self.active_release_id
        if active == release_id:
            active = remaining[-1].id if remaining else None
        return replace(self, releases=remaining, active_release_id=active)

    def with_env(self, env: dict[str, str]) -> "Service":
        """Replace the environment mapping entirely."""
        return replace(self, env=dict(env))


@dataclass
class RuntimeStatus:
    """Transient process status cached in the registry.

    Attributes:
        state: Last known state.
        snapshot: Raw supervisor description from the last query.

    """

    state: RuntimeState = RuntimeState.STOPPED
    snapshot: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Status payload for API responses and ``status`` events."""
        payload: dict[str, Any] = {"status": self.state.value}
        if self.snapshot is not None:
            payload["supervisorSnapshot"] = self.snapshot
        return payload
