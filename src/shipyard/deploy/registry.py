"""Release registry: the in-memory view of every service.

Built once at startup from the metadata store and afterwards mutated only
by the DeploymentEngine through the underscore-prefixed methods. Route
handlers read from it but never write.
"""

import logging
from typing import Any

from shipyard.core.exceptions import ServiceNotFoundError, StorageError
from shipyard.deploy.metadata_store import MetadataStore, ServiceMeta
from shipyard.deploy.models import RuntimeState, RuntimeStatus, Service

logger = logging.getLogger(__name__)


class ReleaseRegistry:
    """Authoritative in-memory state of all services.

    Attributes:
        metadata_store: Store the registry was loaded from.

    """

    def __init__(self, metadata_store: MetadataStore) -> None:
        """Initialize an empty registry.

        Args:
            metadata_store: Source of persisted service metadata.

        """
        self.metadata_store = metadata_store
        self._services: dict[str, Service] = {}
        self._status: dict[str, RuntimeStatus] = {}
        self._unreadable: set[str] = set()

    def load(self) -> int:
        """Replay the metadata store into memory.

        A service whose metadata is missing or fails to parse is loaded
        with empty defaults so one bad file does not block startup. Such
        services are remembered in ``unreadable()`` because their bundles
        are still referenced by the lost metadata.

        Returns:
            Number of services loaded.

        """
        self.metadata_store.ensure_data_dir()
        self._services.clear()
        self._status.clear()
        self._unreadable.clear()

        for name in self.metadata_store.list_service_names():
            try:
                meta = self.metadata_store.load(name)
            except StorageError as e:
                logger.warning("Loading %s with empty defaults: %s", name, e)
                self._unreadable.add(name)
                meta = None
            service = (meta or ServiceMeta()).to_service(name)
            self._services[name] = service
            self._status[name] = RuntimeStatus()
            logger.debug(
                "Loaded service %s (%d releases, active=%s)",
                name,
                len(service.releases),
                service.active_release_id,
            )

        logger.info("Loaded %d services from %s", len(self._services), self.metadata_store.data_dir)
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    def names(self) -> list[str]:
        """Registered service names in registration order."""
        return list(self._services)

    def get(self, name: str) -> Service:
        """Get a service by name.

        Raises:
            ServiceNotFoundError: If not registered.

        """
        service = self._services.get(name)
        if service is None:
            raise ServiceNotFoundError(name)
        return service

    def unreadable(self) -> set[str]:
        """Services whose metadata could not be read at the last load."""
        return set(self._unreadable)

    def status(self, name: str) -> RuntimeStatus:
        """Cached runtime status (may be stale between polls).

        Raises:
            ServiceNotFoundError: If not registered.

        """
        self.get(name)
        return self._status.setdefault(name, RuntimeStatus())

    def summary(self, name: str) -> dict[str, Any]:
        """API summary of one service, including status and active release."""
        service = self.get(name)
        active = service.active_release
        return {
            "name": service.name,
            "env": dict(service.env),
            "releases": [r.to_dict() for r in service.releases],
            "activeReleaseId": service.active_release_id,
            "status": self.status(name).state.value,
            "activeRelease": active.to_dict() if active else None,
        }

    def list_summaries(self) -> list[dict[str, Any]]:
        """Summaries of all services for listings and the initial observer event."""
        return [self.summary(name) for name in self._services]

    # Engine-only mutation API

    def _store(self, service: Service) -> None:
        """Install a committed service value."""
        self._services[service.name] = service
        self._status.setdefault(service.name, RuntimeStatus())

    def _set_status(
        self,
        name: str,
        state: RuntimeState,
        snapshot: dict[str, Any] | None = None,
    ) -> RuntimeStatus:
        """Replace the cached runtime status."""
        status = RuntimeStatus(state=state, snapshot=snapshot)
        self._status[name] = status
        return status
