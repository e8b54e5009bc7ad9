"""Deployment engine: the release lifecycle.

Every mutating operation is one logical transaction:

    lock(service) → build new Service value → save metadata → swap into
    registry → unlock → (supervisor call) → publish event

The metadata save is the commit point. If it fails the registry still
holds the previous value, so callers never observe a half-applied
change. Bundles are written before metadata (an orphan bundle is
tolerated, a release pointing at a missing bundle is not) and deleted
after metadata.

Long-running start steps (extraction, dependency install, process
spawn) run outside the per-service lock; a second start for the same
service during that window is rejected with StartInProgressError.
"""

import asyncio
import itertools
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shipyard.core.exceptions import (
    DependencyInstallError,
    InvalidEnvError,
    InvalidServiceNameError,
    NoActiveReleaseError,
    ReleaseNotFoundError,
    ServiceAlreadyExistsError,
    ShipyardError,
    StartInProgressError,
    StorageError,
    SupervisorError,
)
from shipyard.deploy.bundle_store import BundleStore
from shipyard.deploy.entrypoint import EntryPoint, resolve_entry_point
from shipyard.deploy.installer import DependencyInstaller
from shipyard.deploy.manifest import MANIFEST_NAME, ManifestResult, parse_manifest
from shipyard.deploy.metadata_store import (
    SERVICE_NAME_PATTERN,
    MetadataStore,
    ServiceMeta,
    normalize_env,
)
from shipyard.deploy.models import Release, RuntimeState, RuntimeStatus, Service, new_release_id
from shipyard.deploy.registry import ReleaseRegistry
from shipyard.deploy.supervisor import ProcessSupervisor
from shipyard.events.broadcaster import Event, EventBroadcaster, EventType

logger = logging.getLogger(__name__)

DEFAULT_EXTRACT_TIMEOUT = 120.0


@dataclass
class ReconcileReport:
    """What startup recovery found and fixed.

    Attributes:
        orphan_bundles: service -> bundle filenames with no release entry.
        dangling_releases: service -> release ids whose bundle is missing.
        scratch_removed: service -> leftover temp entries removed.
        unreadable: services whose metadata failed to load; their
            unreferenced bundles are kept.
        pruned: True if orphan bundles were deleted.

    """

    orphan_bundles: dict[str, list[str]] = field(default_factory=dict)
    dangling_releases: dict[str, list[str]] = field(default_factory=dict)
    scratch_removed: dict[str, list[str]] = field(default_factory=dict)
    unreadable: list[str] = field(default_factory=list)
    pruned: bool = False

    @property
    def clean(self) -> bool:
        """True if nothing needed fixing."""
        return not (self.orphan_bundles or self.dangling_releases or self.unreadable)


class DeploymentEngine:
    """Orchestrates services, releases, env and process lifecycle.

    Attributes:
        registry: In-memory service state (read by route handlers).
        bundle_store: Release archive storage.
        metadata_store: Durable service metadata.
        supervisor: Process supervisor adapter.
        broadcaster: Observer event fan-out.
        installer: Dependency installation step.
        default_entry_point: Entry file used when the manifest names none.
        extract_timeout: Seconds allowed for bundle extraction.

    """

    def __init__(
        self,
        registry: ReleaseRegistry,
        bundle_store: BundleStore,
        metadata_store: MetadataStore,
        supervisor: ProcessSupervisor,
        broadcaster: EventBroadcaster,
        installer: DependencyInstaller,
        default_entry_point: str = "index.js",
        extract_timeout: float = DEFAULT_EXTRACT_TIMEOUT,
    ) -> None:
        """Initialize engine and register for process exit notifications."""
        self.registry = registry
        self.bundle_store = bundle_store
        self.metadata_store = metadata_store
        self.supervisor = supervisor
        self.broadcaster = broadcaster
        self.installer = installer
        self.default_entry_point = default_entry_point
        self.extract_timeout = extract_timeout

        self._locks: dict[str, asyncio.Lock] = {}
        self._starting: set[str] = set()
        self._attempts = itertools.count(1)

        self.supervisor.set_exit_listener(self._on_process_exit)

    # Internals

    def _lock(self, name: str) -> asyncio.Lock:
        """Per-service mutual exclusion for read-modify-persist.

        Callers other than create_service check the name is registered
        first, so unknown names never allocate a lock.
        """
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    async def _commit(self, service: Service) -> None:
        """Persist a service value, then install it in the registry.

        Raises:
            StorageError: If the save fails (registry left untouched).

        """
        meta = ServiceMeta.from_service(service)
        await asyncio.to_thread(self.metadata_store.save, service.name, meta)
        self.registry._store(service)

    @staticmethod
    def _remove_service_dir(service_dir: Path) -> None:
        try:
            shutil.rmtree(service_dir)
        except OSError:
            logger.exception("Failed to remove %s after aborted create", service_dir)

    def _publish(self, event_type: EventType, service: str, data: dict[str, Any]) -> None:
        """Publish without letting observer problems reach the caller."""
        try:
            self.broadcaster.publish(Event(type=event_type, service=service, data=data))
        except Exception:
            logger.exception("Failed to publish %s event for %s", event_type, service)

    def _set_status(
        self,
        name: str,
        state: RuntimeState,
        snapshot: dict[str, Any] | None = None,
        publish: bool = True,
    ) -> RuntimeStatus:
        status = self.registry._set_status(name, state, snapshot)
        if publish:
            self._publish("status", name, status.to_payload())
        return status

    def snapshot_event(self) -> Event:
        """``initial`` event carrying every service summary."""
        return Event(type="initial", service=None, data={"services": self.registry.list_summaries()})

    # Services

    async def create_service(self, name: str, env: dict[str, Any] | None = None) -> Service:
        """Register a new, empty service.

        Raises:
            InvalidServiceNameError: If name is not lowercase alnum/hyphen.
            InvalidEnvError: If env holds nested values.
            ServiceAlreadyExistsError: If the name is taken.
            StorageError: If the service directory or metadata cannot be written.

        """
        if not name or not SERVICE_NAME_PATTERN.match(name):
            raise InvalidServiceNameError(
                "Service name must contain only lowercase letters, numbers, and hyphens"
            )
        normalized = self._normalize_env(env)

        async with self._lock(name):
            if name in self.registry:
                raise ServiceAlreadyExistsError(name)

            releases_dir = self.bundle_store.releases_dir(name)
            service_dir = releases_dir.parent
            created = not service_dir.exists()
            try:
                await asyncio.to_thread(releases_dir.mkdir, parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create {releases_dir}: {e}") from e

            service = Service(name=name, env=normalized)
            try:
                await self._commit(service)
            except StorageError:
                # A directory without metadata would be loaded as a service next startup
                if created:
                    await asyncio.to_thread(self._remove_service_dir, service_dir)
                raise

        logger.info("Created service %s", name)
        return service

    def get_service(self, name: str) -> dict[str, Any]:
        """Summary of one service (raises ServiceNotFoundError)."""
        return self.registry.summary(name)

    def list_services(self) -> list[dict[str, Any]]:
        """Summaries of all services."""
        return self.registry.list_summaries()

    # Releases

    def _read_manifest(self, name: str, filename: str) -> ManifestResult:
        """Best-effort manifest read from a stored bundle."""
        try:
            raw = self.bundle_store.read_entry(name, filename, MANIFEST_NAME)
        except ShipyardError as e:
            logger.warning("Could not read manifest from %s: %s", filename, e)
            return ManifestResult.absent(str(e))
        return parse_manifest(raw)

    async def add_release(self, name: str, bundle: bytes) -> Release:
        """Store a bundle as a new release and make it active.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            InvalidBundleError: If the bundle is not a tar.gz archive.
            StorageError: If the bundle or metadata write fails. A bundle
                written before a failed metadata save is left as an orphan.

        """
        self.registry.get(name)

        release_id = new_release_id()
        filename = await asyncio.to_thread(self.bundle_store.put, name, release_id, bundle)

        manifest = await asyncio.to_thread(self._read_manifest, name, filename)
        if not manifest.parsed:
            logger.info("Release %s of %s has no usable manifest: %s", release_id, name, manifest.error)
        release = Release.create(release_id, filename, manifest.data)

        async with self._lock(name):
            service = self.registry.get(name)
            await self._commit(service.with_release(release))

        logger.info("Added release %s to %s (now active)", release_id, name)
        self._publish("release", name, {"release": release.to_dict(), "activeReleaseId": release.id})
        return release

    def list_releases(self, name: str) -> list[Release]:
        """Releases in storage order (raises ServiceNotFoundError)."""
        return list(self.registry.get(name).releases)

    async def activate_release(self, name: str, release_id: str) -> str:
        """Point the service at an existing release.

        Does not start or restart the process.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            ReleaseNotFoundError: If the release is not in the service's list.
            StorageError: If the metadata write fails.

        """
        self.registry.get(name)
        async with self._lock(name):
            service = self.registry.get(name)
            if service.find_release(release_id) is None:
                raise ReleaseNotFoundError(name, release_id)
            await self._commit(service.with_active(release_id))

        logger.info("Activated release %s of %s", release_id, name)
        self._publish("release", name, {"activeReleaseId": release_id})
        return release_id

    async def delete_release(self, name: str, release_id: str) -> str | None:
        """Remove a release and its bundle.

        If the release was active, the most recently added remaining
        release becomes active (or none if the list is empty).

        Returns:
            The active release id after deletion.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            ReleaseNotFoundError: If the release is not in the service's list.
            StorageError: If the metadata write fails.

        """
        self.registry.get(name)
        async with self._lock(name):
            service = self.registry.get(name)
            release = service.find_release(release_id)
            if release is None:
                raise ReleaseNotFoundError(name, release_id)

            updated = service.without_release(release_id)
            await self._commit(updated)

            try:
                await asyncio.to_thread(self.bundle_store.delete, name, release.filename)
            except StorageError:
                logger.exception("Failed to remove bundle %s of %s (leaked)", release.filename, name)

        logger.info(
            "Deleted release %s of %s (active now %s)",
            release_id,
            name,
            updated.active_release_id,
        )
        self._publish(
            "release",
            name,
            {"deletedReleaseId": release_id, "activeReleaseId": updated.active_release_id},
        )
        return updated.active_release_id

    # Environment

    @staticmethod
    def _normalize_env(env: dict[str, Any] | None) -> dict[str, str]:
        try:
            return normalize_env(env)
        except ValueError as e:
            raise InvalidEnvError(str(e)) from e

    async def update_env(self, name: str, env: dict[str, Any]) -> dict[str, str]:
        """Replace the service environment (no merge).

        A running process keeps its old environment until the next
        start or restart.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            InvalidEnvError: If env holds nested values.
            StorageError: If the metadata write fails.

        """
        normalized = self._normalize_env(env)

        self.registry.get(name)
        async with self._lock(name):
            service = self.registry.get(name)
            await self._commit(service.with_env(normalized))

        logger.info("Updated env of %s (%d variables)", name, len(normalized))
        self._publish("env", name, {"env": dict(normalized)})
        return dict(normalized)

    # Process lifecycle

    def _run_dir(self, name: str, release: Release) -> Path:
        # Counter restarts with the process; skip run dirs left by earlier runs
        releases_dir = self.bundle_store.releases_dir(name)
        while True:
            candidate = releases_dir / f"run-{release.id}-{next(self._attempts)}"
            if not candidate.exists():
                return candidate

    async def _prepare(self, name: str, release: Release, work_dir: Path) -> EntryPoint:
        """Extract, install dependencies, and resolve the entry point."""
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.bundle_store.extract, name, release.filename, work_dir),
                timeout=self.extract_timeout,
            )
        except TimeoutError:
            raise DependencyInstallError(
                f"Bundle extraction timed out after {self.extract_timeout:.0f}s",
                timed_out=True,
            ) from None

        await self.installer.install(work_dir)

        manifest_path = work_dir / MANIFEST_NAME
        raw = await asyncio.to_thread(
            lambda: manifest_path.read_bytes() if manifest_path.is_file() else None
        )
        manifest = parse_manifest(raw)
        return await asyncio.to_thread(
            resolve_entry_point, work_dir, manifest, self.default_entry_point
        )

    async def _refresh_status(self, name: str) -> RuntimeStatus:
        """Align cached status with the supervisor, defaulting to stopped."""
        try:
            description = await self.supervisor.describe(name)
        except SupervisorError:
            logger.exception("Failed to describe %s", name)
            description = None
        if description is None:
            return self._set_status(name, RuntimeState.STOPPED, publish=False)
        return self._set_status(name, description.state, description.raw, publish=False)

    async def start_service(self, name: str) -> dict[str, Any]:
        """Start the active release of a service.

        Steps: extract into a fresh per-attempt directory, install
        dependencies, resolve the entry point, remove any process of the
        same name, start the new process with the current env.

        Returns:
            Status payload.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            NoActiveReleaseError: If no release is active.
            StartInProgressError: If another start of this service is running.
            DependencyInstallError: If extraction or install fails or times out.
            InvalidBundleError / StorageError: If the bundle cannot be extracted.
            SupervisorError: If the process cannot be started.

        """
        self.registry.get(name)
        async with self._lock(name):
            service = self.registry.get(name)
            if name in self._starting:
                raise StartInProgressError(name)
            release = service.active_release
            if release is None:
                raise NoActiveReleaseError(name)
            env = dict(service.env)
            self._starting.add(name)

        try:
            work_dir = self._run_dir(name, release)
            logger.info("Starting %s from release %s in %s", name, release.id, work_dir)

            try:
                entry = await self._prepare(name, release, work_dir)
            except ShipyardError:
                await self._refresh_status(name)
                raise

            await self.supervisor.remove_if_exists(name)
            try:
                await self.supervisor.start(name, entry.path, work_dir, env)
            except SupervisorError:
                self._set_status(name, RuntimeState.STOPPED)
                raise

            description = await self.supervisor.describe(name)
            snapshot = description.raw if description is not None else None
            status = self._set_status(name, RuntimeState.RUNNING, snapshot)
            logger.info("Service %s running (entry %s)", name, entry.path.name)
            return status.to_payload()
        finally:
            self._starting.discard(name)

    async def stop_service(self, name: str) -> dict[str, Any]:
        """Stop a service's process.

        The extracted working directory is left in place.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            SupervisorError: If the supervisor fails or has no such process.

        """
        self.registry.get(name)
        await self.supervisor.stop(name)
        status = self._set_status(name, RuntimeState.STOPPED)
        logger.info("Stopped %s", name)
        return status.to_payload()

    async def restart_service(self, name: str) -> dict[str, Any]:
        """Restart a service's process with the current environment.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            SupervisorError: If the supervisor fails or has no such process.

        """
        service = self.registry.get(name)
        try:
            await self.supervisor.restart(name, env=dict(service.env))
        except SupervisorError:
            await self._refresh_status(name)
            raise

        description = await self.supervisor.describe(name)
        snapshot = description.raw if description is not None else None
        status = self._set_status(name, RuntimeState.RUNNING, snapshot)
        logger.info("Restarted %s", name)
        return status.to_payload()

    async def get_service_status(self, name: str) -> dict[str, Any]:
        """Query the supervisor for live state and refresh the cache.

        A process unknown to the supervisor forces the cached state to
        stopped.

        Raises:
            ServiceNotFoundError: If the service does not exist.
            SupervisorError: If the supervisor query fails.

        """
        self.registry.get(name)
        previous = self.registry.status(name).state
        description = await self.supervisor.describe(name)

        if description is None:
            status = self._set_status(name, RuntimeState.STOPPED, publish=False)
        else:
            status = self._set_status(name, description.state, description.raw, publish=False)

        if status.state != previous:
            logger.info("Status drift for %s: %s -> %s", name, previous, status.state)
            self._publish("status", name, status.to_payload())
        return status.to_payload()

    async def _on_process_exit(self, name: str, state: RuntimeState, exit_code: int | None) -> None:
        """Supervisor callback for processes that exit on their own."""
        if name not in self.registry:
            return
        self._set_status(name, state, {"exit_code": exit_code})

    # Logs

    def tail_logs(self, name: str, count: int = 100) -> list[str]:
        """Recent output lines of a service's process."""
        self.registry.get(name)
        return self.supervisor.tail_logs(name, count)

    def clear_logs(self, name: str) -> None:
        """Discard retained output of a service's process."""
        self.registry.get(name)
        self.supervisor.clear_logs(name)

    # Startup recovery

    async def reconcile(self, prune_orphans: bool = True) -> ReconcileReport:
        """Repair divergence between bundles and metadata after a crash.

        - Bundles with no release entry are deleted (or only reported).
          Services whose metadata failed to load are only reported, since
          their bundles may still be recovered by repairing the file.
        - Releases whose bundle is missing are dropped, with the active
          pointer reassigned as for an explicit delete.
        - Interrupted-write temp files are removed.

        Returns:
            ReconcileReport.

        """
        report = ReconcileReport(pruned=prune_orphans)
        unreadable = self.registry.unreadable()
        report.unreadable = sorted(unreadable)

        for name in self.registry.names():
            async with self._lock(name):
                service = self.registry.get(name)
                stored = set(await asyncio.to_thread(self.bundle_store.list_bundles, name))
                referenced = {r.filename for r in service.releases}

                dangling = [r.id for r in service.releases if r.filename not in stored]
                if dangling:
                    updated = service
                    for release_id in dangling:
                        updated = updated.without_release(release_id)
                    logger.warning(
                        "Service %s: dropping %d releases with missing bundles: %s",
                        name,
                        len(dangling),
                        ", ".join(dangling),
                    )
                    await self._commit(updated)
                    report.dangling_releases[name] = dangling

                orphans = sorted(stored - referenced)
                if orphans:
                    report.orphan_bundles[name] = orphans
                    for filename in orphans:
                        if not prune_orphans or name in unreadable:
                            logger.warning("Service %s: orphan bundle %s", name, filename)
                            continue
                        try:
                            await asyncio.to_thread(self.bundle_store.delete, name, filename)
                        except StorageError:
                            logger.exception("Failed to prune orphan bundle %s", filename)

                removed = await asyncio.to_thread(self.bundle_store.remove_scratch, name)
                if await asyncio.to_thread(self.metadata_store.remove_stale_temp, name):
                    removed.append("releases.json.tmp")
                if removed:
                    report.scratch_removed[name] = removed

        if report.clean:
            logger.info("Reconcile: %d services consistent", len(self.registry))
        else:
            logger.warning(
                "Reconcile: %d services with orphan bundles, %d with dangling releases",
                len(report.orphan_bundles),
                len(report.dangling_releases),
            )
        return report
