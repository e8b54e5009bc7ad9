"""Release lifecycle for shipyard services.

Public API:
    BundleStore: Durable storage of release archives
    MetadataStore: Per-service releases.json persistence
    ReleaseRegistry: In-memory view of every service
    DeploymentEngine: Create/release/activate/start/stop orchestration
    ProcessSupervisor: Capability interface for a process manager
    LocalProcessSupervisor: Subprocess-based supervisor for this host
"""

from .bundle_store import BundleStore
from .engine import DeploymentEngine, ReconcileReport
from .installer import DependencyInstaller
from .metadata_store import MetadataStore
from .models import Release, RuntimeState, RuntimeStatus, Service
from .registry import ReleaseRegistry
from .supervisor import LocalProcessSupervisor, ProcessDescription, ProcessHandle, ProcessSupervisor

__all__ = [
    "BundleStore",
    "DependencyInstaller",
    "DeploymentEngine",
    "LocalProcessSupervisor",
    "MetadataStore",
    "ProcessDescription",
    "ProcessHandle",
    "ProcessSupervisor",
    "ReconcileReport",
    "Release",
    "ReleaseRegistry",
    "RuntimeState",
    "RuntimeStatus",
    "Service",
]
