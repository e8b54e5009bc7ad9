"""Exception hierarchy for shipyard.

Every error raised by the deployment core derives from ShipyardError so
the HTTP layer and the CLI can translate failures with a single handler.
"""

__all__ = [
    "AuthenticationError",
    "ConfigError",
    "DependencyInstallError",
    "InvalidBundleError",
    "InvalidEnvError",
    "InvalidServiceNameError",
    "NoActiveReleaseError",
    "ReleaseNotFoundError",
    "ServiceAlreadyExistsError",
    "ServiceNotFoundError",
    "ShipyardError",
    "StartInProgressError",
    "StorageError",
    "SupervisorError",
]


class ShipyardError(Exception):
    """Base exception for all shipyard errors."""


class ConfigError(ShipyardError):
    """Configuration file or value is invalid."""


class AuthenticationError(ShipyardError):
    """Credential or token rejected."""


class ServiceNotFoundError(ShipyardError):
    """Named service is not registered.

    Attributes:
        service: Name that was looked up.

    """

    def __init__(self, service: str) -> None:
        super().__init__(f"Service not found: {service}")
        self.service = service


class ReleaseNotFoundError(ShipyardError):
    """Release id is not part of the service's release list."""

    def __init__(self, service: str, release_id: str) -> None:
        super().__init__(f"Release not found: {release_id} (service {service})")
        self.service = service
        self.release_id = release_id


class ServiceAlreadyExistsError(ShipyardError):
    """A service with the same name is already registered."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Service already exists: {service}")
        self.service = service


class InvalidServiceNameError(ShipyardError):
    """Service name is not lowercase letters, digits and hyphens."""


class InvalidEnvError(ShipyardError):
    """Environment mapping is not an object of scalar values."""


class InvalidBundleError(ShipyardError):
    """Uploaded bundle is not a readable gzip-compressed tar archive."""


class NoActiveReleaseError(ShipyardError):
    """Service has no active release to start."""

    def __init__(self, service: str) -> None:
        super().__init__(f"No active release for service: {service}")
        self.service = service


class DependencyInstallError(ShipyardError):
    """Dependency installation step failed or timed out.

    Attributes:
        output: Combined stdout/stderr captured from the installer.
        timed_out: True if the step was killed after the configured timeout.

    """

    def __init__(self, message: str, output: str = "", timed_out: bool = False) -> None:
        super().__init__(message)
        self.output = output
        self.timed_out = timed_out


class SupervisorError(ShipyardError):
    """Process supervisor call failed."""


class StorageError(ShipyardError):
    """Durable read or write failed (bundle or metadata)."""


class StartInProgressError(ShipyardError):
    """A start attempt for the same service is already running."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Start already in progress for service: {service}")
        self.service = service
