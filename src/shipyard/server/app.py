"""Starlette application factory.

Wires the deployment components together and exposes them on
``app.state``:

- config: ServerConfig
- engine: DeploymentEngine (owns registry, stores, installer)
- broadcaster: EventBroadcaster
- supervisor: ProcessSupervisor
- tokens: TokenService

Startup loads the registry from disk and runs reconcile; shutdown
disconnects observers and stops supervised processes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware

from shipyard.core.config import ServerConfig
from shipyard.core.exceptions import ShipyardError
from shipyard.deploy.bundle_store import BundleStore
from shipyard.deploy.engine import DeploymentEngine
from shipyard.deploy.installer import DependencyInstaller
from shipyard.deploy.metadata_store import MetadataStore
from shipyard.deploy.registry import ReleaseRegistry
from shipyard.deploy.supervisor import LocalProcessSupervisor, ProcessSupervisor
from shipyard.events.broadcaster import EventBroadcaster
from shipyard.server.auth import TokenAuthBackend, TokenService
from shipyard.server.errors import auth_error_response, http_error_handler, shipyard_error_handler
from shipyard.server.routes import API_ROUTES

logger = logging.getLogger(__name__)


def build_engine(config: ServerConfig, supervisor: ProcessSupervisor | None = None) -> DeploymentEngine:
    """Construct the deployment engine and its collaborators from config.

    Args:
        config: Server configuration.
        supervisor: Process supervisor; a LocalProcessSupervisor is created
            when None.

    Returns:
        DeploymentEngine with an unloaded registry.

    """
    metadata_store = MetadataStore(config.data_dir)
    if supervisor is None:
        supervisor = LocalProcessSupervisor(
            runtime_command=config.runtime_command,
            stop_timeout=config.stop_timeout_seconds,
            log_buffer_size=config.log_buffer_size,
        )

    return DeploymentEngine(
        registry=ReleaseRegistry(metadata_store),
        bundle_store=BundleStore(config.data_dir),
        metadata_store=metadata_store,
        supervisor=supervisor,
        broadcaster=EventBroadcaster(
            max_queue_size=config.observer_queue_size,
            heartbeat_interval=config.heartbeat_interval_seconds,
        ),
        installer=DependencyInstaller(config.install_command, config.install_timeout_seconds),
        default_entry_point=config.default_entry_point,
        extract_timeout=config.extract_timeout_seconds,
    )


def create_app(config: ServerConfig, supervisor: ProcessSupervisor | None = None) -> Starlette:
    """Create the Starlette application.

    Args:
        config: Server configuration.
        supervisor: Optional process supervisor (tests pass a fake).

    Returns:
        Configured Starlette app.

    """
    engine = build_engine(config, supervisor)
    tokens = TokenService(config.jwt_secret, config.token_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        count = await asyncio.to_thread(engine.registry.load)
        report = await engine.reconcile(prune_orphans=config.prune_orphan_bundles)
        logger.info(
            "shipyard ready: %d services in %s (reconcile %s)",
            count,
            config.data_dir,
            "clean" if report.clean else "repaired",
        )
        if not config.admin_password:
            logger.warning("No admin password configured; token issuance is disabled")
        try:
            yield
        finally:
            await engine.broadcaster.shutdown()
            await engine.supervisor.shutdown()
            logger.info("shipyard stopped")

    app = Starlette(
        routes=API_ROUTES,
        middleware=[
            Middleware(
                AuthenticationMiddleware,
                backend=TokenAuthBackend(tokens),
                on_error=auth_error_response,
            ),
        ],
        exception_handlers={
            ShipyardError: shipyard_error_handler,
            HTTPException: http_error_handler,
        },
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.engine = engine
    app.state.broadcaster = engine.broadcaster
    app.state.supervisor = engine.supervisor
    app.state.tokens = tokens
    return app
