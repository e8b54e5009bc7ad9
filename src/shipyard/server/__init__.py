"""HTTP surface for shipyard.

Public API:
    create_app: Starlette application factory
    build_engine: DeploymentEngine wiring from ServerConfig
    TokenService: API token signing and verification
"""

from .app import build_engine, create_app
from .auth import TokenService

__all__ = ["TokenService", "build_engine", "create_app"]
