"""HTTP route handlers organized by domain:
- auth: Token issuance
- services: Service listing, creation and environment
- releases: Bundle upload, activation and deletion
- runtime: Start/stop/restart, status and logs
- events: Observer SSE stream
"""

from .auth import routes as auth_routes
from .events import routes as events_routes
from .releases import routes as releases_routes
from .runtime import routes as runtime_routes
from .services import routes as services_routes

API_ROUTES = auth_routes + services_routes + releases_routes + runtime_routes + events_routes

__all__ = ["API_ROUTES"]
