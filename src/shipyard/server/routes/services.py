"""Service management route handlers.

- /api/services - List and create services
- /api/services/{service} - Service summary
- /api/services/{service}/env - Replace environment
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ._common import get_engine, read_json_object

logger = logging.getLogger(__name__)


async def list_services(request: Request) -> JSONResponse:
    """GET /api/services - Summaries of all services."""
    return JSONResponse(get_engine(request).list_services())


async def create_service(request: Request) -> JSONResponse:
    """POST /api/services - Create a service.

    Body:
        {
            "name": "my-service",
            "env": {"PORT": "8080"}
        }

    Returns:
        201: Service summary.
        400: Missing or invalid name, invalid env.
        409: Name already taken.

    """
    engine = get_engine(request)
    body = await read_json_object(request)
    if isinstance(body, JSONResponse):
        return body

    name = body.get("name")
    if not name or not isinstance(name, str):
        return JSONResponse({"error": "Missing service name"}, status_code=400)

    service = await engine.create_service(name, body.get("env") or {})
    return JSONResponse(engine.get_service(service.name), status_code=201)


async def get_service(request: Request) -> JSONResponse:
    """GET /api/services/{service} - Service summary."""
    return JSONResponse(get_engine(request).get_service(request.path_params["service"]))


async def update_env(request: Request) -> JSONResponse:
    """PUT /api/services/{service}/env - Replace the environment.

    Body:
        {"env": {"KEY": "value"}}

    Returns:
        200: {"env": {...}} as stored.
        400: Invalid body or nested env values.
        404: Service not found.

    """
    body = await read_json_object(request)
    if isinstance(body, JSONResponse):
        return body

    env = await get_engine(request).update_env(request.path_params["service"], body.get("env") or {})
    return JSONResponse({"env": env})


routes = [
    Route("/api/services", list_services, methods=["GET"]),
    Route("/api/services", create_service, methods=["POST"]),
    Route("/api/services/{service}", get_service, methods=["GET"]),
    Route("/api/services/{service}/env", update_env, methods=["PUT"]),
]
