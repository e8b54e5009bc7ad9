"""Helpers shared by route handlers."""

from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from shipyard.deploy.engine import DeploymentEngine


def get_engine(request: Request) -> DeploymentEngine:
    """Get deployment engine from app state."""
    return request.app.state.engine


async def read_json_object(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse the request body as a JSON object.

    Returns:
        The parsed object, or a 400 response to return as-is.

    """
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "JSON body must be an object"}, status_code=400)
    return body


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
