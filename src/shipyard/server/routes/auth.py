"""Token issuance route.

- POST /api/auth/token - Exchange the admin password for an API token
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from shipyard.server.auth import check_password

from ._common import read_json_object

logger = logging.getLogger(__name__)


async def issue_token(request: Request) -> JSONResponse:
    """POST /api/auth/token - Issue a token.

    Body:
        {"password": "..."}

    Returns:
        200: {"token": "..."}
        400: Invalid JSON body.
        401: Wrong password or issuance disabled.

    """
    body = await read_json_object(request)
    if isinstance(body, JSONResponse):
        return body

    config = request.app.state.config
    check_password(config.admin_password, body.get("password"))

    token = request.app.state.tokens.issue()
    logger.info("Issued API token to %s", request.client.host if request.client else "unknown")
    return JSONResponse({"token": token})


routes = [
    Route("/api/auth/token", issue_token, methods=["POST"]),
]
