"""Translation of shipyard errors into JSON HTTP responses."""

import logging

from starlette.authentication import AuthenticationError as StarletteAuthError
from starlette.exceptions import HTTPException
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse

from shipyard.core.exceptions import (
    AuthenticationError,
    DependencyInstallError,
    InvalidBundleError,
    InvalidEnvError,
    InvalidServiceNameError,
    NoActiveReleaseError,
    ReleaseNotFoundError,
    ServiceAlreadyExistsError,
    ServiceNotFoundError,
    ShipyardError,
    StartInProgressError,
    StorageError,
    SupervisorError,
)

logger = logging.getLogger(__name__)

# Checked in order; first isinstance match wins
STATUS_CODES: tuple[tuple[type[ShipyardError], int], ...] = (
    (ServiceNotFoundError, 404),
    (ReleaseNotFoundError, 404),
    (ServiceAlreadyExistsError, 409),
    (StartInProgressError, 409),
    (NoActiveReleaseError, 409),
    (InvalidServiceNameError, 400),
    (InvalidEnvError, 400),
    (InvalidBundleError, 400),
    (DependencyInstallError, 422),
    (SupervisorError, 502),
    (StorageError, 500),
    (AuthenticationError, 401),
)


def status_code_for(exc: ShipyardError) -> int:
    """HTTP status for a shipyard error (500 for anything unmapped)."""
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def shipyard_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Exception handler registered for ShipyardError."""
    assert isinstance(exc, ShipyardError)
    status_code = status_code_for(exc)
    body: dict[str, object] = {"error": str(exc)}

    if isinstance(exc, DependencyInstallError):
        body["output"] = exc.output
        body["timedOut"] = exc.timed_out

    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.debug("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(body, status_code=status_code)


async def http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """JSON body for routing errors (404/405) and explicit HTTPExceptions."""
    assert isinstance(exc, HTTPException)
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


def auth_error_response(conn: HTTPConnection, exc: StarletteAuthError) -> JSONResponse:
    """on_error callback for the authentication middleware."""
    return JSONResponse({"error": str(exc) or "Unauthorized"}, status_code=401)
