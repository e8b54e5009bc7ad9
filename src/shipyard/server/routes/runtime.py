"""Process lifecycle and log route handlers.

- /api/services/{service}/start|stop|restart - Process control
- /api/services/{service}/status - Live status
- /api/services/{service}/logs - Recent output lines
- /api/services/{service}/clear-logs - Discard retained output
- /api/services/{service}/logs/stream - SSE stream of output lines
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from shipyard.events.log_stream import stream_logs

from ._common import SSE_HEADERS, get_engine

logger = logging.getLogger(__name__)

DEFAULT_TAIL = 100
MAX_TAIL = 10_000


async def start_service(request: Request) -> JSONResponse:
    """POST /api/services/{service}/start - Start the active release.

    Returns:
        200: {"status": "running", "supervisorSnapshot": {...}}
        404: Service not found.
        409: No active release, or a start is already in progress.
        422: Dependency installation failed.
        502: Supervisor failed to start the process.

    """
    return JSONResponse(await get_engine(request).start_service(request.path_params["service"]))


async def stop_service(request: Request) -> JSONResponse:
    """POST /api/services/{service}/stop - Stop the process."""
    return JSONResponse(await get_engine(request).stop_service(request.path_params["service"]))


async def restart_service(request: Request) -> JSONResponse:
    """POST /api/services/{service}/restart - Restart with the current env."""
    return JSONResponse(await get_engine(request).restart_service(request.path_params["service"]))


async def service_status(request: Request) -> JSONResponse:
    """GET /api/services/{service}/status - Query the supervisor for live status."""
    return JSONResponse(await get_engine(request).get_service_status(request.path_params["service"]))


async def service_logs(request: Request) -> JSONResponse:
    """GET /api/services/{service}/logs?tail=N - Last N output lines.

    Lines are tagged ``[out]`` or ``[err]``.
    """
    try:
        tail = int(request.query_params.get("tail", DEFAULT_TAIL))
    except ValueError:
        tail = DEFAULT_TAIL
    if tail <= 0:
        tail = DEFAULT_TAIL
    tail = min(tail, MAX_TAIL)

    lines = get_engine(request).tail_logs(request.path_params["service"], tail)
    return JSONResponse({"lines": lines})


async def clear_service_logs(request: Request) -> JSONResponse:
    """POST /api/services/{service}/clear-logs - Discard retained output."""
    get_engine(request).clear_logs(request.path_params["service"])
    return JSONResponse({"success": True})


async def service_log_stream(request: Request) -> StreamingResponse:
    """GET /api/services/{service}/logs/stream - SSE stream of output lines.

    Sends the buffered tail first (``log_replay``), then one ``log``
    event per line.
    """
    engine = get_engine(request)
    name = request.path_params["service"]
    engine.registry.get(name)
    config = request.app.state.config

    return StreamingResponse(
        stream_logs(
            engine.supervisor,
            name,
            heartbeat_interval=config.heartbeat_interval_seconds,
            max_queue_size=config.observer_queue_size,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


routes = [
    Route("/api/services/{service}/start", start_service, methods=["POST"]),
    Route("/api/services/{service}/stop", stop_service, methods=["POST"]),
    Route("/api/services/{service}/restart", restart_service, methods=["POST"]),
    Route("/api/services/{service}/status", service_status, methods=["GET"]),
    Route("/api/services/{service}/logs", service_logs, methods=["GET"]),
    Route("/api/services/{service}/clear-logs", clear_service_logs, methods=["POST"]),
    Route("/api/services/{service}/logs/stream", service_log_stream, methods=["GET"]),
]
