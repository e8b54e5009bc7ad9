"""Observer event stream.

- GET /api/events - SSE stream of status/env/release events
"""

from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.routing import Route

from ._common import SSE_HEADERS, get_engine


async def event_stream(request: Request) -> StreamingResponse:
    """GET /api/events - Observer stream.

    The first event is ``initial`` with every service summary; later
    events are ``status``, ``env`` and ``release`` as they happen.
    """
    engine = get_engine(request)
    return StreamingResponse(
        engine.broadcaster.stream(initial=engine.snapshot_event),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


routes = [
    Route("/api/events", event_stream, methods=["GET"]),
]
