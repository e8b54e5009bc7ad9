"""Observer event delivery.

Provides:
- EventBroadcaster: non-blocking fan-out of state-change events
- stream_logs: per-connection SSE stream of process output
"""

from .broadcaster import Event, EventBroadcaster, Subscription, format_sse
from .log_stream import stream_logs

__all__ = [
    "Event",
    "EventBroadcaster",
    "Subscription",
    "format_sse",
    "stream_logs",
]
