"""Live process output as a server-sent-event stream.

Each connection registers its own handler with the supervisor, so one
slow client only fills its own bounded queue.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator

from shipyard.deploy.supervisor import ProcessSupervisor
from shipyard.events.broadcaster import format_sse

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_LINES = 100
DEFAULT_MAX_QUEUE_SIZE = 1000


async def stream_logs(
    supervisor: ProcessSupervisor,
    name: str,
    replay_lines: int = DEFAULT_REPLAY_LINES,
    heartbeat_interval: float = 15.0,
    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for a process's output.

    Args:
        supervisor: Supervisor providing the log subscription.
        name: Process (service) name.
        replay_lines: Buffered lines sent on connect.
        heartbeat_interval: Idle seconds before a heartbeat frame.
        max_queue_size: Lines kept for this client before dropping oldest.

    Yields:
        ``log_replay`` once, then ``log`` frames and heartbeats.

    """
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue_size)

    def on_line(line: str) -> None:
        try:
            queue.put_nowait(line)
        except asyncio.QueueFull:
            queue.get_nowait()
            queue.put_nowait(line)

    unsubscribe = supervisor.subscribe_logs(name, on_line)
    logger.info("Log client connected to %s", name)
    try:
        lines = supervisor.tail_logs(name, replay_lines)
        yield format_sse("log_replay", {"service": name, "lines": lines, "count": len(lines)}, retry=3000)

        while True:
            try:
                line = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
            except TimeoutError:
                yield format_sse("heartbeat", {"service": name, "timestamp": time.time()})
                continue
            yield format_sse("log", {"service": name, "line": line})
    finally:
        unsubscribe()
        logger.info("Log client disconnected from %s", name)
