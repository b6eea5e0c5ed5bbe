"""
Server-sent events framing for agent event streams.
"""

import asyncio
import logging
from typing import AsyncIterator, Set

from fastapi.responses import StreamingResponse

from agent.events import EventStream

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Drain tasks for disconnected clients, held until they finish
_draining: Set[asyncio.Task] = set()


async def _drain(events: EventStream) -> None:
    async for _ in events:
        pass


async def event_source(events: EventStream) -> AsyncIterator[str]:
    """Yield `data: <json>\\n\\n` frames until the run closes its stream.

    If the client goes away first, the rest of the stream is drained in the
    background so the run is never blocked on a full queue and still cleans up.
    """
    finished = False
    try:
        async for event in events:
            yield event.to_sse()
        finished = True
    finally:
        if not finished:
            logger.info("Event stream client disconnected; draining the run in the background")
            task = asyncio.get_running_loop().create_task(_drain(events))
            _draining.add(task)
            task.add_done_callback(_draining.discard)


def sse_response(events: EventStream) -> StreamingResponse:
    return StreamingResponse(event_source(events), media_type="text/event-stream", headers=SSE_HEADERS)
