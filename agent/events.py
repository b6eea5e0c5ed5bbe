"""
Stream event data types and the queue that carries them to a consumer.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional


EVENT_TYPES = frozenset({
    "start",
    "sandbox_create",
    "progress",
    "analyze",
    "plan",
    "implement",
    "tool_call",
    "tool_error",
    "file_change",
    "pr_create",
    "pr_created",
    "pause_for_verification",
    "complete",
    "error",
    "debug",
})

# Events after which nothing else is emitted on a run's stream
FINAL_EVENT_TYPES = frozenset({"complete", "error", "pause_for_verification"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StreamEvent:
    """One step of progress emitted during an agent run"""
    type: str
    message: str = ""
    timestamp: str = field(default_factory=_now_iso)
    progress: Optional[int] = None
    data: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type}")
        if self.progress is not None:
            self.progress = max(0, min(100, int(self.progress)))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "message": self.message, "timestamp": self.timestamp}
        if self.progress is not None:
            out["progress"] = self.progress
        if self.data is not None:
            out["data"] = self.data
        return out

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


EventCallback = Callable[[StreamEvent], Awaitable[None]]


class EventStream:
    """Single-producer, single-consumer channel of StreamEvents.

    The producer calls emit() and finally close(); the consumer iterates with
    `async for`. Iteration ends after close() once the queue is drained.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 256):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.last_event: Optional[StreamEvent] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot emit on a closed event stream")
        self.last_event = event
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
