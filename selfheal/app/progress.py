"""Progress bus – per-session publish/subscribe for live healing events.

A channel is opened when a session starts and closed a grace delay after
it finishes, so a viewer still reading is not cut off by the race between
"loop finished" and "last events delivered".  Publishing to a session with
no channel is a silent no-op; the bus never blocks or fails the publisher.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from selfheal.shared.schemas import utcnow_iso

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "status", "log", "bug_found", "test_result",
    "fix_applied", "attempt_complete", "score", "error",
})


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    data: dict[str, Any]
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"

    @property
    def is_terminal_status(self) -> bool:
        return self.type == "status" and self.data.get("status") in ("completed", "failed")


class ProgressChannel:
    """Fan-out of one session's events to every subscriber queue."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._subscribers: set[asyncio.Queue[ProgressEvent | None]] = set()
        self.closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        for queue in self._subscribers:
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[ProgressEvent | None]:
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        if self.closed:
            queue.put_nowait(None)
        else:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ProgressEvent | None]) -> None:
        self._subscribers.discard(queue)

    def close(self) -> None:
        """Detach every subscriber; a ``None`` sentinel ends their streams."""
        self.closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._subscribers.clear()


class ProgressBus:
    """Registry of live channels, one per running session."""

    def __init__(self) -> None:
        self._channels: dict[str, ProgressChannel] = {}
        self._teardowns: dict[str, asyncio.Task] = {}

    def open(self, session_id: str) -> ProgressChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = ProgressChannel(session_id)
            self._channels[session_id] = channel
        return channel

    def get(self, session_id: str) -> ProgressChannel | None:
        return self._channels.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._channels

    def active_sessions(self) -> list[str]:
        return list(self._channels)

    def publish(self, session_id: str, event_type: str, data: dict[str, Any]) -> None:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        if event_type not in EVENT_TYPES:
            logger.warning("[ProgressBus] Unknown event type %r for %s", event_type, session_id)
        channel.publish(ProgressEvent(type=event_type, data=data))

    def close(self, session_id: str) -> None:
        channel = self._channels.pop(session_id, None)
        if channel is not None:
            channel.close()
            logger.debug("[ProgressBus] Closed channel %s", session_id)

    def schedule_close(self, session_id: str, delay: float) -> asyncio.Task:
        """Close the channel after *delay* seconds."""
        previous = self._teardowns.pop(session_id, None)
        if previous is not None:
            previous.cancel()

        async def _teardown() -> None:
            await asyncio.sleep(delay)
            self.close(session_id)

        def _forget(done: asyncio.Task) -> None:
            if self._teardowns.get(session_id) is done:
                del self._teardowns[session_id]

        task = asyncio.create_task(_teardown(), name=f"progress-teardown-{session_id}")
        self._teardowns[session_id] = task
        task.add_done_callback(_forget)
        return task

    async def stream(self, session_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield events for *session_id* until its channel is closed."""
        channel = self._channels.get(session_id)
        if channel is None:
            return
        queue = channel.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            channel.unsubscribe(queue)

    async def shutdown(self) -> None:
        for task in list(self._teardowns.values()):
            task.cancel()
        self._teardowns.clear()
        for session_id in list(self._channels):
            self.close(session_id)
