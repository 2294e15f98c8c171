"""
Ordered, per-session event stream.

Every event is appended to the session history before it is broadcast, so a
late subscriber can replay the stream from the start in the original order.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

STATE_CHANGE = "state-change"
QUESTION = "question"
DRAFT_READY = "draft-ready"
CRITIQUE_READY = "critique-ready"
ARTIFACT_READY = "artifact-ready"
PROGRESS = "progress"
ERROR = "error"

EVENT_TYPES = (STATE_CHANGE, QUESTION, DRAFT_READY, CRITIQUE_READY, ARTIFACT_READY, PROGRESS, ERROR)

EventCallback = Callable[["SessionEvent"], "Awaitable[None] | None"]


@dataclass(frozen=True)
class SessionEvent:
    type: str
    session_id: str
    payload: Any
    sequence: int
    timestamp: float = field(default_factory=time.time)


class SessionEventChannel:
    """Append-only event history with fan-out to any number of subscribers."""

    def __init__(self, session_id: str, callback: EventCallback | None = None):
        self.session_id = session_id
        self.callback = callback
        self.history: list[SessionEvent] = []
        self._sequence = itertools.count(1)
        self._queues: list[asyncio.Queue[SessionEvent | None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event_type: str, payload: Any = None) -> SessionEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = SessionEvent(
            type=event_type,
            session_id=self.session_id,
            payload=payload,
            sequence=next(self._sequence),
        )
        self.history.append(event)
        for queue in self._queues:
            queue.put_nowait(event)
        if self.callback is not None:
            maybe = self.callback(event)
            if asyncio.iscoroutine(maybe):
                await maybe
        return event

    async def subscribe(self, replay: bool = True) -> AsyncIterator[SessionEvent]:
        queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        if replay:
            for event in self.history:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def events_of(self, event_type: str) -> list[SessionEvent]:
        return [event for event in self.history if event.type == event_type]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)
