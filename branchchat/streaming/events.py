"""Event channel between a chat session and its observers.

Observers (the API's SSE generator, the CLI's live printer) subscribe and
receive :class:`ChatEvent` objects on their own :class:`asyncio.Queue`.
Publishing never blocks and never fails when nobody is listening.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any


EVENT_START = "start"
EVENT_TOKEN = "token"
EVENT_END = "end"
EVENT_FLASH = "flash"
EVENT_TITLE = "title"


@dataclass(frozen=True)
class ChatEvent:
    event: str
    message_id: str | None = None
    text: str = ""
    state: str | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict, omitting empty fields."""
        payload: dict[str, Any] = {"event": self.event}
        if self.message_id is not None:
            payload["message_id"] = self.message_id
        if self.text:
            payload["text"] = self.text
        if self.state is not None:
            payload["state"] = self.state
        if self.error is not None:
            payload["error"] = self.error
        return payload


class EventChannel:
    """Fan-out of events to any number of queue subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[ChatEvent]] = []

    def subscribe(self) -> asyncio.Queue[ChatEvent]:
        queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChatEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: ChatEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)
