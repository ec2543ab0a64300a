"""The per-conversation "current streaming content" slot.

Exactly one stream owns the slot at a time.  Ownership is represented by the
:class:`CancellationToken` handed out by :meth:`StreamingSlot.claim`; a new
claim cancels the previous owner's token, and writes from a token that no
longer owns the slot are dropped.
"""

from __future__ import annotations

import asyncio

from branchchat.streaming.events import (
    EVENT_END,
    EVENT_START,
    EVENT_TOKEN,
    ChatEvent,
    EventChannel,
)


class CancellationToken:
    """Cooperative cancellation flag shared by a mutator and the engine."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Block until :meth:`cancel` is called."""
        await self._event.wait()


class StreamingSlot:
    def __init__(self, events: EventChannel | None = None) -> None:
        self.events = events or EventChannel()
        self.message_id: str | None = None
        self.content = ""
        self._owner: CancellationToken | None = None

    @property
    def is_streaming(self) -> bool:
        return self._owner is not None

    def owns(self, token: CancellationToken) -> bool:
        return self._owner is token

    def claim(self, message_id: str) -> CancellationToken:
        """Take the slot for *message_id*, cancelling any current owner."""
        if self._owner is not None:
            self._owner.cancel()
        token = CancellationToken()
        self._owner = token
        self.message_id = message_id
        self.content = ""
        self.events.publish(ChatEvent(EVENT_START, message_id=message_id))
        return token

    def append(self, token: CancellationToken, text: str) -> bool:
        """Append *text* if *token* still owns the slot."""
        if not self.owns(token):
            return False
        self.content += text
        self.events.publish(ChatEvent(EVENT_TOKEN, message_id=self.message_id, text=text))
        return True

    def release(
        self,
        token: CancellationToken,
        message_id: str,
        state: str,
        error: str | None = None,
    ) -> None:
        """Announce a terminal state and clear the slot if *token* owns it."""
        self.events.publish(
            ChatEvent(EVENT_END, message_id=message_id, state=state, error=error)
        )
        if not self.owns(token):
            return
        self._owner = None
        self.message_id = None
        self.content = ""

    def cancel(self) -> bool:
        """Cancel the current owner.  Returns ``False`` when idle."""
        if self._owner is None:
            return False
        self._owner.cancel()
        return True
