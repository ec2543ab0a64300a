"""Streaming package — SSE frame parsing and the ingestion engine."""

from branchchat.streaming.engine import StreamingEngine, StreamResult, StreamState
from branchchat.streaming.events import ChatEvent, EventChannel
from branchchat.streaming.slot import CancellationToken, StreamingSlot

__all__ = [
    "CancellationToken",
    "ChatEvent",
    "EventChannel",
    "StreamResult",
    "StreamState",
    "StreamingEngine",
    "StreamingSlot",
]
