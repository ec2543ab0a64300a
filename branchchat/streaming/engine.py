"""Streaming ingestion engine.

Consumes a token-streamed completion body and folds it into an accumulation
buffer while mirroring every token into the conversation's
:class:`~branchchat.streaming.slot.StreamingSlot`.

State machine (one per conversation)::

    IDLE -> STREAMING -> {COMPLETED | CANCELLED | ERRORED} -> IDLE

Terminal conditions
-------------------
- ``[DONE]`` sentinel, or the transport running out of bytes: COMPLETED.
- No new token for ``idle_timeout`` seconds once at least one token has
  arrived: COMPLETED (``timed_out=True``).  Providers sometimes stop emitting
  without a terminator.
- The cancellation token fires: CANCELLED.  This is not an error; callers
  finalise exactly as for COMPLETED.
- Any transport failure: ERRORED, with the partial content preserved.

Only one stream runs at a time per engine.  Starting a new one cancels the
previous owner of the slot and waits for it to resolve before reading.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable

from branchchat.config import settings
from branchchat.streaming.frames import FrameKind, LineBuffer, parse_line
from branchchat.streaming.slot import CancellationToken, StreamingSlot

logger = logging.getLogger(__name__)

StreamOpener = Callable[[], AbstractAsyncContextManager[AsyncIterator[bytes]]]


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class StreamResult:
    state: StreamState
    content: str = ""
    error: str | None = None
    token_count: int = 0
    malformed_frames: int = 0
    timed_out: bool = False
    saw_sentinel: bool = False


def describe_error(exc: BaseException) -> str:
    """Human-readable message for *exc*, falling back to its class name."""
    return str(exc) or exc.__class__.__name__


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes:
    return await iterator.__anext__()


async def _discard(task: asyncio.Future) -> None:
    """Cancel *task* if still pending and wait for it to settle."""
    if not task.done():
        task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("[Stream] Dropped late read failure: %s", task.exception())


class StreamingEngine:
    def __init__(
        self,
        slot: StreamingSlot | None = None,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.slot = slot or StreamingSlot()
        self.idle_timeout = (
            settings.stream_idle_timeout if idle_timeout is None else idle_timeout
        )
        self._clock = clock
        self._lock = asyncio.Lock()
        self.state = StreamState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, message_id: str, open_stream: StreamOpener) -> StreamResult:
        """Open a stream with *open_stream* and ingest it into *message_id*.

        Never raises for transport problems or cancellation; the outcome is
        reported through :attr:`StreamResult.state`.
        """
        token = self.slot.claim(message_id)
        result = StreamResult(StreamState.CANCELLED)
        try:
            async with self._lock:
                if not token.cancelled:
                    result = await self._run_locked(message_id, open_stream, token)
        finally:
            self.slot.release(token, message_id, result.state.value, result.error)
        return result

    def cancel(self) -> bool:
        """Cancel the stream currently owning the slot, if any."""
        return self.slot.cancel()

    async def ingest(
        self,
        chunks: AsyncIterator[bytes],
        message_id: str,
        token: CancellationToken,
    ) -> StreamResult:
        """Read *chunks* until a terminal condition and return the outcome."""
        buffer = LineBuffer()
        parts: list[str] = []
        result = StreamResult(StreamState.STREAMING)
        last_activity = self._clock()
        iterator = chunks.__aiter__()
        cancel_wait = asyncio.ensure_future(token.wait())

        try:
            while True:
                timeout = None
                if result.token_count:
                    timeout = self.idle_timeout - (self._clock() - last_activity)
                    if timeout <= 0:
                        result.state = StreamState.COMPLETED
                        result.timed_out = True
                        break

                read = asyncio.ensure_future(_next_chunk(iterator))
                done, _ = await asyncio.wait(
                    {read, cancel_wait},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if cancel_wait in done:
                    await _discard(read)
                    result.state = StreamState.CANCELLED
                    break
                if read not in done:
                    await _discard(read)
                    result.state = StreamState.COMPLETED
                    result.timed_out = True
                    break

                try:
                    chunk = read.result()
                except StopAsyncIteration:
                    result.state = StreamState.COMPLETED
                    break
                except Exception as exc:  # noqa: BLE001 - any read failure is a transport failure
                    result.state = StreamState.ERRORED
                    result.error = describe_error(exc)
                    break

                for line in buffer.feed(chunk):
                    frame = parse_line(line)
                    if frame.kind is FrameKind.DONE:
                        result.saw_sentinel = True
                        break
                    if frame.kind is FrameKind.MALFORMED:
                        result.malformed_frames += 1
                        logger.debug("[Stream] Skipped malformed frame: %r", line)
                    elif frame.kind is FrameKind.TOKEN:
                        parts.append(frame.text)
                        result.token_count += 1
                        self.slot.append(token, frame.text)
                        last_activity = self._clock()

                if result.saw_sentinel:
                    result.state = StreamState.COMPLETED
                    break
        finally:
            await _discard(cancel_wait)

        result.content = "".join(parts)
        if result.timed_out:
            logger.info(
                "[Stream] %s idle for %.1fs, finalising with %d token(s)",
                message_id, self.idle_timeout, result.token_count,
            )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_locked(
        self,
        message_id: str,
        open_stream: StreamOpener,
        token: CancellationToken,
    ) -> StreamResult:
        self.state = StreamState.STREAMING
        logger.info("[Stream] %s started", message_id)
        try:
            async with open_stream() as chunks:
                result = await self.ingest(chunks, message_id, token)
        except Exception as exc:  # noqa: BLE001 - resolved into the ERRORED state
            result = StreamResult(StreamState.ERRORED, error=describe_error(exc))
        finally:
            self.state = StreamState.IDLE

        if result.state is StreamState.ERRORED:
            logger.warning("[Stream] %s failed: %s", message_id, result.error)
        else:
            logger.info(
                "[Stream] %s %s (%d token(s), %d malformed frame(s))",
                message_id, result.state.value, result.token_count, result.malformed_frames,
            )
        return result
