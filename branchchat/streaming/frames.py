"""Line buffering and frame classification for SSE completion streams.

Wire format consumed::

    data: {"choices": [{"delta": {"content": "Hi"}}]}\\n
    data: [DONE]\\n

Lines without the ``data: `` marker are ignored.  Payloads that are not valid
JSON are classified as malformed and skipped by the caller; they never abort
a stream.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class FrameKind(str, Enum):
    IGNORED = "ignored"      # not a data line (comments, keep-alives, blanks)
    DONE = "done"            # completion sentinel
    TOKEN = "token"          # non-empty content delta
    EMPTY = "empty"          # valid JSON without usable content
    MALFORMED = "malformed"  # data line whose payload is not JSON


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    text: str = ""


def extract_delta(payload: Any) -> str:
    """Return ``choices[0].delta.content`` or ``""`` if the path is absent."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def parse_line(line: str) -> Frame:
    """Classify one complete line of the stream."""
    if not line.startswith(DATA_PREFIX):
        return Frame(FrameKind.IGNORED)

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return Frame(FrameKind.DONE)

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return Frame(FrameKind.MALFORMED)

    text = extract_delta(payload)
    if not text:
        return Frame(FrameKind.EMPTY)
    return Frame(FrameKind.TOKEN, text)


class LineBuffer:
    """Turn arbitrarily split byte chunks into complete text lines.

    Bytes are decoded incrementally, so a multi-byte UTF-8 character split
    across chunks is reassembled.  The trailing fragment after the last
    newline is held back until more bytes arrive.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        """The incomplete fragment waiting for its newline."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completed."""
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]
