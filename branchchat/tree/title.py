"""Conversation title generation helpers."""

from __future__ import annotations

import re
from typing import Sequence

from branchchat.providers.client import CompletionClient
from branchchat.tree.models import MessageNode

# How many visible messages are sampled into the title prompt.
TITLE_SAMPLE_SIZE = 4
TITLE_TEMPERATURE = 0.3
TITLE_MAX_TOKENS = 20

_STRIP_CHARS = re.compile(r"['\"*]")


def build_title_prompt(messages: Sequence[MessageNode]) -> list[dict[str, str]]:
    sample = "\n".join(
        f"{message.role}: {message.content}" for message in messages[:TITLE_SAMPLE_SIZE]
    )
    return [
        {
            "role": "user",
            "content": f"Generate a concise title (4-6 words) for this conversation:\n\n{sample}",
        }
    ]


def clean_title(raw: str) -> str:
    """Trim whitespace and drop quote / asterisk decoration."""
    return _STRIP_CHARS.sub("", raw.strip()).strip()


async def request_title(
    client: CompletionClient,
    messages: Sequence[MessageNode],
    model: str,
) -> str:
    """Ask *model* for a title; returns ``""`` if nothing usable came back."""
    raw = await client.complete(
        build_title_prompt(messages),
        model,
        temperature=TITLE_TEMPERATURE,
        max_tokens=TITLE_MAX_TOKENS,
    )
    return clean_title(raw)
