"""Shared fixtures: in-memory SQLite and a scripted completion endpoint.

``FakeProvider`` is an ``httpx.MockTransport`` handler that speaks just enough
of the OpenAI chat-completions protocol for the client: streamed requests get
an SSE body built from the next scripted reply, non-streamed ones get a JSON
title response.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator, Generator, Iterable, Union

import httpx
import pytest

from branchchat.config import Settings, settings
from branchchat.db.connection import get_connection
from branchchat.db.migrations import init_db
from branchchat.providers import CompletionClient, ProviderConfig, ProviderRegistry

TEST_MODEL = "Test: m1"
TEST_BASE_URL = "https://llm.test/v1"

Reply = Union[Iterable[str], httpx.Response]


def sse_token(text: str) -> str:
    return f"data: {json.dumps({'choices': [{'delta': {'content': text}}]})}\n\n"


def sse_body(*tokens: str, done: bool = True) -> bytes:
    body = "".join(sse_token(t) for t in tokens)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


class FakeProvider:
    def __init__(self, replies: list[Reply] | None = None, title: str | None = "Greeting Chat"):
        self.replies = list(replies or [])
        self.title = title
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)
        if body.get("stream"):
            reply = self.replies.pop(0) if self.replies else ["Hi", " there"]
            if isinstance(reply, httpx.Response):
                return reply
            return httpx.Response(
                200,
                content=sse_body(*reply),
                headers={"content-type": "text/event-stream"},
            )
        if self.title is None:
            return httpx.Response(500, text="title service down")
        return httpx.Response(
            200, json={"choices": [{"message": {"content": f'"{self.title}"'}}]}
        )

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    @property
    def stream_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if json.loads(r.content)["stream"]]

    @property
    def title_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if not json.loads(r.content)["stream"]]


def make_registry() -> ProviderRegistry:
    return ProviderRegistry(
        [ProviderConfig("Test", TEST_BASE_URL, "sk-test", ["m1", "m2"], is_default=True)]
    )


def make_client(provider: FakeProvider) -> CompletionClient:
    return CompletionClient(make_registry(), timeout=5.0, transport=httpx.MockTransport(provider))


async def stalled_stream(text: str, gate: asyncio.Event) -> AsyncIterator[bytes]:
    """Emit one token, then hold the connection open until *gate* is set."""
    yield sse_token(text).encode()
    await gate.wait()


async def body_stream(*tokens: str) -> AsyncIterator[bytes]:
    yield sse_body(*tokens)


class ScriptedStreams:
    """Stand-in for ``CompletionClient.stream_chat`` serving queued bodies."""

    def __init__(self, *streams: AsyncIterator[bytes]) -> None:
        self.streams = list(streams)
        self.calls: list[list[dict]] = []

    @asynccontextmanager
    async def __call__(self, messages, model, **kwargs) -> AsyncIterator[AsyncIterator[bytes]]:
        self.calls.append(messages)
        yield self.streams.pop(0)


async def wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def conn() -> Generator[sqlite3.Connection, None, None]:
    """In-memory connection with schema initialised."""
    connection = get_connection(db_path=":memory:")  # type: ignore[arg-type]
    init_db(connection)
    yield connection
    connection.close()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def config() -> Settings:
    """Settings copy routed at the fake provider."""
    return dataclasses.replace(
        settings,
        chat_model=TEST_MODEL,
        title_model=TEST_MODEL,
        auto_generate_title=True,
        title_generation_trigger=2,
        default_system_prompt_id=None,
        stream_idle_timeout=8.0,
    )
