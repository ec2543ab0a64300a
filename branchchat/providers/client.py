"""Async HTTP client for OpenAI-compatible chat-completion endpoints.

Request shape (sent as the JSON body of ``POST {base_url}/chat/completions``)::

    {"messages": [{"role": "...", "content": "..."}],
     "model": "...", "stream": true, "temperature": 0.7, "max_tokens": 2048}

Regenerate calls append a ``rand`` query parameter so identical bodies are not
answered from an HTTP cache.  All ``httpx`` failures and non-2xx statuses are
raised as :class:`~branchchat.errors.TransportError`.
"""

from __future__ import annotations

import random
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from branchchat.config import settings
from branchchat.errors import TransportError
from branchchat.providers.registry import ProviderRegistry

NONCE_PARAM = "rand"
_BASE32_DIGITS = "0123456789abcdefghijklmnopqrstuv"


def make_nonce() -> str:
    """Millisecond timestamp followed by a random base-32 suffix."""
    value = random.getrandbits(50)
    suffix = ""
    while value:
        value, digit = divmod(value, 32)
        suffix = _BASE32_DIGITS[digit] + suffix
    return f"{int(time.time() * 1000)}{suffix or '0'}"


def build_url(base_url: str, nonce: str | None = None) -> str:
    url = httpx.URL(base_url.rstrip("/") + "/chat/completions")
    if nonce:
        url = url.copy_add_param(NONCE_PARAM, nonce)
    return str(url)


def build_request_body(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int,
    stream: bool,
) -> dict[str, Any]:
    return {
        "messages": messages,
        "model": model,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def _headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _status_error(response: httpx.Response, detail: str = "") -> TransportError:
    message = f"API Error: {response.status_code} {response.reason_phrase}"
    if detail:
        message = f"{message} - {detail}"
    return TransportError(message, status_code=response.status_code)


async def _iter_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        raise TransportError(str(exc) or exc.__class__.__name__) from exc


class CompletionClient:
    """Routes completion requests to the provider named by the model prefix.

    Args:
        registry: Providers available for resolution.
        timeout: Per-request timeout in seconds.  Defaults to
            ``settings.request_timeout``.
        transport: Optional ``httpx`` transport override (tests use
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.timeout = settings.request_timeout if timeout is None else timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @asynccontextmanager
    async def stream_chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        *,
        temperature: float,
        max_tokens: int,
        nonce: bool = False,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streaming completion and yield its raw body chunks.

        Raises:
            UnknownProvider: If *model* does not resolve (before any I/O).
            TransportError: On connection failure or a non-2xx status.
        """
        resolved = self.registry.resolve(model)
        url = build_url(resolved.provider.base_url, make_nonce() if nonce else None)
        body = build_request_body(messages, resolved.model, temperature, max_tokens, stream=True)

        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", url, json=body, headers=_headers(resolved.provider.api_key)
                ) as response:
                    if response.is_error:
                        raise _status_error(response)
                    yield _iter_bytes(response)
            except httpx.HTTPError as exc:
                raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def complete(
        self,
        messages: list[dict[str, str]],
        model: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """Run a single non-streaming completion and return its text.

        A response that is not JSON is returned verbatim.

        Raises:
            UnknownProvider: If *model* does not resolve (before any I/O).
            TransportError: On connection failure or a non-2xx status.
        """
        resolved = self.registry.resolve(model)
        url = build_url(resolved.provider.base_url)
        body = build_request_body(messages, resolved.model, temperature, max_tokens, stream=False)

        async with self._client() as client:
            try:
                response = await client.post(
                    url, json=body, headers=_headers(resolved.provider.api_key)
                )
            except httpx.HTTPError as exc:
                raise TransportError(str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            raise _status_error(response, response.text)

        try:
            data = response.json()
        except ValueError:
            return response.text
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            return ""
