"""Tree mutator tests: send, regenerate, edit, switch, titles.

Every scenario runs against the scripted provider from ``conftest`` and checks
the pool invariants after each operation.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from branchchat.db import conversations as conv_db
from branchchat.errors import UnknownProvider
from branchchat.providers.client import NONCE_PARAM
from branchchat.streaming.events import EVENT_FLASH
from branchchat.tree import ChatSession, create_conversation, create_message_node
from branchchat.tree import pool
from tests.conftest import (
    TEST_MODEL,
    FakeProvider,
    ScriptedStreams,
    body_stream,
    make_client,
    stalled_stream,
    wait_for,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _session(provider: FakeProvider, config, **kwargs) -> ChatSession:
    conv = create_conversation(model=TEST_MODEL)
    return ChatSession(conv, make_client(provider), config=config, **kwargs)


def _contents(session: ChatSession) -> list[str]:
    return [n.content for n in session.visible_path()]


def _assert_consistent(session: ChatSession) -> None:
    conv = session.conversation
    assert pool.check_invariants(conv.nodes, conv.active_branches, conv.root_node_id) == []
    assert not any(n.is_streaming for n in conv.nodes.values())


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestSendMessage:
    async def test_appends_user_turn_and_streamed_reply(self, provider, config) -> None:
        session = _session(provider, config)

        reply = await session.send_message("  Hello  ")

        assert _contents(session) == ["Hello", "Hi there"]
        assert reply.role == "assistant"
        assert reply.model == TEST_MODEL
        assert provider.bodies[0]["messages"] == [{"role": "user", "content": "Hello"}]
        _assert_consistent(session)

    async def test_blank_message_is_ignored(self, provider, config) -> None:
        session = _session(provider, config)

        assert await session.send_message("   ") is None
        assert len(session.conversation.nodes) == 1
        assert provider.requests == []

    async def test_history_covers_the_visible_path(self, config) -> None:
        provider = FakeProvider(replies=[["One"], ["Two"]])
        session = _session(provider, config)

        await session.send_message("first")
        await session.send_message("second")

        assert provider.bodies[-1]["messages"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "One"},
            {"role": "user", "content": "second"},
        ]
        _assert_consistent(session)

    async def test_unknown_provider_leaves_pool_untouched(self, provider, config) -> None:
        session = _session(provider, config)
        session.conversation.model = "Nope: x"

        with pytest.raises(UnknownProvider):
            await session.send_message("Hello")

        assert len(session.conversation.nodes) == 1
        assert provider.requests == []

    async def test_transport_error_is_written_into_the_reply(self, config) -> None:
        provider = FakeProvider(replies=[httpx.Response(500, text="boom")])
        session = _session(provider, config)

        reply = await session.send_message("Hello")

        assert reply.content == "Error: API Error: 500 Internal Server Error"
        assert not reply.is_streaming
        _assert_consistent(session)

    async def test_system_prompt_is_prepended_but_not_stored(self, provider, config) -> None:
        session = _session(provider, config, system_prompts={"p1": "Be brief."})
        session.conversation.system_prompt_id = "p1"

        await session.send_message("Hello")

        assert provider.bodies[0]["messages"][0] == {"role": "system", "content": "Be brief."}
        assert [n.role for n in session.visible_path()] == ["user", "assistant"]

    async def test_on_change_sees_every_mutation(self, provider, config) -> None:
        snapshots: list[int] = []
        session = _session(provider, config, on_change=lambda c: snapshots.append(len(c.nodes)))

        await session.send_message("Hello")

        assert snapshots[:2] == [2, 3]


class TestRegenerate:
    async def test_adds_sibling_and_switching_back_restores(self, config) -> None:
        provider = FakeProvider(replies=[["Hi", " there"], ["Hello", " again"]])
        session = _session(provider, config)
        first = await session.send_message("Hello")
        user_id = first.parent_id

        second = await session.regenerate(first.id)

        conv = session.conversation
        assert conv.nodes[user_id].child_ids == [first.id, second.id]
        assert conv.active_branches[user_id] == 1
        assert _contents(session) == ["Hello", "Hello again"]
        assert first.content == "Hi there"
        _assert_consistent(session)

        assert session.switch_branch(second.id, 0) == first.id
        assert _contents(session) == ["Hello", "Hi there"]
        _assert_consistent(session)

    async def test_request_carries_nonce_and_prior_history(self, config) -> None:
        provider = FakeProvider(replies=[["A"], ["B"]])
        session = _session(provider, config)
        first = await session.send_message("Hello")

        await session.regenerate(first.id)

        last = provider.stream_requests[-1]
        assert last.url.params[NONCE_PARAM]
        assert provider.bodies[-1]["messages"] == [{"role": "user", "content": "Hello"}]

    async def test_non_assistant_or_hidden_nodes_are_ignored(self, config) -> None:
        provider = FakeProvider(replies=[["A"], ["B"]])
        session = _session(provider, config)
        first = await session.send_message("Hello")
        await session.regenerate(first.id)
        requests = len(provider.requests)

        assert await session.regenerate(first.parent_id) is None
        assert await session.regenerate(first.id) is None  # no longer visible
        assert await session.regenerate("missing") is None
        assert len(provider.requests) == requests

    async def test_branch_info_reflects_siblings(self, config) -> None:
        provider = FakeProvider(replies=[["A"], ["B"], ["C"]])
        session = _session(provider, config)
        first = await session.send_message("Hello")
        await session.regenerate(first.id)
        third = await session.regenerate(session.visible_path()[-1].id)

        info = session.branch_info(third.id)
        assert (info.total, info.current_index, info.has_next) == (3, 2, False)


class TestEditMessage:
    async def test_edit_creates_branch_with_fresh_reply(self, config) -> None:
        provider = FakeProvider(replies=[["Hi there"], ["Hey"]])
        session = _session(provider, config)
        reply = await session.send_message("Hello")
        original = session.conversation.nodes[reply.parent_id]

        edited = await session.edit_message(original.id, "Hi")

        conv = session.conversation
        assert conv.root.child_ids == [original.id, edited.id]
        assert conv.active_branches[conv.root_node_id] == 1
        assert _contents(session) == ["Hi", "Hey"]
        assert original.child_ids == [reply.id]
        assert provider.bodies[-1]["messages"] == [{"role": "user", "content": "Hi"}]
        _assert_consistent(session)

    async def test_unchanged_or_blank_edit_is_a_noop(self, provider, config) -> None:
        session = _session(provider, config)
        reply = await session.send_message("Hello")

        assert await session.edit_message(reply.parent_id, "Hello") is None
        assert await session.edit_message(reply.parent_id, "  ") is None
        assert await session.edit_message(reply.id, "assistant text") is None
        assert len(session.conversation.root.child_ids) == 1


class TestGenerateAssistantResponse:
    async def test_answers_trailing_user_turn(self, provider, config) -> None:
        session = _session(provider, config)
        conv = session.conversation
        user = create_message_node("user", "Hello", "user")
        pool.insert_child(conv.nodes, conv.active_branches, conv.root_node_id, user)

        reply = await session.generate_assistant_response()

        assert reply.parent_id == user.id
        assert _contents(session) == ["Hello", "Hi there"]
        _assert_consistent(session)

    async def test_noop_when_tail_is_not_user(self, provider, config) -> None:
        session = _session(provider, config)
        await session.send_message("Hello")
        assert await session.generate_assistant_response() is None


class TestSwitchBranch:
    async def test_publishes_flash_for_selected_leaf(self, config) -> None:
        provider = FakeProvider(replies=[["A"], ["B"]])
        session = _session(provider, config)
        first = await session.send_message("Hello")
        second = await session.regenerate(first.id)
        queue = session.events.subscribe()

        flash = session.switch_branch(second.id, 0)

        event = queue.get_nowait()
        assert event.event == EVENT_FLASH
        assert event.message_id == flash == first.id

    async def test_out_of_range_index_changes_nothing(self, provider, config) -> None:
        session = _session(provider, config)
        reply = await session.send_message("Hello")
        before = dict(session.conversation.active_branches)

        assert session.switch_branch(reply.id, 4) is None
        assert session.conversation.active_branches == before


class TestTitles:
    async def test_title_generated_after_first_exchange(self, provider, config) -> None:
        session = _session(provider, config)

        await session.send_message("Hello")

        assert session.conversation.title == "Greeting Chat"
        assert not session.conversation.is_generating_title
        body = provider.bodies[-1]
        assert (body["stream"], body["temperature"], body["max_tokens"]) == (False, 0.3, 20)
        assert body["messages"][0]["content"].startswith(
            "Generate a concise title (4-6 words) for this conversation:"
        )

    async def test_title_only_triggers_at_exact_length(self, provider, config) -> None:
        session = _session(provider, config)
        await session.send_message("Hello")
        await session.send_message("More")
        assert len(provider.title_requests) == 1

    async def test_title_failure_is_silent(self, config) -> None:
        provider = FakeProvider(title=None)
        session = _session(provider, config)

        reply = await session.send_message("Hello")

        assert reply.content == "Hi there"
        assert session.conversation.title == "New conversation"
        assert not session.conversation.is_generating_title

    async def test_disabled_auto_title(self, provider, config) -> None:
        config.auto_generate_title = False
        session = _session(provider, config)
        await session.send_message("Hello")
        assert provider.title_requests == []


class TestConcurrentStreams:
    async def test_new_send_supersedes_the_running_one(self, provider, config) -> None:
        gate = asyncio.Event()
        session = _session(provider, config)
        session.client.stream_chat = ScriptedStreams(
            stalled_stream("Par", gate), body_stream("Fresh")
        )

        first = asyncio.create_task(session.send_message("Hello"))
        await wait_for(lambda: session.slot.content == "Par")
        second = await session.send_message("Again")
        superseded = await first
        gate.set()

        assert superseded.content == "Par"
        assert not superseded.is_streaming
        assert "Error" not in superseded.content
        assert second.content == "Fresh"
        _assert_consistent(session)

    async def test_regenerate_supersedes_the_running_send(self, provider, config) -> None:
        gate = asyncio.Event()
        session = _session(provider, config)
        session.client.stream_chat = ScriptedStreams(
            stalled_stream("Half", gate), body_stream("Redo")
        )

        first = asyncio.create_task(session.send_message("Hello"))
        await wait_for(lambda: session.slot.content == "Half")
        placeholder = session.visible_path()[-1]
        sibling = await session.regenerate(placeholder.id)
        await first
        gate.set()

        assert placeholder.content == "Half"
        assert not placeholder.is_streaming
        assert sibling.content == "Redo"
        assert _contents(session) == ["Hello", "Redo"]
        _assert_consistent(session)


class TestClose:
    async def test_closed_session_stops_persisting_and_titling(
        self, conn, provider, config
    ) -> None:
        gate = asyncio.Event()
        conv = conv_db.create_conversation(conn, model=TEST_MODEL)
        session = ChatSession(
            conv,
            make_client(provider),
            config=config,
            on_change=lambda c: conv_db.save_conversation(conn, c),
        )
        session.client.stream_chat = ScriptedStreams(stalled_stream("partial", gate))

        task = asyncio.create_task(session.send_message("Hello"))
        await wait_for(lambda: session.slot.content == "partial")
        session.close()
        conv_db.delete_conversation(conn, conv.id)
        reply = await task
        gate.set()

        assert conv_db.get_conversation(conn, conv.id) is None
        assert reply.content == "partial"
        assert not reply.is_streaming
        assert provider.title_requests == []
        assert await session.generate_title() is False
