"""Tree mutators: the operations a UI performs on one conversation.

``ChatSession`` binds a :class:`~branchchat.tree.models.Conversation` to a
completion client, a streaming engine and an event channel.  The mutators
keep the node pool and the active branch map consistent; the engine folds the
streamed reply into the placeholder node they create.

Failure policy
--------------
- Ids that are missing, or that name a node of the wrong role, make the
  mutator a no-op returning ``None``.
- :class:`~branchchat.errors.UnknownProvider` propagates to the caller and is
  raised before the pool is touched or any request is sent.
- Transport failures are written into the affected node's content; nothing
  else escapes.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from branchchat.config import Settings, settings as default_settings
from branchchat.providers.client import CompletionClient
from branchchat.providers.registry import ResolvedModel
from branchchat.streaming.engine import StreamingEngine, StreamResult, StreamState
from branchchat.streaming.events import EVENT_FLASH, EVENT_TITLE, ChatEvent, EventChannel
from branchchat.streaming.slot import StreamingSlot
from branchchat.tree import pool
from branchchat.tree.models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    USER_MODEL,
    BranchInfo,
    Conversation,
    MessageNode,
    create_message_node,
    now_ms,
)
from branchchat.tree.title import request_title

logger = logging.getLogger(__name__)


class ChatSession:
    """Mutators and streaming state for a single conversation.

    Args:
        conversation: The conversation to operate on (mutated in place).
        client: Completion client used for streaming and titles.
        config: Settings override; defaults to the module singleton.
        system_prompts: ``prompt id -> content`` lookup for system prompts.
        on_change: Called with the conversation after every mutation, e.g.
            to persist it.
        idle_timeout: Override for ``config.stream_idle_timeout``.
    """

    def __init__(
        self,
        conversation: Conversation,
        client: CompletionClient,
        *,
        config: Settings | None = None,
        system_prompts: Mapping[str, str] | None = None,
        on_change: Callable[[Conversation], None] | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        self.conversation = conversation
        self.client = client
        self.config = config or default_settings
        self.system_prompts = dict(system_prompts or {})
        self.on_change = on_change
        self.closed = False
        self.events = EventChannel()
        self.slot = StreamingSlot(self.events)
        self.engine = StreamingEngine(
            self.slot,
            idle_timeout=(
                self.config.stream_idle_timeout if idle_timeout is None else idle_timeout
            ),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self.conversation.model or self.config.chat_model

    @property
    def is_streaming(self) -> bool:
        return self.slot.is_streaming

    def resolve_model(self) -> ResolvedModel:
        """Resolve the conversation's model.  Raises ``UnknownProvider``."""
        return self.client.registry.resolve(self.model)

    def visible_path(self) -> list[MessageNode]:
        conv = self.conversation
        return pool.visible_path(conv.nodes, conv.active_branches, conv.root_node_id)

    def branch_info(self, message_id: str) -> BranchInfo | None:
        conv = self.conversation
        return pool.branch_info(conv.nodes, conv.root_node_id, message_id)

    def get_node(self, message_id: str) -> MessageNode | None:
        return self.conversation.nodes.get(message_id)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def send_message(self, content: str) -> MessageNode | None:
        """Append a user turn to the visible path and stream the reply.

        Returns the finalised assistant node, or ``None`` for blank input.
        """
        text = content.strip()
        if not text:
            return None
        self.resolve_model()

        conv = self.conversation
        parent_id = pool.tail_id(conv.nodes, conv.active_branches, conv.root_node_id)
        user = create_message_node(ROLE_USER, text, USER_MODEL)
        self._insert(parent_id, user)
        assistant = self._insert_placeholder(user.id)

        await self._stream_into(assistant, pool.lineage(conv.nodes, user.id))
        await self._maybe_generate_title()
        return assistant

    async def generate_assistant_response(self) -> MessageNode | None:
        """Stream a reply under the visible tail if it is a user turn."""
        path = self.visible_path()
        if not path or path[-1].role != ROLE_USER:
            return None
        self.resolve_model()

        assistant = self._insert_placeholder(path[-1].id)
        await self._stream_into(assistant, path)
        return assistant

    async def regenerate(self, message_id: str) -> MessageNode | None:
        """Stream a new sibling for a visible assistant node.

        The old node keeps its content and stays reachable as an inactive
        branch.  The request carries a cache-busting nonce.
        """
        conv = self.conversation
        node = conv.nodes.get(message_id)
        if node is None or node.role != ROLE_ASSISTANT:
            return None
        path = self.visible_path()
        ids = [n.id for n in path]
        if message_id not in ids:
            return None
        self.resolve_model()

        history = path[: ids.index(message_id)]
        sibling = self._insert_placeholder(pool.parent_key(node, conv.root_node_id))
        await self._stream_into(sibling, history, nonce=True)
        return sibling

    async def edit_message(self, message_id: str, new_content: str) -> MessageNode | None:
        """Branch a user or system turn with *new_content*.

        The new sibling starts without children; the old continuation stays
        attached to the original node.  Editing a user turn streams a fresh
        reply under the new sibling.
        """
        conv = self.conversation
        node = conv.nodes.get(message_id)
        if node is None or node.role not in (ROLE_USER, ROLE_SYSTEM):
            return None
        text = new_content.strip()
        if not text or text == node.content:
            return None
        if node.role == ROLE_USER:
            self.resolve_model()

        sibling = create_message_node(node.role, text, node.model)
        self._insert(pool.parent_key(node, conv.root_node_id), sibling)

        if sibling.role == ROLE_USER:
            assistant = self._insert_placeholder(sibling.id)
            await self._stream_into(assistant, pool.lineage(conv.nodes, sibling.id))
        return sibling

    def switch_branch(self, message_id: str, index: int) -> str | None:
        """Make sibling *index* of *message_id* active.

        Returns the id of the leaf reached by following first children from
        the newly selected sibling (published as a ``flash`` event), or
        ``None`` if nothing changed.
        """
        conv = self.conversation
        node = conv.nodes.get(message_id)
        if node is None or node.is_root:
            return None
        target = pool.branch_target(conv.nodes, conv.root_node_id, message_id, index)
        if target is None:
            return None

        pool.switch_branch(
            conv.nodes, conv.active_branches, pool.parent_key(node, conv.root_node_id), index
        )
        flash = pool.default_leaf(conv.nodes, target)
        self.events.publish(ChatEvent(EVENT_FLASH, message_id=flash))
        self._changed(touch=False)
        return flash

    def cancel(self) -> bool:
        """Stop the active stream; its node keeps what arrived so far."""
        return self.engine.cancel()

    def close(self) -> None:
        """Detach from storage once the conversation is deleted or replaced.

        Cancels any running stream.  The in-flight mutator still finalises its
        node in memory, but nothing is persisted and no title is requested.
        """
        self.closed = True
        self.on_change = None
        self.engine.cancel()

    async def generate_title(self) -> bool:
        """Replace the title with a generated one.

        Skipped while another title request is running or before the first
        exchange.  Failures are logged and leave the title unchanged.
        """
        conv = self.conversation
        path = self.visible_path()
        if self.closed or len(path) < 2 or conv.is_generating_title:
            return False

        conv.is_generating_title = True
        self._changed(touch=False)
        title = ""
        try:
            title = await request_title(self.client, path, self.config.title_model)
        except Exception as exc:  # noqa: BLE001 - never surfaced beyond the log
            logger.warning("[Title] Generation failed for %s: %s", conv.id, exc)
        finally:
            conv.is_generating_title = False

        if title:
            conv.title = title
            self.events.publish(ChatEvent(EVENT_TITLE, text=title))
        self._changed(touch=False)
        return bool(title)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _insert(self, parent_id: str, node: MessageNode) -> None:
        conv = self.conversation
        pool.insert_child(conv.nodes, conv.active_branches, parent_id, node)
        self._changed()

    def _insert_placeholder(self, parent_id: str) -> MessageNode:
        node = create_message_node(ROLE_ASSISTANT, "", self.model, is_streaming=True)
        self._insert(parent_id, node)
        return node

    def _api_messages(self, history: list[MessageNode]) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        prompt_id = self.conversation.system_prompt_id or self.config.default_system_prompt_id
        if prompt_id and prompt_id in self.system_prompts:
            messages.append({"role": ROLE_SYSTEM, "content": self.system_prompts[prompt_id]})
        messages.extend(node.to_api_message() for node in history)
        return messages

    async def _stream_into(
        self,
        node: MessageNode,
        history: list[MessageNode],
        nonce: bool = False,
    ) -> StreamResult:
        messages = self._api_messages(history)
        model = node.model or self.model
        result = await self.engine.run(
            node.id,
            lambda: self.client.stream_chat(
                messages,
                model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                nonce=nonce,
            ),
        )
        self._finalize(node.id, result)
        return result

    def _finalize(self, node_id: str, result: StreamResult) -> None:
        content = result.content
        if result.state is StreamState.ERRORED:
            marker = f"Error: {result.error}"
            content = f"{content}\n\n{marker}" if content else marker
        pool.update_node(
            self.conversation.nodes,
            node_id,
            content=content,
            timestamp=now_ms(),
            is_streaming=False,
        )
        self._changed()

    async def _maybe_generate_title(self) -> None:
        if self.closed or not self.config.auto_generate_title:
            return
        if len(self.visible_path()) == self.config.title_generation_trigger:
            await self.generate_title()

    def _changed(self, touch: bool = True) -> None:
        if touch:
            self.conversation.touch()
        if self.on_change is not None:
            self.on_change(self.conversation)
