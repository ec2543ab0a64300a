"""Dataclass models for the conversation tree.

These are plain Python objects.  A conversation owns a flat pool of
:class:`MessageNode` objects addressed by id; the tree shape lives entirely in
``parent_id`` / ``child_ids`` references, never in nested objects.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from time import time

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLE_ROOT = "root"

MESSAGE_ROLES = (ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM)

# Model recorded on nodes the user wrote.
USER_MODEL = "user"


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MessageNode:
    id: str
    role: str
    content: str = ""
    timestamp: int = field(default_factory=now_ms)
    is_streaming: bool = False
    is_editing: bool = False
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    model: str = ""
    branch_index: int = 0

    @property
    def is_root(self) -> bool:
        return self.role == ROLE_ROOT

    def to_api_message(self) -> dict[str, str]:
        """Return the ``{"role", "content"}`` shape sent to completion APIs."""
        return {"role": self.role, "content": self.content}


@dataclass
class BranchInfo:
    """Sibling navigation data for one node."""

    total: int
    current_index: int
    has_previous: bool
    has_next: bool


@dataclass
class Conversation:
    id: str
    title: str
    nodes: dict[str, MessageNode]
    root_node_id: str
    active_branches: dict[str, int] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    is_generating_title: bool = False
    is_archived: bool = False
    model: str = ""
    system_prompt_id: str | None = None

    @property
    def root(self) -> MessageNode:
        return self.nodes[self.root_node_id]

    def touch(self) -> None:
        """Refresh ``updated_at``."""
        self.updated_at = now_ms()


def create_message_node(
    role: str,
    content: str,
    model: str,
    parent_id: str | None = None,
    *,
    is_streaming: bool = False,
) -> MessageNode:
    """Build a fresh, childless node with a new id.

    ``branch_index`` is assigned when the node is inserted into a pool.
    """
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid message role: {role!r}")
    return MessageNode(
        id=new_id(),
        role=role,
        content=content,
        model=model,
        parent_id=parent_id,
        is_streaming=is_streaming,
    )


def create_conversation(
    title: str = "New conversation",
    model: str = "",
    system_prompt_id: str | None = None,
    conversation_id: str | None = None,
) -> Conversation:
    """Return an empty conversation: a root anchor and no messages."""
    root = MessageNode(id=new_id(), role=ROLE_ROOT, model="")
    now = now_ms()
    return Conversation(
        id=conversation_id or new_id(),
        title=title,
        nodes={root.id: root},
        root_node_id=root.id,
        active_branches={},
        created_at=now,
        updated_at=now,
        model=model,
        system_prompt_id=system_prompt_id,
    )
