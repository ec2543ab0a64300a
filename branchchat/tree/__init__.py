"""Conversation tree package — node pool, branch selector, and mutators.

Public re-exports so callers can write::

    from branchchat.tree import ChatSession, Conversation, create_conversation
"""

from branchchat.tree.models import (
    BranchInfo,
    Conversation,
    MessageNode,
    create_conversation,
    create_message_node,
)
from branchchat.tree.session import ChatSession

__all__ = [
    "BranchInfo",
    "ChatSession",
    "Conversation",
    "MessageNode",
    "create_conversation",
    "create_message_node",
]
