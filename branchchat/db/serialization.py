"""Lossless (de)serialisation of conversations.

Maps are written as ordered ``[key, value]`` pair arrays so that storage
formats without native map support keep insertion order.  Loading accepts
either pair arrays or plain JSON objects, and both snake_case and the
camelCase field names used by older exports.

Loading also migrates older data:

- pools saved without a root anchor get one, with top-level nodes
  (``parent_id`` null) ordered by their stored ``branch_index``;
- ``branch_index`` is always re-derived from the parent's ``child_ids``;
- active-branch entries pointing out of range are dropped.

Transient flags (``is_streaming``, ``is_editing``, ``is_generating_title``)
are reset on load.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, Iterable, Mapping

from branchchat.tree.models import (
    ROLE_ROOT,
    Conversation,
    MessageNode,
    new_id,
    now_ms,
)
from branchchat.tree.pool import check_invariants

STORE_VERSION = 1


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _get(data: Mapping[str, Any], key: str, legacy_key: str, default: Any = None) -> Any:
    if key in data:
        return data[key]
    return data.get(legacy_key, default)


def entries_to_dict(data: Any) -> dict[str, Any]:
    """Accept ``[[k, v], ...]``, a mapping, or ``None`` and return a dict."""
    if data is None:
        return {}
    if isinstance(data, Mapping):
        return dict(data)
    return {key: value for key, value in data}


def dict_to_entries(data: Mapping[str, Any]) -> list[list[Any]]:
    return [[key, value] for key, value in data.items()]


def _synthesise_root(nodes: dict[str, MessageNode], root_id: str) -> None:
    top_level = [node for node in nodes.values() if node.parent_id is None]
    top_level.sort(key=lambda node: node.branch_index)
    nodes[root_id] = MessageNode(
        id=root_id,
        role=ROLE_ROOT,
        child_ids=[node.id for node in top_level],
    )


def _rederive_branch_indices(nodes: dict[str, MessageNode]) -> None:
    for parent in nodes.values():
        for index, child_id in enumerate(parent.child_ids):
            child = nodes.get(child_id)
            if child is not None:
                child.branch_index = index


def _drop_invalid_branches(
    nodes: dict[str, MessageNode], active_branches: dict[str, int]
) -> dict[str, int]:
    valid: dict[str, int] = {}
    for parent_id, index in active_branches.items():
        parent = nodes.get(parent_id)
        if parent is not None and 0 <= index < len(parent.child_ids):
            valid[parent_id] = index
    return valid


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

def node_to_dict(node: MessageNode) -> dict[str, Any]:
    return asdict(node)


def node_from_dict(data: Mapping[str, Any]) -> MessageNode:
    return MessageNode(
        id=data["id"],
        role=data["role"],
        content=data.get("content") or "",
        timestamp=int(data.get("timestamp") or now_ms()),
        is_streaming=False,
        is_editing=False,
        parent_id=_get(data, "parent_id", "parentId"),
        child_ids=list(_get(data, "child_ids", "childIds") or []),
        model=data.get("model") or "",
        branch_index=int(_get(data, "branch_index", "branchIndex", 0) or 0),
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def conversation_to_dict(conv: Conversation) -> dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "nodes": [[node_id, node_to_dict(node)] for node_id, node in conv.nodes.items()],
        "root_node_id": conv.root_node_id,
        "active_branches": dict_to_entries(conv.active_branches),
        "created_at": conv.created_at,
        "updated_at": conv.updated_at,
        "is_generating_title": conv.is_generating_title,
        "is_archived": conv.is_archived,
        "model": conv.model,
        "system_prompt_id": conv.system_prompt_id,
    }


def conversation_from_dict(data: Mapping[str, Any], default_model: str = "") -> Conversation:
    """Rebuild a conversation, migrating older layouts.

    Raises:
        ValueError: If the stored pool is structurally inconsistent.
    """
    conv_id = data["id"]
    nodes: dict[str, MessageNode] = {}
    for key, value in entries_to_dict(data.get("nodes")).items():
        node = node_from_dict(value)
        if node.id != key:
            raise ValueError(f"Conversation {conv_id!r}: node key {key!r} != id {node.id!r}")
        nodes[node.id] = node

    root_id = _get(data, "root_node_id", "rootNodeId") or new_id()
    if root_id not in nodes:
        _synthesise_root(nodes, root_id)
    _rederive_branch_indices(nodes)

    raw_branches = entries_to_dict(_get(data, "active_branches", "activeBranches"))
    active_branches = _drop_invalid_branches(
        nodes, {key: int(value) for key, value in raw_branches.items()}
    )

    problems = check_invariants(nodes, active_branches, root_id)
    if problems:
        raise ValueError(f"Conversation {conv_id!r} is corrupt: {'; '.join(problems[:3])}")

    created_at = int(_get(data, "created_at", "createdAt") or now_ms())
    return Conversation(
        id=conv_id,
        title=data.get("title") or "New conversation",
        nodes=nodes,
        root_node_id=root_id,
        active_branches=active_branches,
        created_at=created_at,
        updated_at=int(_get(data, "updated_at", "updatedAt") or created_at),
        is_generating_title=False,
        is_archived=bool(_get(data, "is_archived", "isArchived", False)),
        model=data.get("model") or default_model,
        system_prompt_id=_get(data, "system_prompt_id", "systemPromptId"),
    )


# ---------------------------------------------------------------------------
# Whole-store export / import
# ---------------------------------------------------------------------------

def export_store(conversations: Iterable[Conversation], pretty: bool = False) -> str:
    payload = {
        "version": STORE_VERSION,
        "conversations": [[conv.id, conversation_to_dict(conv)] for conv in conversations],
    }
    return json.dumps(payload, indent=2 if pretty else None)


def import_store(text: str, default_model: str = "") -> list[Conversation]:
    """Parse an export produced by :func:`export_store` (or an older one).

    Raises:
        ValueError: On invalid JSON or a corrupt conversation.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON data or corrupted state file") from exc
    if not isinstance(data, dict):
        raise ValueError("Invalid JSON data or corrupted state file")

    raw = entries_to_dict(data.get("conversations", data.get("chats")))
    return [conversation_from_dict(value, default_model) for value in raw.values()]
