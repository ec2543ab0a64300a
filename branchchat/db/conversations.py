"""CRUD helpers for the ``conversations`` table.

Each row holds one whole conversation: metadata columns plus the node pool and
the active branch map serialised as JSON ``[key, value]`` pair arrays (see
:mod:`branchchat.db.serialization`).  A conversation is always written in full,
so a reader never observes a pool from one mutation and a branch map from
another.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable, Optional

from branchchat.config import settings
from branchchat.db.serialization import (
    conversation_from_dict,
    dict_to_entries,
    export_store,
    import_store,
    node_to_dict,
)
from branchchat.tree.models import Conversation, create_conversation as new_conversation


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    data: dict[str, Any] = {
        "id": row["id"],
        "title": row["title"],
        "root_node_id": row["root_node_id"],
        "model": row["model"],
        "system_prompt_id": row["system_prompt_id"],
        "is_archived": bool(row["is_archived"]),
        "nodes": json.loads(row["nodes"] or "[]"),
        "active_branches": json.loads(row["active_branches"] or "[]"),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    return conversation_from_dict(data, default_model=settings.chat_model)


def _require(conn: sqlite3.Connection, conv_id: str) -> Conversation:
    conv = get_conversation(conn, conv_id)
    if conv is None:
        raise ValueError(f"Conversation not found: {conv_id!r}")
    return conv


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def create_conversation(
    conn: sqlite3.Connection,
    title: str = "New conversation",
    model: Optional[str] = None,
    system_prompt_id: Optional[str] = None,
) -> Conversation:
    """Create and persist an empty conversation.

    Args:
        conn: Open DB connection.
        title: Human-readable conversation title.
        model: ``"Provider: model"`` id; defaults to ``settings.chat_model``.
        system_prompt_id: Optional system prompt applied to every request.

    Returns:
        The new :class:`~branchchat.tree.models.Conversation`.
    """
    conv = new_conversation(
        title=title,
        model=model or settings.chat_model,
        system_prompt_id=system_prompt_id,
    )
    save_conversation(conn, conv)
    return conv


def save_conversation(conn: sqlite3.Connection, conv: Conversation) -> None:
    """Insert or fully replace *conv*."""
    nodes_json = json.dumps(
        [[node_id, node_to_dict(node)] for node_id, node in conv.nodes.items()]
    )
    branches_json = json.dumps(dict_to_entries(conv.active_branches))

    with conn:
        conn.execute(
            """
            INSERT INTO conversations (
                id, title, root_node_id, model, system_prompt_id, is_archived,
                is_generating_title, nodes, active_branches, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title               = excluded.title,
                root_node_id        = excluded.root_node_id,
                model               = excluded.model,
                system_prompt_id    = excluded.system_prompt_id,
                is_archived         = excluded.is_archived,
                is_generating_title = excluded.is_generating_title,
                nodes               = excluded.nodes,
                active_branches     = excluded.active_branches,
                updated_at          = excluded.updated_at
            """,
            (
                conv.id,
                conv.title,
                conv.root_node_id,
                conv.model,
                conv.system_prompt_id,
                int(conv.is_archived),
                int(conv.is_generating_title),
                nodes_json,
                branches_json,
                conv.created_at,
                conv.updated_at,
            ),
        )


def get_conversation(conn: sqlite3.Connection, conv_id: str) -> Conversation | None:
    """Fetch a single conversation by *conv_id*.  Returns ``None`` if not found."""
    row = conn.execute(
        "SELECT * FROM conversations WHERE id = ?", (conv_id,)
    ).fetchone()
    return _row_to_conversation(row) if row else None


def list_conversations(
    conn: sqlite3.Connection,
    archived: bool = False,
) -> list[Conversation]:
    """Return active (or archived) conversations, most recently updated first."""
    rows = conn.execute(
        """
        SELECT * FROM conversations
        WHERE  is_archived = ?
        ORDER  BY updated_at DESC
        """,
        (int(archived),),
    ).fetchall()
    return [_row_to_conversation(row) for row in rows]


def rename_conversation(conn: sqlite3.Connection, conv_id: str, title: str) -> Conversation:
    """Set a new title.

    Raises:
        ValueError: If *conv_id* does not exist or *title* is blank.
    """
    title = title.strip()
    if not title:
        raise ValueError("Title must not be empty")
    conv = _require(conn, conv_id)
    conv.title = title
    conv.touch()
    save_conversation(conn, conv)
    return conv


def set_archived(conn: sqlite3.Connection, conv_id: str, archived: bool = True) -> Conversation:
    """Archive or restore a conversation.

    Raises:
        ValueError: If *conv_id* does not exist.
    """
    conv = _require(conn, conv_id)
    conv.is_archived = archived
    conv.touch()
    save_conversation(conn, conv)
    return conv


def delete_conversation(conn: sqlite3.Connection, conv_id: str) -> None:
    """Delete a conversation.

    This is a no-op if *conv_id* does not exist.
    """
    with conn:
        conn.execute("DELETE FROM conversations WHERE id = ?", (conv_id,))


def export_conversations(conn: sqlite3.Connection, pretty: bool = True) -> str:
    """Serialise every conversation, active and archived, to a JSON string."""
    conversations = list_conversations(conn) + list_conversations(conn, archived=True)
    return export_store(conversations, pretty=pretty)


def import_conversations(conn: sqlite3.Connection, text: str) -> list[Conversation]:
    """Load conversations from an export and upsert them.

    The whole payload is validated before anything is written.

    Raises:
        ValueError: On invalid JSON or a corrupt conversation.
    """
    conversations = import_store(text, default_model=settings.chat_model)
    save_all(conn, conversations)
    return conversations


def save_all(conn: sqlite3.Connection, conversations: Iterable[Conversation]) -> None:
    for conv in conversations:
        save_conversation(conn, conv)
