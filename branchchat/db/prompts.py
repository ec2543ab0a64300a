"""CRUD helpers for reusable system prompts."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Optional


@dataclass
class SystemPrompt:
    id: str
    title: str
    content: str


def _row_to_prompt(row: sqlite3.Row) -> SystemPrompt:
    return SystemPrompt(id=row["id"], title=row["title"], content=row["content"])


def create_prompt(
    conn: sqlite3.Connection,
    title: str,
    content: str,
    prompt_id: Optional[str] = None,
) -> SystemPrompt:
    """Store a new system prompt.

    Raises:
        ValueError: If *title* or *content* is blank.
    """
    if not title.strip() or not content.strip():
        raise ValueError("System prompt title and content must not be empty")
    pid = prompt_id or str(uuid.uuid4())
    with conn:
        conn.execute(
            "INSERT INTO system_prompts (id, title, content) VALUES (?, ?, ?)",
            (pid, title.strip(), content.strip()),
        )
    return get_prompt(conn, pid)  # type: ignore[return-value]


def get_prompt(conn: sqlite3.Connection, prompt_id: str) -> Optional[SystemPrompt]:
    row = conn.execute(
        "SELECT * FROM system_prompts WHERE id = ?", (prompt_id,)
    ).fetchone()
    return _row_to_prompt(row) if row else None


def list_prompts(conn: sqlite3.Connection) -> list[SystemPrompt]:
    rows = conn.execute("SELECT * FROM system_prompts ORDER BY title").fetchall()
    return [_row_to_prompt(row) for row in rows]


def delete_prompt(conn: sqlite3.Connection, prompt_id: str) -> None:
    with conn:
        conn.execute("DELETE FROM system_prompts WHERE id = ?", (prompt_id,))


def prompt_contents(conn: sqlite3.Connection) -> dict[str, str]:
    """``prompt id -> content`` lookup handed to chat sessions."""
    return {prompt.id: prompt.content for prompt in list_prompts(conn)}
