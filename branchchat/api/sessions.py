"""Per-conversation :class:`ChatSession` cache shared by the routers.

Sessions live in ``app.state.sessions`` (``conversation id -> ChatSession``)
so that a stream started by one request can be cancelled or observed by
another.  Every session persists its conversation through ``on_change``.
The cache keeps at most ``settings.session_cache_size`` entries; the least
recently used idle sessions are evicted first.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from branchchat.config import settings
from branchchat.db.conversations import get_conversation, save_conversation
from branchchat.db.prompts import prompt_contents
from branchchat.tree import ChatSession


def _evict_idle(sessions: dict[str, ChatSession], keep: str) -> None:
    """Forget idle sessions, oldest first, until the cache fits."""
    for conv_id in list(sessions):
        if len(sessions) <= settings.session_cache_size:
            return
        session = sessions[conv_id]
        if conv_id == keep or session.is_streaming or session.conversation.is_generating_title:
            continue
        del sessions[conv_id]


def get_session(request: Request, conv_id: str) -> ChatSession:
    """Return the cached session for *conv_id*, loading it on first use.

    Raises:
        HTTPException: 404 if the conversation does not exist.
    """
    sessions: dict[str, ChatSession] = request.app.state.sessions
    session = sessions.pop(conv_id, None)
    if session is None:
        conn = request.app.state.db
        conv = get_conversation(conn, conv_id)
        if conv is None:
            raise HTTPException(status_code=404, detail=f"Conversation '{conv_id}' not found.")
        session = ChatSession(
            conv,
            request.app.state.client,
            system_prompts=prompt_contents(conn),
            on_change=lambda c: save_conversation(conn, c),
        )

    # Re-inserting keeps the dict ordered from least to most recently used.
    sessions[conv_id] = session
    _evict_idle(sessions, keep=conv_id)
    return session


def drop_session(request: Request, conv_id: str) -> None:
    """Close the session for *conv_id* so it can no longer write to the DB."""
    session = request.app.state.sessions.pop(conv_id, None)
    if session is not None:
        session.close()


def refresh_prompts(request: Request) -> None:
    """Push the current system prompt table into every cached session."""
    contents = prompt_contents(request.app.state.db)
    for session in request.app.state.sessions.values():
        session.system_prompts = dict(contents)
