"""Conversation endpoints with SSE streaming.

Routes
------
GET    /conversations                                   List conversations (``?archived=true``)
POST   /conversations                                   Create an empty conversation
GET    /conversations/export                            Export every conversation
POST   /conversations/import                            Import an export payload
GET    /conversations/{conv_id}                         Visible path with branch info
GET    /conversations/{conv_id}/tree                    Whole node pool and branch map
PATCH  /conversations/{conv_id}                         Rename / archive / change model or prompt
DELETE /conversations/{conv_id}                         Delete a conversation
POST   /conversations/{conv_id}/messages                Send a message (SSE token stream)
POST   /conversations/{conv_id}/respond                 Answer a trailing user turn (SSE)
POST   /conversations/{conv_id}/messages/{mid}/regenerate   New assistant sibling (SSE)
POST   /conversations/{conv_id}/messages/{mid}/edit         Edited sibling (SSE)
POST   /conversations/{conv_id}/messages/{mid}/branch       Switch to sibling ``index``
POST   /conversations/{conv_id}/cancel                  Stop the active stream
POST   /conversations/{conv_id}/title                   Generate a title now
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from branchchat.api.sessions import drop_session, get_session
from branchchat.db import conversations as conv_db
from branchchat.errors import UnknownProvider
from branchchat.tree import ChatSession, Conversation, MessageNode
from branchchat.tree import pool

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class NewConversationRequest(BaseModel):
    title: str = "New conversation"
    model: Optional[str] = None
    system_prompt_id: Optional[str] = None


class UpdateConversationRequest(BaseModel):
    title: Optional[str] = None
    is_archived: Optional[bool] = None
    model: Optional[str] = None
    system_prompt_id: Optional[str] = None


class MessageRequest(BaseModel):
    content: str


class BranchRequest(BaseModel):
    index: int


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _summary(conv: Conversation) -> dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "model": conv.model,
        "system_prompt_id": conv.system_prompt_id,
        "is_archived": conv.is_archived,
        "is_generating_title": conv.is_generating_title,
        "message_count": len(conv.nodes) - 1,
        "created_at": conv.created_at,
        "updated_at": conv.updated_at,
    }


def _node_dict(node: MessageNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "role": node.role,
        "content": node.content,
        "timestamp": node.timestamp,
        "is_streaming": node.is_streaming,
        "model": node.model,
        "parent_id": node.parent_id,
        "child_ids": list(node.child_ids),
        "branch_index": node.branch_index,
    }


def _detail(session: ChatSession) -> dict[str, Any]:
    conv = session.conversation
    messages = []
    for node in session.visible_path():
        item = _node_dict(node)
        info = session.branch_info(node.id)
        if info is not None:
            item["branch"] = {
                **asdict(info),
                "hidden_messages": pool.count_hidden(conv.nodes, conv.root_node_id, node.id),
            }
        else:
            item["branch"] = None
        messages.append(item)
    return {**_summary(conv), "messages": messages}


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _require_model(session: ChatSession) -> None:
    try:
        session.resolve_model()
    except UnknownProvider as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _require_message(session: ChatSession, message_id: str) -> MessageNode:
    node = session.get_node(message_id)
    if node is None or node.is_root:
        raise HTTPException(status_code=404, detail=f"Message '{message_id}' not found.")
    return node


# ---------------------------------------------------------------------------
# SSE generator
# ---------------------------------------------------------------------------

def _stream_response(
    session: ChatSession,
    action: Callable[[], Awaitable[Optional[MessageNode]]],
) -> StreamingResponse:
    return StreamingResponse(
        _event_stream(session, action),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


async def _event_stream(
    session: ChatSession,
    action: Callable[[], Awaitable[Optional[MessageNode]]],
) -> AsyncIterator[str]:
    """Run *action* and forward every session event as an SSE frame.

    SSE event shapes::

        data: {"event": "start", "message_id": "..."}
        data: {"event": "token", "message_id": "...", "text": "..."}
        data: {"event": "end",   "message_id": "...", "state": "completed"}
        data: {"event": "title", "text": "..."}
        data: {"event": "done",  "message_id": "..."}
        data: {"event": "error", "detail": "..."}

    If the client disconnects, the mutator keeps running and its result is
    still persisted.
    """
    queue = session.events.subscribe()
    task = asyncio.create_task(action())
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield _sse(getter.result().to_payload())
                continue
            getter.cancel()
            break

        while not queue.empty():
            yield _sse(queue.get_nowait().to_payload())

        node = task.result()
        yield _sse({"event": "done", "message_id": node.id if node else None})
    except Exception as exc:  # noqa: BLE001
        logger.warning("[API] Stream for %s failed: %s", session.conversation.id, exc)
        yield _sse({"event": "error", "detail": str(exc)})
    finally:
        session.events.unsubscribe(queue)


# ---------------------------------------------------------------------------
# Lifecycle endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=list[dict[str, Any]])
def list_conversations_endpoint(
    request: Request,
    archived: bool = False,
) -> list[dict[str, Any]]:
    """List conversations, most recently active first."""
    conn = request.app.state.db
    return [_summary(c) for c in conv_db.list_conversations(conn, archived=archived)]


@router.post("", status_code=201, response_model=dict[str, Any])
def create_conversation_endpoint(
    body: NewConversationRequest,
    request: Request,
) -> dict[str, Any]:
    """Create a new empty conversation."""
    conn = request.app.state.db
    if body.model:
        try:
            request.app.state.client.registry.resolve(body.model)
        except UnknownProvider as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
    conv = conv_db.create_conversation(
        conn,
        title=body.title,
        model=body.model,
        system_prompt_id=body.system_prompt_id,
    )
    return _summary(conv)


@router.get("/export", response_model=dict[str, Any])
def export_endpoint(request: Request) -> dict[str, Any]:
    """Every conversation, with maps as ordered ``[key, value]`` pairs."""
    return json.loads(conv_db.export_conversations(request.app.state.db, pretty=False))


@router.post("/import", response_model=list[dict[str, Any]])
def import_endpoint(
    request: Request,
    payload: dict[str, Any] = Body(...),
) -> list[dict[str, Any]]:
    """Import an export payload; existing ids are overwritten."""
    try:
        imported = conv_db.import_conversations(request.app.state.db, json.dumps(payload))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    for conv in imported:
        drop_session(request, conv.id)
    return [_summary(c) for c in imported]


@router.get("/{conv_id}", response_model=dict[str, Any])
def get_conversation_endpoint(conv_id: str, request: Request) -> dict[str, Any]:
    """Fetch a conversation's visible path with per-message branch info."""
    return _detail(get_session(request, conv_id))


@router.get("/{conv_id}/tree", response_model=dict[str, Any])
def get_tree_endpoint(conv_id: str, request: Request) -> dict[str, Any]:
    """Fetch the whole node pool, including inactive branches."""
    conv = get_session(request, conv_id).conversation
    return {
        **_summary(conv),
        "root_node_id": conv.root_node_id,
        "nodes": [_node_dict(node) for node in conv.nodes.values()],
        "active_branches": dict(conv.active_branches),
    }


@router.patch("/{conv_id}", response_model=dict[str, Any])
def update_conversation_endpoint(
    conv_id: str,
    body: UpdateConversationRequest,
    request: Request,
) -> dict[str, Any]:
    """Rename, archive / restore, or switch the model or system prompt."""
    session = get_session(request, conv_id)
    conv = session.conversation

    if body.title is not None:
        if not body.title.strip():
            raise HTTPException(status_code=422, detail="Title must not be empty.")
        conv.title = body.title.strip()
    if body.is_archived is not None:
        conv.is_archived = body.is_archived
    if body.model is not None:
        try:
            request.app.state.client.registry.resolve(body.model)
        except UnknownProvider as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        conv.model = body.model
    if body.system_prompt_id is not None:
        conv.system_prompt_id = body.system_prompt_id or None

    conv.touch()
    conv_db.save_conversation(request.app.state.db, conv)
    return _summary(conv)


@router.delete("/{conv_id}", status_code=204, response_class=Response, response_model=None)
def delete_conversation_endpoint(conv_id: str, request: Request) -> Response:
    """Delete a conversation and every node in it."""
    get_session(request, conv_id)
    drop_session(request, conv_id)
    conv_db.delete_conversation(request.app.state.db, conv_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Mutator endpoints
# ---------------------------------------------------------------------------

@router.post("/{conv_id}/messages")
async def send_message_endpoint(
    conv_id: str,
    body: MessageRequest,
    request: Request,
) -> StreamingResponse:
    """Append a user message and stream back the assistant reply as SSE."""
    session = get_session(request, conv_id)
    if not body.content.strip():
        raise HTTPException(status_code=422, detail="Message must not be empty.")
    _require_model(session)
    return _stream_response(session, lambda: session.send_message(body.content))


@router.post("/{conv_id}/respond")
async def respond_endpoint(conv_id: str, request: Request) -> StreamingResponse:
    """Stream a reply to the visible tail when it is an unanswered user turn."""
    session = get_session(request, conv_id)
    _require_model(session)
    return _stream_response(session, session.generate_assistant_response)


@router.post("/{conv_id}/messages/{message_id}/regenerate")
async def regenerate_endpoint(
    conv_id: str,
    message_id: str,
    request: Request,
) -> StreamingResponse:
    """Stream a fresh sibling for an assistant message."""
    session = get_session(request, conv_id)
    _require_message(session, message_id)
    _require_model(session)
    return _stream_response(session, lambda: session.regenerate(message_id))


@router.post("/{conv_id}/messages/{message_id}/edit")
async def edit_endpoint(
    conv_id: str,
    message_id: str,
    body: MessageRequest,
    request: Request,
) -> StreamingResponse:
    """Branch a user / system message with new content."""
    session = get_session(request, conv_id)
    _require_message(session, message_id)
    _require_model(session)
    return _stream_response(session, lambda: session.edit_message(message_id, body.content))


@router.post("/{conv_id}/messages/{message_id}/branch", response_model=dict[str, Any])
def switch_branch_endpoint(
    conv_id: str,
    message_id: str,
    body: BranchRequest,
    request: Request,
) -> dict[str, Any]:
    """Make sibling ``index`` of *message_id* active."""
    session = get_session(request, conv_id)
    _require_message(session, message_id)
    conv = session.conversation
    if pool.branch_target(conv.nodes, conv.root_node_id, message_id, body.index) is None:
        raise HTTPException(status_code=422, detail=f"Branch index {body.index} is out of range.")
    flash = session.switch_branch(message_id, body.index)
    return {"flash": flash, **_detail(session)}


@router.post("/{conv_id}/cancel", response_model=dict[str, Any])
def cancel_endpoint(conv_id: str, request: Request) -> dict[str, Any]:
    """Stop the active stream; the partial reply is kept."""
    return {"cancelled": get_session(request, conv_id).cancel()}


@router.post("/{conv_id}/title", response_model=dict[str, Any])
async def title_endpoint(conv_id: str, request: Request) -> dict[str, Any]:
    """Generate a title from the visible path now."""
    session = get_session(request, conv_id)
    generated = await session.generate_title()
    return {"generated": generated, "title": session.conversation.title}
