"""Conversation commands: lifecycle, messaging, and branch navigation."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Awaitable, Callable, Optional

import typer

from branchchat.config import settings
from branchchat.db import get_connection, init_db
from branchchat.db import conversations as conv_db
from branchchat.db.prompts import get_prompt, prompt_contents
from branchchat.db.providers import registry_from_db
from branchchat.errors import UnknownProvider
from branchchat.providers import CompletionClient
from branchchat.streaming.events import (
    EVENT_END,
    EVENT_START,
    EVENT_TITLE,
    EVENT_TOKEN,
    ChatEvent,
)
from branchchat.tree import ChatSession, Conversation, MessageNode
from branchchat.tree import pool
from cli.context import load_context, require_context, set_active
from cli.editor import edit_text
from cli.rendering import render_message, render_tree, short_id

chat_app = typer.Typer(help="Branching conversations.", no_args_is_help=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open() -> sqlite3.Connection:
    conn = get_connection()
    init_db(conn)
    return conn


def _make_client(conn: sqlite3.Connection) -> CompletionClient:
    return CompletionClient(registry_from_db(conn))


def _session(conn: sqlite3.Connection, conv: Conversation) -> ChatSession:
    return ChatSession(
        conv,
        _make_client(conn),
        system_prompts=prompt_contents(conn),
        on_change=lambda c: conv_db.save_conversation(conn, c),
    )


def _find_conversation(conn: sqlite3.Connection, identifier: str) -> Conversation:
    """Match by full id, id prefix, or exact title."""
    conv = conv_db.get_conversation(conn, identifier)
    if conv is not None:
        return conv

    candidates = conv_db.list_conversations(conn) + conv_db.list_conversations(conn, archived=True)
    matches = [c for c in candidates if c.id.startswith(identifier) or c.title == identifier]
    if len(matches) == 1:
        return matches[0]
    if matches:
        typer.echo(f"❌ '{identifier}' matches {len(matches)} conversations; use a longer id.")
    else:
        typer.echo(f"❌ Conversation '{identifier}' not found.")
    raise typer.Exit(code=1)


def _active(conn: sqlite3.Connection) -> Conversation:
    ctx = load_context()
    conv = conv_db.get_conversation(conn, ctx.active_conversation_id or "")
    if conv is None:
        typer.echo("❌ The active conversation no longer exists.")
        raise typer.Exit(code=1)
    return conv


def _find_message(conv: Conversation, prefix: str) -> MessageNode:
    matches = [
        node for node in conv.nodes.values() if not node.is_root and node.id.startswith(prefix)
    ]
    if len(matches) == 1:
        return matches[0]
    if matches:
        typer.echo(f"❌ '{prefix}' matches {len(matches)} messages; use a longer id.")
    else:
        typer.echo(f"❌ Message '{prefix}' not found.")
    raise typer.Exit(code=1)


def _print_event(event: ChatEvent) -> None:
    if event.event == EVENT_START:
        typer.echo(f"🤖 [{short_id(event.message_id or '')}] ", nl=False)
    elif event.event == EVENT_TOKEN:
        typer.echo(event.text, nl=False)
    elif event.event == EVENT_END:
        typer.echo("")
        if event.error:
            typer.echo(f"⚠️ {event.error}")
        elif event.state == "cancelled":
            typer.echo("⏹️ Stopped.")
    elif event.event == EVENT_TITLE:
        typer.echo(f"📝 Title: {event.text}")


async def _run_live(
    session: ChatSession,
    action: Callable[[], Awaitable[Optional[MessageNode]]],
) -> Optional[MessageNode]:
    """Run *action* while echoing the session's events as they arrive.

    If the caller is cancelled (Ctrl-C), the stream is stopped and the
    mutator is allowed to finalise its node before the cancellation
    propagates.
    """
    queue = session.events.subscribe()
    task = asyncio.create_task(action())
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            try:
                done, _ = await asyncio.wait(
                    {getter, task}, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                getter.cancel()
                session.cancel()
                await asyncio.wait({task})
                raise
            if getter in done:
                _print_event(getter.result())
                continue
            getter.cancel()
            break
        while not queue.empty():
            _print_event(queue.get_nowait())
        return task.result()
    finally:
        session.events.unsubscribe(queue)


def _run(
    session: ChatSession,
    action: Callable[[], Awaitable[Optional[MessageNode]]],
) -> Optional[MessageNode]:
    try:
        return asyncio.run(_run_live(session, action))
    except UnknownProvider as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\n⏹️ Stopped; the partial reply was kept.")
        raise typer.Exit(code=130)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@chat_app.command("new")
def chat_new(
    title: str = typer.Option("New conversation", "--title", "-t", help="Conversation title."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="'Provider: model' id."),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="System prompt id."),
) -> None:
    """Create a conversation and switch to it."""
    conn = _open()
    try:
        if model:
            try:
                registry_from_db(conn).resolve(model)
            except UnknownProvider as exc:
                typer.echo(f"❌ {exc}")
                raise typer.Exit(code=1)
        if prompt and get_prompt(conn, prompt) is None:
            typer.echo(f"❌ System prompt '{prompt}' not found.")
            raise typer.Exit(code=1)

        conv = conv_db.create_conversation(conn, title=title, model=model, system_prompt_id=prompt)
        set_active(conv.id, conv.title)
        typer.echo(f"✅ Conversation created: {conv.title} ({conv.id})")
        typer.echo(f"💬 Switched to conversation: {conv.title}")
    finally:
        conn.close()


@chat_app.command("list")
def chat_list(
    archived: bool = typer.Option(False, "--archived", help="List archived conversations."),
) -> None:
    """List conversations, most recently active first."""
    conn = _open()
    try:
        conversations = conv_db.list_conversations(conn, archived=archived)
        if not conversations:
            typer.echo("No archived conversations." if archived else "No conversations found.")
            return

        active_id = load_context().active_conversation_id
        typer.echo("Archived conversations:" if archived else "Conversations:")
        for conv in conversations:
            marker = "*" if conv.id == active_id else " "
            count = len(conv.nodes) - 1
            typer.echo(f"{marker} {conv.title} \t[{conv.id}]  ({count} messages)")
    finally:
        conn.close()


@chat_app.command("use")
def chat_use(
    identifier: str = typer.Argument(..., help="Conversation id, id prefix, or title."),
) -> None:
    """Switch the active conversation."""
    conn = _open()
    try:
        conv = _find_conversation(conn, identifier)
        set_active(conv.id, conv.title)
        typer.echo(f"💬 Switched to conversation: {conv.title}")
    finally:
        conn.close()


@chat_app.command("rename")
@require_context
def chat_rename(title: str = typer.Argument(..., help="New title.")) -> None:
    """Rename the active conversation."""
    conn = _open()
    try:
        conv = _active(conn)
        try:
            conv = conv_db.rename_conversation(conn, conv.id, title)
        except ValueError as exc:
            typer.echo(f"❌ {exc}")
            raise typer.Exit(code=1)
        set_active(conv.id, conv.title)
        typer.echo(f"✅ Renamed to: {conv.title}")
    finally:
        conn.close()


@chat_app.command("archive")
def chat_archive(
    identifier: Optional[str] = typer.Argument(None, help="Defaults to the active conversation."),
) -> None:
    """Archive a conversation."""
    _set_archived(identifier, True)


@chat_app.command("unarchive")
def chat_unarchive(identifier: str = typer.Argument(..., help="Conversation id or title.")) -> None:
    """Restore an archived conversation."""
    _set_archived(identifier, False)


def _set_archived(identifier: Optional[str], archived: bool) -> None:
    conn = _open()
    try:
        if identifier:
            conv = _find_conversation(conn, identifier)
        elif load_context().active_conversation_id:
            conv = _active(conn)
        else:
            typer.echo("❌ No conversation given and none is active.")
            raise typer.Exit(code=1)
        conv_db.set_archived(conn, conv.id, archived)
        typer.echo(f"📦 Archived: {conv.title}" if archived else f"📤 Restored: {conv.title}")
    finally:
        conn.close()


@chat_app.command("delete")
def chat_delete(
    identifier: str = typer.Argument(..., help="Conversation id or title."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Delete a conversation and all of its branches."""
    conn = _open()
    try:
        conv = _find_conversation(conn, identifier)
        if not yes:
            typer.confirm(f"Delete '{conv.title}'?", abort=True)
        conv_db.delete_conversation(conn, conv.id)
        if load_context().active_conversation_id == conv.id:
            set_active(None)
        typer.echo(f"🗑️ Deleted: {conv.title}")
    finally:
        conn.close()


@chat_app.command("export")
def chat_export(
    output: Optional[Path] = typer.Option(None, help="Output JSON file.  Defaults to stdout."),
) -> None:
    """Export every conversation to JSON."""
    conn = _open()
    try:
        data = conv_db.export_conversations(conn)
    finally:
        conn.close()
    if output is None:
        typer.echo(data)
        return
    output.write_text(data, encoding="utf-8")
    typer.echo(f"✅ Exported to {output}")


@chat_app.command("import")
def chat_import(path: Path = typer.Argument(..., help="JSON file produced by 'chat export'.")) -> None:
    """Import conversations from a JSON export."""
    if not path.exists():
        typer.echo(f"❌ File not found: {path}")
        raise typer.Exit(code=1)
    conn = _open()
    try:
        imported = conv_db.import_conversations(conn, path.read_text(encoding="utf-8"))
    except ValueError as exc:
        typer.echo(f"❌ Import failed: {exc}")
        raise typer.Exit(code=1)
    finally:
        conn.close()
    typer.echo(f"✅ Imported {len(imported)} conversation(s).")


# ---------------------------------------------------------------------------
# Viewing
# ---------------------------------------------------------------------------

@chat_app.command("show")
@require_context
def chat_show() -> None:
    """Print the visible path of the active conversation."""
    conn = _open()
    try:
        conv = _active(conn)
    finally:
        conn.close()

    typer.echo(f"\n💬 {conv.title}  ({conv.model or settings.chat_model})")
    typer.echo("-" * 40)
    path = pool.visible_path(conv.nodes, conv.active_branches, conv.root_node_id)
    if not path:
        typer.echo("(no messages yet)")
    for node in path:
        typer.echo(render_message(conv, node))
        typer.echo("")


@chat_app.command("tree")
@require_context
def chat_tree() -> None:
    """Show every branch of the active conversation."""
    conn = _open()
    try:
        conv = _active(conn)
    finally:
        conn.close()
    typer.echo(render_tree(conv))


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------

@chat_app.command("send")
@require_context
def chat_send(message: str = typer.Argument(..., help="Message text.")) -> None:
    """Send a message and stream the reply."""
    if not message.strip():
        typer.echo("❌ Message must not be empty.")
        raise typer.Exit(code=1)
    conn = _open()
    try:
        session = _session(conn, _active(conn))
        _run(session, lambda: session.send_message(message))
    finally:
        conn.close()


@chat_app.command("respond")
@require_context
def chat_respond() -> None:
    """Stream a reply to an unanswered user message at the end of the path."""
    conn = _open()
    try:
        session = _session(conn, _active(conn))
        if _run(session, session.generate_assistant_response) is None:
            typer.echo("Nothing to answer: the last message is not from the user.")
    finally:
        conn.close()


@chat_app.command("regenerate")
@require_context
def chat_regenerate(
    message_id: Optional[str] = typer.Argument(
        None, help="Assistant message id (prefix).  Defaults to the last reply."
    ),
) -> None:
    """Stream an alternative reply as a new branch."""
    conn = _open()
    try:
        conv = _active(conn)
        session = _session(conn, conv)
        if message_id:
            target = _find_message(conv, message_id)
        else:
            replies = [n for n in session.visible_path() if n.role == "assistant"]
            if not replies:
                typer.echo("❌ There is no reply to regenerate.")
                raise typer.Exit(code=1)
            target = replies[-1]
        if _run(session, lambda: session.regenerate(target.id)) is None:
            typer.echo("❌ Only assistant messages on the visible path can be regenerated.")
            raise typer.Exit(code=1)
    finally:
        conn.close()


@chat_app.command("edit")
@require_context
def chat_edit(
    message_id: str = typer.Argument(..., help="User or system message id (prefix)."),
    content: Optional[str] = typer.Argument(None, help="New text.  Opens $EDITOR when omitted."),
) -> None:
    """Edit a message as a new branch; user edits stream a fresh reply."""
    conn = _open()
    try:
        conv = _active(conn)
        node = _find_message(conv, message_id)
        if node.role not in ("user", "system"):
            typer.echo("❌ Only user and system messages can be edited.")
            raise typer.Exit(code=1)

        if content is None:
            content = edit_text(node.content, f"edit_{short_id(node.id)}")
            if content is None:
                typer.echo("No changes.")
                return

        session = _session(conn, conv)
        edited = _run(session, lambda: session.edit_message(node.id, content))
        if edited is None:
            typer.echo("No changes.")
            return
        typer.echo(f"✏️ New branch [{short_id(edited.id)}]")
    finally:
        conn.close()


@chat_app.command("switch")
@require_context
def chat_switch(
    message_id: str = typer.Argument(..., help="Any message in the sibling group (prefix)."),
    position: int = typer.Argument(..., help="1-based sibling position."),
) -> None:
    """Make another sibling branch active."""
    conn = _open()
    try:
        conv = _active(conn)
        node = _find_message(conv, message_id)
        session = _session(conn, conv)
        flash = session.switch_branch(node.id, position - 1)
        if flash is None:
            total = len(pool.siblings(conv.nodes, conv.root_node_id, node.id))
            typer.echo(f"❌ Position {position} is out of range (1-{total}).")
            raise typer.Exit(code=1)
        typer.echo(f"🔀 Switched to branch {position}; now at [{short_id(flash)}]")
    finally:
        conn.close()


@chat_app.command("title")
@require_context
def chat_title() -> None:
    """Generate a title from the conversation so far."""
    conn = _open()
    try:
        conv = _active(conn)
        session = _session(conn, conv)
        if asyncio.run(session.generate_title()):
            set_active(conv.id, conv.title)
            typer.echo(f"📝 Title: {conv.title}")
        else:
            typer.echo("Title unchanged.")
    finally:
        conn.close()


@chat_app.command("model")
@require_context
def chat_model(model: str = typer.Argument(..., help="'Provider: model' id.")) -> None:
    """Change the model used by the active conversation."""
    conn = _open()
    try:
        conv = _active(conn)
        try:
            registry_from_db(conn).resolve(model)
        except UnknownProvider as exc:
            typer.echo(f"❌ {exc}")
            raise typer.Exit(code=1)
        conv.model = model
        conv.touch()
        conv_db.save_conversation(conn, conv)
        typer.echo(f"✅ Model set to {model}")
    finally:
        conn.close()
