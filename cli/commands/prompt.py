"""System prompt commands."""

from __future__ import annotations

import typer

from branchchat.db import get_connection, init_db
from branchchat.db.prompts import create_prompt, delete_prompt, get_prompt, list_prompts
from cli.rendering import preview

prompt_app = typer.Typer(help="Manage reusable system prompts.", no_args_is_help=True)


@prompt_app.command("add")
def prompt_add(
    title: str = typer.Argument(..., help="Short name."),
    content: str = typer.Argument(..., help="Prompt text."),
) -> None:
    """Store a new system prompt."""
    conn = get_connection()
    init_db(conn)
    try:
        prompt = create_prompt(conn, title, content)
    except ValueError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    finally:
        conn.close()
    typer.echo(f"✅ System prompt created: {prompt.title} ({prompt.id})")


@prompt_app.command("list")
def prompt_list() -> None:
    """List stored system prompts."""
    conn = get_connection()
    init_db(conn)
    try:
        prompts = list_prompts(conn)
    finally:
        conn.close()
    if not prompts:
        typer.echo("No system prompts found.")
        return
    for prompt in prompts:
        typer.echo(f"  {prompt.title} \t[{prompt.id}]  {preview(prompt.content, 40)}")


@prompt_app.command("remove")
def prompt_remove(prompt_id: str = typer.Argument(..., help="Prompt id.")) -> None:
    """Delete a system prompt."""
    conn = get_connection()
    init_db(conn)
    try:
        if get_prompt(conn, prompt_id) is None:
            typer.echo(f"❌ System prompt '{prompt_id}' not found.")
            raise typer.Exit(code=1)
        delete_prompt(conn, prompt_id)
    finally:
        conn.close()
    typer.echo(f"🗑️ Removed system prompt: {prompt_id}")
