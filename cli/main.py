"""branchchat CLI — entry-point for all client operations.

Usage:
    python cli/main.py --help

Sub-command groups:
    db        → database initialisation
    chat      → conversations, messaging and branch navigation
    provider  → completion providers and models
    prompt    → reusable system prompts
    serve     → run the HTTP API
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the project root is on sys.path so that `from branchchat.xxx import ...`
# works when the CLI is invoked as `python cli/main.py` from any directory.
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import logging

import typer

from branchchat.config import settings
from branchchat.db import get_connection, init_db
from cli.commands.chat import chat_app
from cli.commands.prompt import prompt_app
from cli.commands.provider import provider_app

app = typer.Typer(
    name="branchchat",
    help="Branching LLM chat client.",
    no_args_is_help=True,
)
app.add_typer(chat_app, name="chat")
app.add_typer(provider_app, name="provider")
app.add_typer(prompt_app, name="prompt")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log stream diagnostics."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# DB commands
# ---------------------------------------------------------------------------
db_app = typer.Typer(help="Database operations.", no_args_is_help=True)
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """Initialise the SQLite database (create tables if they do not exist)."""
    conn = get_connection()
    init_db(conn)
    conn.close()
    typer.echo(f"[db init] Database ready at {settings.db_path}")


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------
@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Bind port."),
    reload: bool = typer.Option(False, help="Reload on code changes."),
) -> None:
    """Run the FastAPI server with uvicorn."""
    import uvicorn

    typer.echo(f"[serve] Listening on http://{host}:{port}")
    uvicorn.run("branchchat.api.app:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    app()
