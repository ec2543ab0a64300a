"""Which conversation the CLI is pointed at, plus user preferences.

Stored as JSON in ``settings.cli_config_dir / "context.json"``.  A missing or
unreadable file means "no active conversation".
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Callable

import typer
from branchchat.config import settings


@dataclass
class CliContext:
    active_conversation_id: str | None = None
    active_conversation_title: str | None = None
    user_preferences: dict[str, Any] = field(default_factory=dict)


def _context_path() -> Path:
    return settings.cli_config_dir / "context.json"


def load_context() -> CliContext:
    try:
        raw = json.loads(_context_path().read_text(encoding="utf-8"))
        return CliContext(**raw)
    except (OSError, ValueError, TypeError):
        return CliContext()


def save_context(ctx: CliContext) -> None:
    settings.cli_config_dir.mkdir(parents=True, exist_ok=True)
    _context_path().write_text(json.dumps(asdict(ctx), indent=2), encoding="utf-8")


def set_active(conv_id: str | None, title: str | None = None) -> None:
    """Point the CLI at *conv_id*, keeping the stored preferences."""
    ctx = load_context()
    ctx.active_conversation_id = conv_id
    ctx.active_conversation_title = title
    save_context(ctx)


def require_context(func: Callable) -> Callable:
    """Abort the wrapped command unless a conversation is active."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not load_context().active_conversation_id:
            typer.echo("❌ No active conversation selected.")
            typer.echo("Run 'chat new' or 'chat use <id>' first.")
            raise typer.Exit(code=1)
        return func(*args, **kwargs)

    return wrapper
