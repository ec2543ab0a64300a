"""Provider management commands."""

from __future__ import annotations

from typing import List, Optional

import typer

from branchchat.db import get_connection, init_db
from branchchat.db.providers import delete_provider, get_provider, registry_from_db, save_provider
from branchchat.providers import ProviderConfig

provider_app = typer.Typer(help="Manage completion providers.", no_args_is_help=True)


@provider_app.command("list")
def provider_list() -> None:
    """List the built-in provider and every stored one."""
    conn = get_connection()
    init_db(conn)
    try:
        registry = registry_from_db(conn)
    finally:
        conn.close()

    typer.echo("Providers:")
    for provider in registry:
        marker = "*" if provider.is_default else " "
        models = ", ".join(provider.available_models) or "(no models)"
        typer.echo(f"{marker} {provider.name} \t{provider.base_url}  [{models}]")


@provider_app.command("add")
def provider_add(
    name: str = typer.Argument(..., help="Provider name (used as the model prefix)."),
    base_url: str = typer.Option(..., "--base-url", help="OpenAI-compatible base URL."),
    model: List[str] = typer.Option([], "--model", "-m", help="Offered model (repeatable)."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Bearer token."),
) -> None:
    """Add or replace a provider."""
    conn = get_connection()
    init_db(conn)
    try:
        provider = save_provider(
            conn,
            ProviderConfig(name=name, base_url=base_url, api_key=api_key, available_models=model),
        )
    except ValueError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    finally:
        conn.close()
    typer.echo(f"✅ Provider saved: {provider.name} ({len(provider.available_models)} models)")


@provider_app.command("remove")
def provider_remove(name: str = typer.Argument(..., help="Provider name.")) -> None:
    """Remove a stored provider."""
    conn = get_connection()
    init_db(conn)
    try:
        if get_provider(conn, name) is None:
            typer.echo(f"❌ Provider '{name}' not found.")
            raise typer.Exit(code=1)
        delete_provider(conn, name)
    finally:
        conn.close()
    typer.echo(f"🗑️ Removed provider: {name}")


@provider_app.command("models")
def provider_models() -> None:
    """List every model id accepted by 'chat new --model'."""
    conn = get_connection()
    init_db(conn)
    try:
        models = registry_from_db(conn).all_available_models()
    finally:
        conn.close()
    for model in models:
        typer.echo(f"  {model}")
