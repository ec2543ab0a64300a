"""CRUD helpers for user-added providers.

The env-configured provider (``settings.provider_name``) is always present in
the registry; rows in the ``providers`` table are layered on top of it and may
override it by using the same name.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Optional

from branchchat.config import Settings
from branchchat.providers.registry import ProviderConfig, ProviderRegistry


def _row_to_provider(row: sqlite3.Row) -> ProviderConfig:
    return ProviderConfig(
        name=row["name"],
        base_url=row["base_url"],
        api_key=row["api_key"],
        available_models=json.loads(row["available_models"] or "[]"),
        is_default=bool(row["is_default"]),
    )


def save_provider(conn: sqlite3.Connection, provider: ProviderConfig) -> ProviderConfig:
    """Insert or replace a provider.

    Raises:
        ValueError: If the name contains ``:`` or the base URL is empty.
    """
    name = provider.name.strip()
    if not name or ":" in name:
        raise ValueError(f"Invalid provider name: {provider.name!r}")
    if not provider.base_url.strip():
        raise ValueError("Provider base URL must not be empty")

    with conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO providers (name, base_url, api_key, available_models, is_default)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                name,
                provider.base_url.strip(),
                provider.api_key,
                json.dumps(provider.available_models),
                int(provider.is_default),
            ),
        )
    return get_provider(conn, name)  # type: ignore[return-value]


def get_provider(conn: sqlite3.Connection, name: str) -> Optional[ProviderConfig]:
    row = conn.execute("SELECT * FROM providers WHERE name = ?", (name,)).fetchone()
    return _row_to_provider(row) if row else None


def list_providers(conn: sqlite3.Connection) -> list[ProviderConfig]:
    rows = conn.execute("SELECT * FROM providers ORDER BY name").fetchall()
    return [_row_to_provider(row) for row in rows]


def delete_provider(conn: sqlite3.Connection, name: str) -> None:
    """Delete a stored provider.  No-op if it does not exist."""
    with conn:
        conn.execute("DELETE FROM providers WHERE name = ?", (name,))


def registry_from_db(
    conn: sqlite3.Connection,
    config: Settings | None = None,
) -> ProviderRegistry:
    """Registry with the env-configured provider plus every stored one."""
    return ProviderRegistry.from_settings(config, extra=list_providers(conn))
