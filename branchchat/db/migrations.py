"""Database initialisation.

``init_db(conn)`` is idempotent — safe to call on an existing database.
"""

from __future__ import annotations

import sqlite3

from branchchat.config import settings


def _read_schema() -> str:
    """Load the bundled schema.sql."""
    return settings.schema_path.read_text(encoding="utf-8")


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes.

    This function is **idempotent**: every DDL statement uses ``IF NOT EXISTS``
    so calling it multiple times on the same database is safe.

    Args:
        conn: An open, configured SQLite connection.
    """
    # executescript() issues an implicit COMMIT before execution, which is
    # fine for a DDL-only script.
    conn.executescript(_read_schema())
