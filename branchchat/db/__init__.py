"""Database layer package.

Public re-exports so callers can write::

    from branchchat.db import get_connection, init_db
    from branchchat.db import conversations
"""

from branchchat.db.connection import get_connection
from branchchat.db.migrations import init_db
from branchchat.db import conversations, prompts, providers

__all__ = ["get_connection", "init_db", "conversations", "prompts", "providers"]
