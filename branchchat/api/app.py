"""FastAPI application factory.

Lifespan
--------
On startup the app opens a single SQLite connection (shared across all
requests via ``request.app.state.db``), initialises the schema and builds the
completion client from the stored providers.  On shutdown it cancels any
running streams and closes the connection.

Routers
-------
    /conversations  — conversation lifecycle, tree mutators (SSE streaming)
    /settings       — providers, available models, system prompts
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from branchchat import __version__
from branchchat.db import get_connection, init_db
from branchchat.db.providers import registry_from_db
from branchchat.providers import CompletionClient

from branchchat.api.routers import conversations as conversations_router
from branchchat.api.routers import settings as settings_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the DB and client on startup; tear both down on shutdown."""
    conn = get_connection()
    init_db(conn)
    app.state.db = conn
    app.state.client = CompletionClient(registry_from_db(conn))
    app.state.sessions = {}
    logger.info("[API] Ready with %d provider(s)", len(app.state.client.registry))
    try:
        yield
    finally:
        for session in app.state.sessions.values():
            session.cancel()
        conn.close()


def create_app() -> FastAPI:
    """Return a fully-configured FastAPI application instance."""
    app = FastAPI(
        title="branchchat API",
        description=(
            "REST interface for branching LLM conversations. "
            "Exposes conversation lifecycle, the tree mutators with "
            "Server-Sent Event token streams, and provider / system prompt "
            "settings."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    # Allow browser frontends on any origin (tighten for production).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        conversations_router.router, prefix="/conversations", tags=["conversations"]
    )
    app.include_router(settings_router.router, prefix="/settings", tags=["settings"])

    return app


# Module-level instance used by uvicorn:
#   uvicorn branchchat.api.app:app --reload
app = create_app()
