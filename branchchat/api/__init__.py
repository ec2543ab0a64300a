"""FastAPI HTTP layer package.

Public re-export so callers can write::

    from branchchat.api import app

    uvicorn branchchat.api:app --reload
"""

from branchchat.api.app import app

__all__ = ["app"]
