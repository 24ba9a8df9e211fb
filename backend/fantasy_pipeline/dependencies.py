"""Shared FastAPI dependencies for API routes."""

from fastapi import HTTPException, Request

from fantasy_pipeline.config import Settings
from fantasy_pipeline.db import Database


def require_db(request: Request) -> Database:
    """FastAPI dependency that requires a connected database.

    Raises HTTPException 503 if the application has no connected database.

    Usage:
        @router.get("/endpoint")
        async def endpoint(db: Database = Depends(require_db)):
            ...
    """
    database: Database | None = getattr(request.app.state, "database", None)
    if database is None or not database.is_connected:
        raise HTTPException(
            status_code=503,
            detail="Database not available. This feature requires database connection.",
        )
    return database


def get_app_settings(request: Request) -> Settings:
    """Settings the application was built with."""
    return request.app.state.settings
