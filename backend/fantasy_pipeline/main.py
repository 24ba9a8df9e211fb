"""FastAPI application: health endpoint and recommendation read model."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import asyncpg
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fantasy_pipeline.api.recommendations import router as recommendations_router
from fantasy_pipeline.config import Settings, get_settings
from fantasy_pipeline.db import Database

logger = logging.getLogger(__name__)


def create_app(database: Database | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the application.

    Args:
        database: Connected database used by routes. The worker passes its own;
            without one, the app connects its own pool on startup and routes
            that need storage answer 503 if that fails.
        settings: Settings for this app; the process-wide settings otherwise.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting Fantasy Pipeline API")
        logger.info(f"CORS origins: {settings.cors_origins_list}")

        owned: Database | None = None
        if app.state.database is None:
            owned = Database.from_settings(settings)
            try:
                await owned.connect()
                app.state.database = owned
            except (OSError, ValueError, asyncpg.PostgresError) as e:
                logger.warning(f"Database unavailable, storage routes will answer 503: {e}")
                owned = None

        try:
            yield
        finally:
            logger.info("Shutting down Fantasy Pipeline API")
            if owned is not None:
                await owned.close()
                app.state.database = None

    app = FastAPI(
        title="Fantasy Pipeline",
        description="Fantasy football sync worker and roster recommendations",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(recommendations_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Liveness endpoint polled by the hosting platform."""
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}

    return app


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Standalone API process: uvicorn fantasy_pipeline.main:app
_configure_logging(get_settings())
app = create_app()
