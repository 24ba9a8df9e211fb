"""Database connection management using asyncpg."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from fantasy_pipeline.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Owns one asyncpg pool.

    Constructed explicitly and handed to the services that need it, so
    several isolated instances can live in the same process (tests, the
    worker and the API each build their own).
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float = 300.0,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a database handle from application settings."""
        return cls(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> asyncpg.Pool:
        """Initialize the connection pool (no-op when already connected)."""
        if self._pool is not None:
            return self._pool

        if not self.dsn:
            raise ValueError(
                "Database connection string not configured. Set DATABASE_URL."
            )

        logger.info("Initializing database connection pool")
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )
        return self._pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing database connection pool")
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the current connection pool (must be connected first)."""
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a database connection from the pool."""
        async with self.pool.acquire() as conn:
            yield conn
