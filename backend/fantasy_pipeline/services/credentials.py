"""Provider credentials: stored OAuth tokens with transparent refresh."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import asyncpg
import httpx
from cachetools import TTLCache

from fantasy_pipeline.config import Settings
from fantasy_pipeline.db import Database

logger = logging.getLogger(__name__)

CREDENTIAL_CACHE_SIZE = 256


@dataclass(slots=True)
class Credential:
    """Bearer token for the provider API."""

    access_token: str
    expires_at: datetime
    user_id: str | None = None

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return self.expires_at <= now + timedelta(seconds=seconds)

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class CredentialProvider:
    """Resolves a usable provider credential for a user.

    Tokens are read from the ``user_tokens`` table and refreshed with the
    refresh-token grant when they expire within the configured margin. Any
    failure resolves to None: the caller treats that as "cannot run this job",
    never as a crash.

    The cache is per instance, so two providers in one process never share
    tokens.
    """

    def __init__(
        self,
        db: Database,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.settings = settings
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cache: TTLCache[str, Credential] = TTLCache(
            maxsize=CREDENTIAL_CACHE_SIZE, ttl=settings.credential_cache_ttl
        )
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization, coroutine-safe)."""
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        self._cache.clear()

    async def get_credential(self, user_id: str) -> Credential | None:
        """Return a non-expiring credential for ``user_id``, or None."""
        margin = self.settings.token_refresh_margin_seconds
        now = self._clock()

        cached = self._cache.get(user_id)
        if cached is not None and not cached.expires_within(margin, now):
            return cached

        try:
            row = await self._load_tokens(user_id)
            if row is None:
                logger.warning(f"No stored provider tokens for user {user_id}")
                return None

            credential = Credential(
                access_token=row["access_token"],
                expires_at=row["expires_at"],
                user_id=user_id,
            )
            if credential.expires_within(margin, now):
                logger.info(f"Refreshing provider token for user {user_id}")
                credential = await self._refresh(user_id, row["refresh_token"], now)
        except (httpx.HTTPError, asyncpg.PostgresError, OSError, KeyError, ValueError) as e:
            logger.error(
                f"Could not resolve credential for user {user_id}: "
                f"{type(e).__name__}: {e}"
            )
            return None

        self._cache[user_id] = credential
        return credential

    async def _load_tokens(self, user_id: str) -> asyncpg.Record | None:
        async with self.db.connection() as conn:
            return await conn.fetchrow(
                """
                SELECT access_token, refresh_token, expires_at
                FROM user_tokens
                WHERE user_id = $1
                """,
                user_id,
            )

    async def _refresh(self, user_id: str, refresh_token: str, now: datetime) -> Credential:
        client = await self._get_client()
        response = await client.post(
            self.settings.token_refresh_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "redirect_uri": "oob",
            },
            auth=(self.settings.oauth_client_id, self.settings.oauth_client_secret),
        )
        response.raise_for_status()
        payload = response.json()

        access_token = payload["access_token"]
        expires_at = now + timedelta(seconds=int(payload.get("expires_in", 3600)))
        new_refresh_token = payload.get("refresh_token") or refresh_token

        async with self.db.connection() as conn:
            await conn.execute(
                """
                UPDATE user_tokens
                SET access_token = $2,
                    refresh_token = $3,
                    expires_at = $4,
                    updated_at = NOW()
                WHERE user_id = $1
                """,
                user_id,
                access_token,
                new_refresh_token,
                expires_at,
            )

        return Credential(access_token=access_token, expires_at=expires_at, user_id=user_id)
