"""Tests for credential resolution and token refresh."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
import respx
from httpx import Response

from conftest import make_db
from fantasy_pipeline.config import Settings
from fantasy_pipeline.services.credentials import Credential, CredentialProvider

NOW = datetime(2025, 10, 5, 12, 0, tzinfo=UTC)
REFRESH_URL = "https://login.test/oauth2/get_token"


@pytest.fixture
def settings():
    return Settings(
        token_refresh_url=REFRESH_URL,
        oauth_client_id="client",
        oauth_client_secret="secret",
        token_refresh_margin_seconds=300,
    )


def provider_for(conn: AsyncMock, settings: Settings) -> CredentialProvider:
    return CredentialProvider(make_db(conn), settings, clock=lambda: NOW)


class TestCredential:
    """Tests for the Credential record."""

    def test_expires_within(self):
        credential = Credential("t", NOW + timedelta(minutes=4))

        assert credential.expires_within(300, now=NOW) is True
        assert credential.expires_within(60, now=NOW) is False

    def test_authorization_header(self):
        assert Credential("abc", NOW).authorization_header == {"Authorization": "Bearer abc"}


class TestGetCredential:
    """Tests for CredentialProvider.get_credential."""

    async def test_valid_stored_token(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "access_token": "stored",
            "refresh_token": "r",
            "expires_at": NOW + timedelta(hours=1),
        }
        provider = provider_for(conn, settings)

        credential = await provider.get_credential("user-1")

        assert credential is not None
        assert credential.access_token == "stored"
        assert credential.user_id == "user-1"

    async def test_cached_per_instance(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "access_token": "stored",
            "refresh_token": "r",
            "expires_at": NOW + timedelta(hours=1),
        }
        provider = provider_for(conn, settings)

        await provider.get_credential("user-1")
        await provider.get_credential("user-1")

        assert conn.fetchrow.await_count == 1

    async def test_missing_tokens(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = None

        assert await provider_for(conn, settings).get_credential("ghost") is None

    @respx.mock
    async def test_refreshes_expiring_token(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "access_token": "old",
            "refresh_token": "refresh-me",
            "expires_at": NOW + timedelta(seconds=30),
        }
        route = respx.post(REFRESH_URL).mock(
            return_value=Response(
                200,
                json={"access_token": "new", "refresh_token": "next", "expires_in": 3600},
            )
        )
        provider = provider_for(conn, settings)

        credential = await provider.get_credential("user-1")
        await provider.close()

        assert credential is not None
        assert credential.access_token == "new"
        assert credential.expires_at == NOW + timedelta(seconds=3600)
        assert b"grant_type=refresh_token" in route.calls[0].request.content
        assert conn.execute.await_count == 1

    @respx.mock
    async def test_refresh_failure_returns_none(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "access_token": "old",
            "refresh_token": "revoked",
            "expires_at": NOW - timedelta(minutes=1),
        }
        respx.post(REFRESH_URL).mock(return_value=Response(400, json={"error": "invalid_grant"}))
        provider = provider_for(conn, settings)

        assert await provider.get_credential("user-1") is None
        await provider.close()

    @respx.mock
    async def test_refresh_transport_error_returns_none(self, settings):
        conn = AsyncMock()
        conn.fetchrow.return_value = {
            "access_token": "old",
            "refresh_token": "r",
            "expires_at": NOW,
        }
        respx.post(REFRESH_URL).mock(side_effect=httpx.ConnectError("down"))
        provider = provider_for(conn, settings)

        assert await provider.get_credential("user-1") is None
        await provider.close()
