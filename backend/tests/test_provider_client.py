"""Tests for the provider HTTP client with mocked responses."""

import httpx
import pytest
import respx
from httpx import Response

from conftest import make_credential
from fantasy_pipeline.services.provider_client import ProviderClient

BASE_URL = "https://provider.test/fantasy/v2"


class RecordingSleep:
    """Replaces asyncio.sleep so backoff waits are observable and instant."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def client(sleeps: RecordingSleep):
    """Client with four attempts and recorded sleeps."""
    return ProviderClient(base_url=BASE_URL, max_attempts=4, sleep=sleeps)


class TestRetryPolicy:
    """Tests for retry and backoff behavior of call()."""

    @respx.mock
    async def test_rate_limited_then_success(self, client: ProviderClient, sleeps):
        """Three 429s then 200: one result after four attempts, waits of 2, 4 and 8s."""
        route = respx.get(f"{BASE_URL}/league/1/players").mock(
            side_effect=[
                Response(429),
                Response(429),
                Response(429),
                Response(200, json={"ok": True}),
            ]
        )

        response = await client.call(make_credential(), "league/1/players")
        await client.close()

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert route.call_count == 4
        assert sleeps.calls == [2, 4, 8]

    @respx.mock
    async def test_server_errors_exhaust_attempts(self, client: ProviderClient, sleeps):
        """The last observed error propagates once attempts run out."""
        route = respx.get(f"{BASE_URL}/teams").mock(return_value=Response(503))

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await client.call(make_credential(), "teams")
        await client.close()

        assert exc_info.value.response.status_code == 503
        assert route.call_count == 4
        assert len(sleeps.calls) == 3

    @respx.mock
    async def test_client_error_not_retried(self, client: ProviderClient, sleeps):
        """A 401 comes straight back to the caller."""
        route = respx.get(f"{BASE_URL}/teams").mock(return_value=Response(401))

        response = await client.call(make_credential(), "teams")
        await client.close()

        assert response.status_code == 401
        assert route.call_count == 1
        assert sleeps.calls == []

    @respx.mock
    async def test_transport_errors_retried(self, client: ProviderClient, sleeps):
        route = respx.get(f"{BASE_URL}/teams").mock(
            side_effect=[httpx.ConnectError("refused"), Response(200, json={})]
        )

        response = await client.call(make_credential(), "teams")
        await client.close()

        assert response.status_code == 200
        assert route.call_count == 2
        assert sleeps.calls == [2]

    @respx.mock
    async def test_transport_error_propagates_after_last_attempt(self, sleeps):
        client = ProviderClient(base_url=BASE_URL, max_attempts=2, sleep=sleeps)
        respx.get(f"{BASE_URL}/teams").mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(httpx.ReadTimeout):
            await client.call(make_credential(), "teams")
        await client.close()


class TestRequests:
    """Tests for headers, URLs and JSON helpers."""

    @respx.mock
    async def test_sends_bearer_token(self, client: ProviderClient):
        route = respx.get(f"{BASE_URL}/teams").mock(return_value=Response(200, json={}))

        await client.get_json(make_credential(), "teams")
        await client.close()

        assert route.calls[0].request.headers["Authorization"] == "Bearer token-123"

    @respx.mock
    async def test_public_call_has_no_auth_header(self, client: ProviderClient):
        route = respx.get("https://schedule.test/scoreboard").mock(
            return_value=Response(200, json={"events": []})
        )

        data = await client.get_json(None, "https://schedule.test/scoreboard")
        await client.close()

        assert data == {"events": []}
        assert "Authorization" not in route.calls[0].request.headers

    @respx.mock
    async def test_get_json_raises_for_client_error(self, client: ProviderClient):
        respx.get(f"{BASE_URL}/teams").mock(return_value=Response(404))

        with pytest.raises(httpx.HTTPStatusError):
            await client.get_json(make_credential(), "teams")
        await client.close()

    def test_url_resolution(self):
        client = ProviderClient(base_url=f"{BASE_URL}/")

        assert client.url("/league/1") == f"{BASE_URL}/league/1"
        assert client.url("https://other.test/x") == "https://other.test/x"


class TestPaginate:
    """Tests for paginate()."""

    @respx.mock
    async def test_stops_on_short_page(self, client: ProviderClient):
        pages = {0: ["a", "b"], 2: ["c", "d"], 4: ["e"]}
        for start, rows in pages.items():
            respx.get(f"{BASE_URL}/players;start={start};count=2").mock(
                return_value=Response(200, json={"rows": rows})
            )

        result = await client.paginate(
            make_credential(),
            lambda start, count: f"players;start={start};count={count}",
            lambda data: data["rows"],
            page_size=2,
        )
        await client.close()

        assert result == ["a", "b", "c", "d", "e"]

    @respx.mock
    async def test_stops_on_empty_page(self, client: ProviderClient):
        respx.get(f"{BASE_URL}/players;start=0;count=2").mock(
            return_value=Response(200, json={"rows": ["a", "b"]})
        )
        empty = respx.get(f"{BASE_URL}/players;start=2;count=2").mock(
            return_value=Response(200, json={"rows": []})
        )

        result = await client.paginate(
            make_credential(),
            lambda start, count: f"players;start={start};count={count}",
            lambda data: data["rows"],
            page_size=2,
        )
        await client.close()

        assert result == ["a", "b"]
        assert empty.call_count == 1

    @respx.mock
    async def test_max_pages_limit(self, client: ProviderClient):
        respx.get(url__startswith=f"{BASE_URL}/players").mock(
            return_value=Response(200, json={"rows": ["x"]})
        )

        result = await client.paginate(
            make_credential(),
            lambda start, count: f"players;start={start};count={count}",
            lambda data: data["rows"],
            page_size=1,
            max_pages=3,
        )
        await client.close()

        assert result == ["x", "x", "x"]
