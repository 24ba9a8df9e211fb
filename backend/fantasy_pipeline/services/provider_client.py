"""Provider API client with bounded retries and pagination.

Every outbound call to the fantasy data provider goes through
``ProviderClient.call``:

- 429 and 5xx responses are retried with exponential backoff
  (2, 4, 8, ... seconds, i.e. ``2 ** attempt``).
- Transport errors (timeouts, connection failures) are retried the same way.
- Any other 4xx response is returned to the caller immediately.
- When attempts run out the last observed error is raised.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fantasy_pipeline.config import Settings
from fantasy_pipeline.services.credentials import Credential

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PAGE_SIZE = 25
MAX_PAGES = 100  # Safety limit to prevent infinite pagination loops
MAX_BACKOFF_SECONDS = 60


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _is_retryable_error(exception: BaseException) -> bool:
    """Check if an error should trigger a retry."""
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return _is_retryable_status(exception.response.status_code)
    return False


class ProviderClient:
    """HTTP client for the provider API.

    Args:
        base_url: Prefix for relative paths passed to ``call``.
        max_attempts: Total attempts per call, including the first.
        timeout: Per-request timeout in seconds.
        page_size: Default page size for ``paginate``.
        sleep: Coroutine used for backoff sleeps (replaceable in tests).
    """

    def __init__(
        self,
        base_url: str = "",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.page_size = page_size
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClient":
        return cls(
            base_url=settings.provider_api_base_url,
            max_attempts=settings.provider_max_attempts,
            timeout=settings.provider_timeout_seconds,
            page_size=settings.provider_page_size,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization, coroutine-safe)."""
        if self._client is None:
            async with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources (coroutine-safe)."""
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self) -> "ProviderClient":
        """Enter async context manager."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager and close client."""
        await self.close()

    def url(self, path: str) -> str:
        """Resolve a path against the base URL; absolute URLs pass through."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def call(
        self,
        credential: Credential | None,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make a request with the retry policy applied.

        Args:
            credential: Bearer credential, or None for public endpoints.
            url: Absolute URL or path relative to ``base_url``.
            method: HTTP method.
            params: Query parameters.

        Returns:
            The first response that is neither 429 nor 5xx. This includes
            non-retryable 4xx responses, which are returned unraised.

        Raises:
            httpx.HTTPStatusError: 429/5xx on the final attempt.
            httpx.TransportError: Transport failure on the final attempt.
        """
        client = await self._get_client()
        headers = credential.authorization_header if credential else {}
        target = self.url(url)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=2, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_exception(_is_retryable_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

        async def send() -> httpx.Response:
            response = await client.request(method, target, params=params, headers=headers)
            if _is_retryable_status(response.status_code):
                response.raise_for_status()
            return response

        response = await retrying(send)
        if response.is_client_error:
            logger.warning(
                f"Provider returned {response.status_code} for {method} {target}"
            )
        return response

    async def get_json(
        self,
        credential: Credential | None,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET a JSON document, raising for any non-2xx final response."""
        response = await self.call(credential, url, params=params)
        response.raise_for_status()
        return response.json()

    async def paginate(
        self,
        credential: Credential | None,
        page_url: Callable[[int, int], str],
        extract: Callable[[Any], list[T]],
        page_size: int | None = None,
        max_pages: int = MAX_PAGES,
    ) -> list[T]:
        """Fetch pages until one comes back short or empty.

        Args:
            credential: Bearer credential.
            page_url: Builds the URL for ``(start, count)``.
            extract: Decodes the rows of one page.
            page_size: Rows requested per page.
            max_pages: Hard stop for runaway cursors.

        Returns:
            All rows across pages, in order.
        """
        size = page_size or self.page_size
        results: list[T] = []
        start = 0

        for page in range(1, max_pages + 1):
            data = await self.get_json(credential, page_url(start, size))
            rows = extract(data)
            if not rows:
                break

            results.extend(rows)
            if len(rows) < size:
                break
            start += size

            if page == max_pages:
                logger.warning(
                    f"Pagination stopped at safety limit of {max_pages} pages "
                    f"({len(results)} rows)"
                )

        return results
