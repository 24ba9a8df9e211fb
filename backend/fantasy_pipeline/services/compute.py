"""Lifecycle control of the remote compute instance that hosts the worker.

Talks to a machines-style control API:

    GET  /apps/{app}/machines               list instances
    POST /apps/{app}/machines               create an instance
    POST /apps/{app}/machines/{id}/start    start an instance
    POST /apps/{app}/machines/{id}/stop     stop an instance

``ensure_running`` and ``stop`` are best-effort. Control API failures are
logged and swallowed; at worst an instance keeps running until the platform
reclaims it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from fantasy_pipeline.config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ComputeInstance:
    id: str
    state: str
    name: str | None = None

    @classmethod
    def from_api(cls, data: Any) -> "ComputeInstance":
        if not isinstance(data, dict) or "id" not in data:
            raise ValueError(f"Unexpected instance entry: {data!r}")
        return cls(
            id=str(data["id"]),
            state=str(data.get("state") or "unknown"),
            name=data.get("name"),
        )


class ComputeLifecycleManager:
    """Starts and stops worker instances through the control API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.app_name = settings.compute_app_name
        self._client = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()

    @property
    def machines_url(self) -> str:
        base = self.settings.compute_api_base_url.rstrip("/")
        return f"{base}/apps/{self.app_name}/machines"

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.compute_api_token}",
            "Content-Type": "application/json",
        }

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

    async def list_instances(self) -> list[ComputeInstance]:
        """List instances of the application. Raises on control API errors."""
        client = await self._get_client()
        response = await client.get(self.machines_url, headers=self._headers)
        response.raise_for_status()
        payload = response.json()
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ValueError(f"Expected a list of instances, got {type(payload).__name__}")
        return [ComputeInstance.from_api(item) for item in payload]

    async def _start(self, instance_id: str) -> None:
        client = await self._get_client()
        response = await client.post(
            f"{self.machines_url}/{instance_id}/start", headers=self._headers
        )
        response.raise_for_status()

    async def _create(self) -> str:
        client = await self._get_client()
        response = await client.post(
            self.machines_url,
            headers=self._headers,
            json={"config": {"image": self.settings.compute_image}},
        )
        response.raise_for_status()
        return ComputeInstance.from_api(response.json()).id

    async def ensure_running(self) -> str | None:
        """Start the first existing instance, or create one if there are none.

        Returns:
            The id of the started or created instance, or None on failure.
        """
        try:
            instances = await self.list_instances()
            if instances:
                instance = instances[0]
                logger.info(f"Starting compute instance {instance.id} ({instance.state})")
                await self._start(instance.id)
                return instance.id

            logger.info(f"No compute instances for {self.app_name}, creating one")
            instance_id = await self._create()
            logger.info(f"Created compute instance {instance_id}")
            return instance_id
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Failed to ensure compute instance is running: {type(e).__name__}: {e}")
            return None

    async def stop(self) -> bool:
        """Stop this worker's instance (or the first listed one).

        Returns:
            True if a stop command was accepted.
        """
        try:
            instance_id = self.settings.compute_machine_id
            if not instance_id:
                instances = await self.list_instances()
                if not instances:
                    logger.info(f"No compute instances for {self.app_name} to stop")
                    return False
                instance_id = instances[0].id

            client = await self._get_client()
            response = await client.post(
                f"{self.machines_url}/{instance_id}/stop", headers=self._headers
            )
            response.raise_for_status()
            logger.info(f"Stop requested for compute instance {instance_id}")
            return True
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Failed to stop compute instance: {type(e).__name__}: {e}")
            return False
