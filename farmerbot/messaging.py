"""Reliable-messaging client used to check whether nodes answer.

Reachability is informational for operators and the reconciliation layer;
power decisions never depend on it.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from farmerbot.config import settings

logger = logging.getLogger(__name__)

SYSTEM_VERSION_COMMAND = "zos.system.version"


class MessagingError(Exception):
    """Relay call failed."""
    pass


class MessagingClient(Protocol):
    async def ping(self, node_twin_id: int) -> bool:
        ...


class HttpMessagingClient:
    """MessagingClient sending commands through an HTTP relay."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.relay_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.relay_timeout),
        )

    async def call(self, node_twin_id: int, command: str, payload: Any = None) -> Any:
        try:
            response = await self._client.post(
                f"{self.base_url}/twins/{node_twin_id}/call",
                json={"command": command, "data": payload},
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MessagingError(f"{command} to twin {node_twin_id} failed: {e}") from e

    async def ping(self, node_twin_id: int) -> bool:
        try:
            await self.call(node_twin_id, SYSTEM_VERSION_COMMAND)
        except MessagingError as e:
            logger.info(f"Twin {node_twin_id} is not reachable: {e}")
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()
