"""Client for the chain gateway that records node power targets.

Only two ledger operations are needed by the power manager: setting a node's
power target and reading it back. Every other node, farm and contract fact
arrives through the farm snapshot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from farmerbot.config import settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Ledger call failed (transport error, timeout, or rejected transaction)."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class Identity:
    """Signing identity of the farmer twin."""
    twin_id: int
    key_type: str = "sr25519"
    network: str = "dev"


@dataclass(frozen=True)
class PowerTarget:
    """Power target committed on the ledger for a node."""
    down: bool = False


class LedgerClient(Protocol):
    async def set_node_power_target(self, identity: Identity, node_id: int, up: bool) -> str:
        ...

    async def get_power_target(self, node_id: int) -> PowerTarget:
        ...


class HttpLedgerClient:
    """LedgerClient talking to a chain gateway over HTTP.

    No retries: the periodic tick is the retry mechanism.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.ledger_url).rstrip("/")
        self.token = settings.ledger_token if token is None else token
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.ledger_timeout),
        )

    def _headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = ""
            try:
                body = e.response.text[:500]
            except Exception:
                pass
            raise LedgerError(
                f"Ledger returned HTTP {e.response.status_code} for {method} {path}: {body}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise LedgerError(f"Ledger unreachable for {method} {path}: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise LedgerError(f"Ledger returned invalid JSON for {method} {path}") from e

    async def set_node_power_target(self, identity: Identity, node_id: int, up: bool) -> str:
        payload = {
            "twin_id": identity.twin_id,
            "key_type": identity.key_type,
            "network": identity.network,
            "up": up,
        }
        data = await self._request("POST", f"/nodes/{node_id}/power-target", json=payload)
        tx_hash = data.get("hash", "")
        logger.debug(f"Power target for node {node_id} set to {'up' if up else 'down'}: {tx_hash}")
        return tx_hash

    async def get_power_target(self, node_id: int) -> PowerTarget:
        data = await self._request("GET", f"/nodes/{node_id}/power-target")
        target = data.get("target", {})
        return PowerTarget(down=bool(target.get("is_down", False)))

    async def close(self) -> None:
        await self._client.aclose()
