from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from config import settings

logger = logging.getLogger("irrigation.hub.relay")


class RelayError(RuntimeError):
    """Raised when the relay backend cannot be reached or rejects a command."""


class RelayBackend(Protocol):
    async def set_output(self, channel: str, on: bool) -> bool: ...

    async def close(self) -> None: ...


class LoxoneRelay:
    """Drives Loxone Miniserver virtual inputs over the /dev/sps/io HTTP interface."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(settings.loxone_host and settings.loxone_username)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.relay_timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def set_output(self, channel: str, on: bool) -> bool:
        """Switch ``channel`` to 1/0. Returns False when no Miniserver is configured."""
        if not self.configured:
            logger.debug("Relay backend not configured; skipping %s -> %s", channel, int(on))
            return False
        if not channel:
            raise RelayError("Zone has no output channel")
        url = f"http://{settings.loxone_host}/dev/sps/io/{channel}/{1 if on else 0}"
        client = await self._get_client()
        try:
            response = await client.get(
                url,
                auth=(settings.loxone_username or "", settings.loxone_password or ""),
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RelayError(f"Loxone command {channel} -> {int(on)} failed: {exc}") from exc
        logger.info("Loxone: %s -> %s", channel, "on" if on else "off")
        return True

    async def test_connection(self, host: str, username: str, password: str) -> dict[str, Any]:
        if not host or not username or not password:
            raise RelayError("Host, username and password are required")
        client = await self._get_client()
        try:
            response = await client.get(f"http://{host}/dev/sps/status", auth=(username, password))
            response.raise_for_status()
        except httpx.ConnectError as exc:
            raise RelayError("Miniserver not reachable") from exc
        except httpx.TimeoutException as exc:
            raise RelayError("Timeout - Miniserver is not responding") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 401:
                raise RelayError("Wrong username or password") from exc
            raise RelayError(f"Connection failed (HTTP {exc.response.status_code})") from exc
        except httpx.HTTPError as exc:
            raise RelayError("Connection failed") from exc
        return {"status": response.status_code, "body": response.text}


loxone_relay = LoxoneRelay()

__all__ = ["LoxoneRelay", "RelayBackend", "RelayError", "loxone_relay"]
