"""Backend API client used by the chat-bot consumer."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from .errors import UpstreamError

if TYPE_CHECKING:
    from .config import ConsumerConfig


class BackendApiClient:
    """Async wrapper around the backend's ``/bot`` and user-facing routes."""

    def __init__(self, config: ConsumerConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("vipsync.backend_client")
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session. The key goes out in both accepted headers."""
        self._session = aiohttp.ClientSession(
            base_url=self._config.backend_url,
            headers={
                "x-api-key": self._config.bot_api_key,
                "Authorization": f"Bearer {self._config.bot_api_key}",
            },
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        if not self._session:
            raise UpstreamError("Backend client is not started")
        try:
            async with self._session.request(method, path, json=json) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._logger.warning("%s %s -> HTTP %d %s", method, path, resp.status, body[:200])
                    raise UpstreamError(f"Backend returned HTTP {resp.status} for {path}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Backend request {method} {path} failed: {e}") from e

    # ══════════════════════════════════════════════════════════
    #  Event Polling
    # ══════════════════════════════════════════════════════════

    async def get_pending_events(self) -> list[dict]:
        data = await self._request("GET", "/bot/events")
        events = data.get("events") if isinstance(data, dict) else None
        return events or []

    async def ack_event(self, event_id: str) -> None:
        await self._request("POST", f"/bot/events/{event_id}/ack")

    async def ping(self) -> dict:
        return await self._request("GET", "/bot/ping")

    # ══════════════════════════════════════════════════════════
    #  User Actions
    # ══════════════════════════════════════════════════════════

    async def request_steam_link(self, discord_id: str, server_id: str) -> dict:
        """Returns ``{steamAuthUrl, sessionId}``."""
        return await self._request("POST", "/auth/steam/link", {"discordId": discord_id, "serverId": server_id})

    async def request_checkout(
        self,
        discord_id: str,
        server_id: str,
        vip_type: str,
        idempotency_key: str | None = None,
    ) -> dict:
        """Returns ``{checkoutUrl, orderNsu}``."""
        payload = {"discordId": discord_id, "serverId": server_id, "vipType": vip_type}
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._request("POST", "/payments/checkout", payload)

    async def send_interaction(self, payload: dict) -> dict:
        return await self._request("POST", "/bot/interactions", payload)
