"""Outbox consumer — polls the backend and applies chat-side effects.

Delivery from the backend is at-least-once. An event is acked only after its
handler succeeded; a failed handler leaves it pending for the next poll. Ids
of recently applied events are remembered so an event whose ack was lost is
acked again without repeating its side effects.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Protocol

from .errors import UpstreamError
from .outbox import EventType

if TYPE_CHECKING:
    from .backend_client import BackendApiClient
    from .config import ConsumerConfig


class ChatGateway(Protocol):
    """Chat-platform side effects needed by RoleSyncHandler."""

    async def is_member(self, discord_id: str) -> bool: ...

    async def add_role(self, discord_id: str, role_id: int) -> None: ...

    async def remove_role(self, discord_id: str, role_id: int) -> None: ...

    async def send_dm(self, discord_id: str, message: str) -> None: ...


class RoleSyncHandler:
    """Maps outbox events to role grants/revocations and direct messages."""

    def __init__(self, config: ConsumerConfig, gateway: ChatGateway, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._gateway = gateway
        self._logger = logger or logging.getLogger("vipsync.roles")

    def handles(self, event_type: str) -> bool:
        return event_type in {t.value for t in EventType}

    async def handle(self, event: dict) -> None:
        """Apply one event. Raises if a role change fails."""
        event_type = EventType(event["type"])
        discord_id = event["discordId"]
        server_id = event["serverId"]

        if event_type is EventType.STEAM_LINKED:
            await self._notify(discord_id, f"Your Steam account is now linked on {server_id}.")
            return

        if not discord_id or not await self._gateway.is_member(discord_id):
            self._logger.info("Member %s is not in the guild, skipping %s", discord_id, event_type.value)
            return

        vip_role = self._config.vip_role_id
        vip_plus_role = self._config.vip_plus_role_id
        vip_type = event.get("vipType")

        if event_type is EventType.PAYMENT_CONFIRMED:
            grant, revoke = (vip_plus_role, vip_role) if vip_type == "vip+" else (vip_role, vip_plus_role)
            await self._gateway.add_role(discord_id, grant)
            await self._gateway.remove_role(discord_id, revoke)
            await self._notify(
                discord_id, f"Payment confirmed on {server_id}. Role {(vip_type or 'vip').upper()} applied.",
            )
        elif event_type is EventType.VIP_EXPIRED:
            await self._gateway.remove_role(discord_id, vip_role)
            await self._gateway.remove_role(discord_id, vip_plus_role)
            await self._notify(discord_id, f"Your {(vip_type or 'vip').upper()} expired on {server_id}.")

    async def _notify(self, discord_id: str, message: str) -> None:
        try:
            await self._gateway.send_dm(discord_id, message)
        except Exception as e:
            self._logger.warning("Failed to DM %s: %s", discord_id, e)


class EventPoller:
    """Fixed-interval poll loop over the backend's pending events."""

    def __init__(
        self,
        config: ConsumerConfig,
        client: BackendApiClient,
        handler: RoleSyncHandler,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._handler = handler
        self._logger = logger or logging.getLogger("vipsync.poller")
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()
        self._applied_order: deque[str] = deque()
        self._applied: set[str] = set()

        # Metrics counters
        self.events_applied_total: int = 0
        self.events_failed_total: int = 0

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())
            self._logger.info("Event poller started (interval: %.0fs)", self._config.polling_interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                self._logger.exception("Event poll failed")
            await asyncio.sleep(self._config.polling_interval_seconds)

    def _remember(self, event_id: str) -> None:
        if event_id in self._applied:
            return
        self._applied.add(event_id)
        self._applied_order.append(event_id)
        while len(self._applied_order) > self._config.remembered_event_ids:
            self._applied.discard(self._applied_order.popleft())

    async def poll_once(self) -> int:
        """Process one batch. Returns the number of events acked."""
        if self._tick_lock.locked():
            self._logger.debug("Previous poll still running, skipping")
            return 0

        async with self._tick_lock:
            try:
                events = await self._client.get_pending_events()
            except UpstreamError as e:
                self._logger.warning("Could not fetch pending events: %s", e)
                return 0

            acked = 0
            for event in events:
                event_id = event.get("eventId")
                if not event_id:
                    self._logger.warning("Skipping event without eventId: %r", event)
                    continue

                if event_id not in self._applied:
                    if not self._handler.handles(event.get("type")):
                        self._logger.warning("Unknown event type %r (%s), acking", event.get("type"), event_id)
                    else:
                        try:
                            await self._handler.handle(event)
                        except Exception:
                            self.events_failed_total += 1
                            self._logger.exception("Handler failed for %s %s", event.get("type"), event_id)
                            continue
                        self.events_applied_total += 1
                    self._remember(event_id)

                try:
                    await self._client.ack_event(event_id)
                except UpstreamError as e:
                    self._logger.warning("Ack failed for %s: %s", event_id, e)
                    continue
                acked += 1
            return acked
