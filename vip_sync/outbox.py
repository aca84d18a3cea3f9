"""Outbox queue — durable event log polled by the chat bot.

Delivery is at-least-once: an event stays pending until acked, so a consumer
that dies between fetch and ack sees it again. Consumers must tolerate
duplicates; nothing is deduplicated here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from .errors import NotFoundError, ValidationError
from .utils import is_non_empty, now_utc

if TYPE_CHECKING:
    from .database import VipDatabase


class EventType(str, Enum):
    STEAM_LINKED = "STEAM_LINKED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    VIP_EXPIRED = "VIP_EXPIRED"


class OutboxQueue:
    """Append, list pending, ack and compact outbox events."""

    def __init__(self, database: VipDatabase, logger: logging.Logger | None = None) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("vipsync.outbox")

    async def enqueue(
        self,
        event_type: EventType | str,
        discord_id: str | None,
        server_id: str,
        vip_type: str | None = None,
        now: datetime | None = None,
    ) -> dict:
        try:
            event_type = EventType(event_type)
        except ValueError:
            raise ValidationError(f"Unknown event type: {event_type!r}") from None
        event = await self._db.enqueue_event(event_type.value, discord_id, server_id, vip_type, now or now_utc())
        self._logger.debug("Enqueued %s %s for %s on %s", event["type"], event["event_id"], discord_id, server_id)
        return event

    async def list_pending(self, limit: int | None = None) -> list[dict]:
        return await self._db.list_pending_events(limit)

    async def ack(self, event_id: str, now: datetime | None = None) -> dict:
        """Mark processed. Acking twice is a no-op; unknown ids raise NotFoundError."""
        if not is_non_empty(event_id):
            raise ValidationError("eventId is required")
        event = await self._db.ack_event(event_id, now or now_utc())
        if event is None:
            raise NotFoundError("Event not found")
        return event

    async def purge_processed(self, older_than: datetime) -> int:
        removed = await self._db.purge_processed_events(older_than)
        if removed:
            self._logger.info("Purged %d processed outbox event(s)", removed)
        return removed

    async def pending_count(self) -> int:
        return await self._db.count_pending_events()
