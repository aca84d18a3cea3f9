"""Entitlement store — per-server VIP records, the source of truth for game servers.

Wraps the entitlement tables of VipDatabase with registry and input
validation, and computes the read model served to game-server plugins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .config import VIP_TYPES
from .database import ENTITLEMENT_FIELDS
from .errors import NotFoundError, ValidationError
from .utils import is_non_empty, now_utc, parse_timestamp, to_iso

if TYPE_CHECKING:
    from .config import VipSyncConfig
    from .database import VipDatabase


class EntitlementStore:
    """Upserts, lookups and the ``hasVip`` read model."""

    def __init__(
        self,
        config: VipSyncConfig,
        database: VipDatabase,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger or logging.getLogger("vipsync.entitlements")

    def _require_server(self, server_id: object) -> str:
        if not self._config.is_known_server(server_id):
            raise ValidationError(f"Unknown serverId: {server_id!r}")
        return server_id  # type: ignore[return-value]

    # ══════════════════════════════════════════════════════════
    #  Core Operations
    # ══════════════════════════════════════════════════════════

    async def upsert(self, server_id: str, patch: dict[str, Any], now: datetime | None = None) -> dict:
        """Merge ``patch`` over the record matched by discordId or steamId.

        Keys absent from ``patch`` keep their stored value. A record is created
        when nothing matches.
        """
        self._require_server(server_id)
        unknown = set(patch) - set(ENTITLEMENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown entitlement fields: {sorted(unknown)}")
        if not (patch.get("discord_id") or patch.get("steam_id")):
            raise ValidationError("discordId or steamId is required")
        if patch.get("vip_type") is not None and patch["vip_type"] not in VIP_TYPES:
            raise ValidationError("vipType must be vip or vip+")

        record = await self._db.upsert_entitlement(server_id, patch, now or now_utc())
        self._logger.debug("Entitlement #%d upserted on %s", record["id"], server_id)
        return record

    async def get(
        self,
        server_id: str,
        discord_id: str | None = None,
        steam_id: str | None = None,
    ) -> dict | None:
        self._require_server(server_id)
        if not (discord_id or steam_id):
            raise ValidationError("discordId or steamId is required")
        return await self._db.get_entitlement(server_id, discord_id=discord_id, steam_id=steam_id)

    async def clear_expired(self, server_id: str, now: datetime | None = None) -> list[dict]:
        """Demote lapsed records on one server; see ExpirySweeper."""
        self._require_server(server_id)
        return await self._db.clear_expired(server_id, now or now_utc())

    # ══════════════════════════════════════════════════════════
    #  Game-Server Surface
    # ══════════════════════════════════════════════════════════

    async def vip_status(self, server_id: str, steam_id: str, now: datetime | None = None) -> dict:
        """Read model for plugins. ``hasVip`` is derived, never stored."""
        self._require_server(server_id)
        if not is_non_empty(steam_id):
            raise ValidationError("serverId and steamId are required")

        now = now or now_utc()
        record = await self._db.get_entitlement(server_id, steam_id=steam_id)
        if not record:
            return {"hasVip": False, "vipType": None, "vipExpiresAt": None, "discordId": None}

        expires_at = parse_timestamp(record["vip_expires_at"])
        has_vip = bool(record["vip_type"] and expires_at and expires_at > now)
        return {
            "hasVip": has_vip,
            "vipType": record["vip_type"] if has_vip else None,
            "vipExpiresAt": record["vip_expires_at"] if has_vip else None,
            "discordId": record["discord_id"],
        }

    async def apply_vip(
        self,
        server_id: str,
        steam_id: str,
        vip_type: str,
        vip_expires_at: str | None = None,
        discord_id: str | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Grant VIP directly by steamId (plugin/admin path)."""
        self._require_server(server_id)
        if not is_non_empty(steam_id) or vip_type not in VIP_TYPES:
            raise ValidationError("Invalid data to apply VIP")

        now = now or now_utc()
        if vip_expires_at:
            expires = parse_timestamp(vip_expires_at)
            if expires is None:
                raise ValidationError("vipExpiresAt must be an ISO-8601 timestamp")
        else:
            expires = now + timedelta(days=self._config.pricing.duration_days)

        patch: dict[str, Any] = {
            "steam_id": steam_id,
            "vip_type": vip_type,
            "vip_expires_at": to_iso(expires),
        }
        if discord_id:
            patch["discord_id"] = discord_id
        record = await self._db.upsert_entitlement(server_id, patch, now)
        self._logger.info("VIP %s applied to steam %s on %s until %s", vip_type, steam_id, server_id, patch["vip_expires_at"])
        return record

    async def remove_vip(self, server_id: str, steam_id: str, now: datetime | None = None) -> dict:
        self._require_server(server_id)
        if not is_non_empty(steam_id):
            raise ValidationError("serverId and steamId are required")
        record = await self._db.clear_vip(server_id, steam_id, now or now_utc())
        if record is None:
            raise NotFoundError("Player not found")
        self._logger.info("VIP removed from steam %s on %s", steam_id, server_id)
        return record
