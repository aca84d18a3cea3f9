"""Linking session store — binds a Discord user to an in-flight Steam login.

A session is created when the bot asks for a link URL and consumed once when
Steam redirects back. Consumption, the entitlement binding and the
STEAM_LINKED event commit together or not at all.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from .errors import ValidationError
from .utils import is_non_empty, now_utc

if TYPE_CHECKING:
    from .config import VipSyncConfig
    from .database import VipDatabase
    from .steam_openid import SteamOpenIdClient


class LinkingSessionStore:
    """Creates, consumes and prunes Steam linking sessions."""

    def __init__(
        self,
        config: VipSyncConfig,
        database: VipDatabase,
        steam_client: SteamOpenIdClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._steam = steam_client
        self._logger = logger or logging.getLogger("vipsync.linking")

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._config.steam.session_ttl_minutes)

    def callback_url(self, session_id: str) -> str:
        base = self._config.http.public_url
        return f"{base}/auth/steam/callback?{urlencode({'sessionId': session_id})}"

    async def create_session(self, discord_id: str, server_id: str, now: datetime | None = None) -> dict:
        """Open a session and return it with the Steam login URL (``auth_url``)."""
        if not is_non_empty(discord_id) or not self._config.is_known_server(server_id):
            raise ValidationError("Valid discordId and serverId are required")

        session = await self._db.create_link_session(str(uuid.uuid4()), discord_id, server_id, now or now_utc())
        session["auth_url"] = self._steam.build_auth_url(self.callback_url(session["session_id"]))
        self._logger.info("Link session %s opened for %s on %s", session["session_id"], discord_id, server_id)
        return session

    async def consume(self, session_id: str, steam_id: str, now: datetime | None = None) -> dict:
        """Use a session exactly once.

        Raises NotFoundError if it is unknown or already used, ExpiredError if
        past its TTL, ConflictError if the Steam account is bound elsewhere.
        """
        if not is_non_empty(session_id) or not is_non_empty(steam_id):
            raise ValidationError("sessionId and steamId are required")
        result = await self._db.consume_link_session(session_id, steam_id, now or now_utc(), self.ttl)
        session = result["session"]
        self._logger.info(
            "Steam %s linked to %s on %s", steam_id, session["discord_id"], session["server_id"],
        )
        return result

    async def complete_callback(self, session_id: str, openid_params: Mapping[str, str]) -> dict:
        """Verify the Steam assertion for ``session_id`` and consume the session."""
        if not is_non_empty(session_id):
            raise ValidationError("sessionId is missing")
        steam_id = await self._steam.verify(openid_params, self.callback_url(session_id))
        return await self.consume(session_id, steam_id)

    async def prune(self, older_than: datetime) -> int:
        removed = await self._db.prune_link_sessions(older_than)
        if removed:
            self._logger.info("Pruned %d link session(s)", removed)
        return removed
