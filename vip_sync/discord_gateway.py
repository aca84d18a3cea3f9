"""Discord side effects for the consumer, implemented with discord.py."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import discord

if TYPE_CHECKING:
    from .config import ConsumerConfig


def _snowflake(discord_id: str) -> int | None:
    """Discord user ids are numeric snowflakes; anything else names no user."""
    text = str(discord_id).strip()
    return int(text) if text.isascii() and text.isdigit() else None


class DiscordGateway:
    """Role changes and DMs in the configured guild."""

    def __init__(self, config: ConsumerConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("vipsync.discord")
        intents = discord.Intents.default()
        intents.members = True
        self._client = discord.Client(intents=intents)
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Log in and wait until the gateway session is ready."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._client.start(self._config.discord_token))
        ready = asyncio.create_task(self._client.wait_until_ready())
        done, _ = await asyncio.wait({self._task, ready}, return_when=asyncio.FIRST_COMPLETED)
        if self._task in done:
            ready.cancel()
            # Login failed; surface the error from client.start().
            self._task.result()
        self._logger.info("Discord gateway ready as %s", self._client.user)

    async def stop(self) -> None:
        await self._client.close()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _guild(self) -> discord.Guild:
        guild = self._client.get_guild(self._config.guild_id)
        if guild is None:
            guild = await self._client.fetch_guild(self._config.guild_id)
        return guild

    async def _member(self, discord_id: str) -> discord.Member | None:
        user_id = _snowflake(discord_id)
        if user_id is None:
            self._logger.warning("Ignoring non-numeric Discord id %r", discord_id)
            return None
        guild = await self._guild()
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None

    # ══════════════════════════════════════════════════════════
    #  ChatGateway
    # ══════════════════════════════════════════════════════════

    async def is_member(self, discord_id: str) -> bool:
        return await self._member(discord_id) is not None

    async def add_role(self, discord_id: str, role_id: int) -> None:
        if not role_id:
            self._logger.warning("Role id not configured, cannot grant role to %s", discord_id)
            return
        member = await self._member(discord_id)
        if member is not None:
            await member.add_roles(discord.Object(id=role_id), reason="vip-sync: VIP granted")

    async def remove_role(self, discord_id: str, role_id: int) -> None:
        if not role_id:
            return
        member = await self._member(discord_id)
        if member is not None and member.get_role(role_id) is not None:
            await member.remove_roles(discord.Object(id=role_id), reason="vip-sync: VIP revoked")

    async def send_dm(self, discord_id: str, message: str) -> None:
        user_id = _snowflake(discord_id)
        if user_id is None:
            self._logger.warning("Cannot DM non-numeric Discord id %r", discord_id)
            return
        user = await self._client.fetch_user(user_id)
        await user.send(message)
