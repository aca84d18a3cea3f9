"""Expiry sweeper — demotes lapsed VIP entitlements on every registered server.

Each demotion with a known Discord user also appends a VIP_EXPIRED outbox
event in the same transaction, so the bot eventually removes the role.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .utils import now_utc

if TYPE_CHECKING:
    from .config import VipSyncConfig
    from .entitlement_store import EntitlementStore


class ExpirySweeper:
    """Fixed-interval sweep task with a skip-if-busy guard."""

    def __init__(
        self,
        config: VipSyncConfig,
        entitlements: EntitlementStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._entitlements = entitlements
        self._logger = logger or logging.getLogger("vipsync.sweeper")
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()

        # Metrics counters
        self.sweeps_total: int = 0
        self.expired_total: int = 0

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_loop())
            self._logger.info("Expiry sweeper started (interval: %.0fs)", self._config.sweeper.interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweeper.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                self._logger.exception("Expiry sweep failed")

    async def run_once(self, now: datetime | None = None) -> int:
        """Sweep all servers once. Returns the number of demoted entitlements.

        Returns 0 without doing anything when a previous sweep is still running.
        """
        if self._tick_lock.locked():
            self._logger.warning("Previous expiry sweep still running, skipping tick")
            return 0

        async with self._tick_lock:
            now = now or now_utc()
            demoted = 0
            for server in self._config.servers:
                try:
                    expired = await self._entitlements.clear_expired(server.id, now)
                except Exception:
                    self._logger.exception("Expiry sweep failed for %s", server.id)
                    continue
                for record in expired:
                    self._logger.info(
                        "VIP %s expired on %s (discord=%s, steam=%s)",
                        record["previous_vip_type"], server.id,
                        record["discord_id"], record["steam_id"],
                    )
                demoted += len(expired)

            self.sweeps_total += 1
            self.expired_total += demoted
            return demoted
