"""Retention job — cron-scheduled compaction.

Processed outbox events and old linking sessions would otherwise grow
without bound. Pending events are never touched.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from croniter import croniter

from .utils import now_utc

if TYPE_CHECKING:
    from .config import RetentionConfig
    from .linking_sessions import LinkingSessionStore
    from .outbox import OutboxQueue


class RetentionJob:
    """Purges processed events and stale link sessions on a cron schedule."""

    def __init__(
        self,
        config: RetentionConfig,
        outbox: OutboxQueue,
        linking: LinkingSessionStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._outbox = outbox
        self._linking = linking
        self._logger = logger or logging.getLogger("vipsync.retention")
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._retention_loop())
            self._logger.info("Retention job scheduled (cron: %s)", self._config.cron)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def next_run(self, now: datetime) -> datetime:
        return croniter(self._config.cron, now).get_next(datetime)

    async def _retention_loop(self) -> None:
        while True:
            now = now_utc()
            delay = (self.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(delay, 1))
            try:
                await self.run_once()
            except Exception:
                self._logger.exception("Retention run failed")

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Run one compaction. Returns ``{events, sessions}`` removal counts."""
        if self._tick_lock.locked():
            self._logger.warning("Previous retention run still running, skipping")
            return {"events": 0, "sessions": 0}

        async with self._tick_lock:
            now = now or now_utc()
            events = await self._outbox.purge_processed(
                now - timedelta(days=self._config.processed_event_days),
            )
            sessions = await self._linking.prune(now - timedelta(days=self._config.session_days))
            self._logger.info("Retention: removed %d event(s), %d session(s)", events, sessions)
            return {"events": events, "sessions": sessions}
