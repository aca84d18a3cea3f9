"""Tests for ExpirySweeper and RetentionJob."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from vip_sync.config import VipSyncConfig
from vip_sync.entitlement_store import EntitlementStore
from vip_sync.linking_sessions import LinkingSessionStore
from vip_sync.outbox import EventType, OutboxQueue
from vip_sync.retention import RetentionJob
from vip_sync.sweeper import ExpirySweeper
from vip_sync.utils import to_iso

from tests.conftest import NOW


@pytest.fixture
def sweeper(sample_config: VipSyncConfig, entitlements: EntitlementStore) -> ExpirySweeper:
    return ExpirySweeper(sample_config, entitlements, logging.getLogger("test"))


class TestExpirySweeper:

    async def test_expires_across_servers(
        self, sweeper: ExpirySweeper, entitlements: EntitlementStore, outbox: OutboxQueue,
    ):
        for server_id in ("server1", "server2"):
            await entitlements.upsert(server_id, {
                "discord_id": "d1", "vip_type": "vip", "vip_expires_at": to_iso(NOW - timedelta(hours=1)),
            }, NOW)
        assert await sweeper.run_once(NOW) == 2
        events = await outbox.list_pending()
        assert sorted(e["server_id"] for e in events) == ["server1", "server2"]
        assert all(e["type"] == "VIP_EXPIRED" and e["vip_type"] == "vip" for e in events)
        assert sweeper.sweeps_total == 1
        assert sweeper.expired_total == 2

    async def test_vip_lapses_after_thirty_days(
        self, sweeper: ExpirySweeper, entitlements: EntitlementStore, ledger, outbox: OutboxQueue,
    ):
        """Purchase, then a sweep 30 days plus a second later demotes and emits VIP_EXPIRED."""
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        await ledger.apply_webhook(order["order_nsu"], "T1", "paid", now=NOW)
        await outbox.ack((await outbox.list_pending())[0]["event_id"])

        assert await sweeper.run_once(NOW + timedelta(days=29)) == 0
        assert await sweeper.run_once(NOW + timedelta(days=30, seconds=1)) == 1
        rec = await entitlements.get("server1", discord_id="d1")
        assert rec["vip_type"] is None and rec["vip_expires_at"] is None
        pending = await outbox.list_pending()
        assert [(e["type"], e["discord_id"]) for e in pending] == [(EventType.VIP_EXPIRED.value, "d1")]

    async def test_second_sweep_is_noop(self, sweeper: ExpirySweeper, entitlements: EntitlementStore):
        await entitlements.upsert("server1", {
            "discord_id": "d1", "vip_type": "vip", "vip_expires_at": to_iso(NOW - timedelta(hours=1)),
        }, NOW)
        assert await sweeper.run_once(NOW) == 1
        assert await sweeper.run_once(NOW) == 0

    async def test_failure_isolated_per_server(self, sample_config: VipSyncConfig):
        store = MagicMock()
        store.clear_expired = AsyncMock(side_effect=[RuntimeError("db gone"), [
            {"previous_vip_type": "vip", "discord_id": "d1", "steam_id": None},
        ]])
        sweeper = ExpirySweeper(sample_config, store, logging.getLogger("test"))
        assert await sweeper.run_once(NOW) == 1
        assert store.clear_expired.await_count == 2

    async def test_overlapping_tick_skipped(self, sample_config: VipSyncConfig):
        release = asyncio.Event()

        async def slow_clear(server_id, now):
            await release.wait()
            return []

        store = MagicMock()
        store.clear_expired = slow_clear
        sweeper = ExpirySweeper(sample_config, store, logging.getLogger("test"))
        first = asyncio.create_task(sweeper.run_once(NOW))
        await asyncio.sleep(0)
        assert await sweeper.run_once(NOW) == 0
        release.set()
        assert await first == 0
        assert sweeper.sweeps_total == 1

    async def test_start_stop(self, sweeper: ExpirySweeper):
        await sweeper.start()
        await sweeper.stop()
        await sweeper.stop()


class TestRetentionJob:

    @pytest.fixture
    def job(self, sample_config: VipSyncConfig, outbox: OutboxQueue, linking: LinkingSessionStore) -> RetentionJob:
        return RetentionJob(sample_config.retention, outbox, linking, logging.getLogger("test"))

    def test_next_run_follows_cron(self, job: RetentionJob):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert job.next_run(now) == datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)

    async def test_purges_old_processed_only(
        self, job: RetentionJob, outbox: OutboxQueue, linking: LinkingSessionStore, database,
    ):
        old_processed = await outbox.enqueue(EventType.STEAM_LINKED, "d1", "server1", now=NOW - timedelta(days=10))
        await outbox.ack(old_processed["event_id"], now=NOW - timedelta(days=8))
        recent = await outbox.enqueue(EventType.STEAM_LINKED, "d2", "server1", now=NOW - timedelta(days=2))
        await outbox.ack(recent["event_id"], now=NOW - timedelta(days=2))
        old_pending = await outbox.enqueue(EventType.STEAM_LINKED, "d3", "server1", now=NOW - timedelta(days=30))
        await linking.create_session("d1", "server1", now=NOW - timedelta(days=2))
        await linking.create_session("d2", "server1", now=NOW)

        assert await job.run_once(NOW) == {"events": 1, "sessions": 1}
        assert await database.get_event(old_processed["event_id"]) is None
        assert await database.get_event(recent["event_id"]) is not None
        assert await database.get_event(old_pending["event_id"]) is not None

    async def test_start_stop(self, job: RetentionJob):
        await job.start()
        await job.stop()
