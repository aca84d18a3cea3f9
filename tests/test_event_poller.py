"""Tests for EventPoller and RoleSyncHandler — the chat-bot side of the outbox."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from vip_sync.config import ConsumerConfig, VipSyncConfig
from vip_sync.errors import UpstreamError
from vip_sync.event_poller import EventPoller, RoleSyncHandler

VIP_ROLE = 11
VIP_PLUS_ROLE = 22


def _event(event_id: str = "e1", type_: str = "PAYMENT_CONFIRMED", vip_type: str | None = "vip") -> dict:
    return {
        "eventId": event_id,
        "type": type_,
        "discordId": "123",
        "serverId": "server1",
        "vipType": vip_type,
        "createdAt": "2026-03-01T12:00:00.000Z",
        "processed": False,
        "processedAt": None,
    }


@pytest.fixture
def consumer_config(sample_config: VipSyncConfig) -> ConsumerConfig:
    return sample_config.consumer


@pytest.fixture
def gateway() -> MagicMock:
    gw = MagicMock()
    gw.is_member = AsyncMock(return_value=True)
    gw.add_role = AsyncMock()
    gw.remove_role = AsyncMock()
    gw.send_dm = AsyncMock()
    return gw


@pytest.fixture
def handler(consumer_config: ConsumerConfig, gateway: MagicMock) -> RoleSyncHandler:
    return RoleSyncHandler(consumer_config, gateway, logging.getLogger("test"))


@pytest.fixture
def backend() -> MagicMock:
    client = MagicMock()
    client.get_pending_events = AsyncMock(return_value=[])
    client.ack_event = AsyncMock()
    return client


@pytest.fixture
def poller(consumer_config: ConsumerConfig, backend: MagicMock, handler: RoleSyncHandler) -> EventPoller:
    return EventPoller(consumer_config, backend, handler, logging.getLogger("test"))


# ═══════════════════════════════════════════════════════════════
#  RoleSyncHandler
# ═══════════════════════════════════════════════════════════════


class TestRoleSyncHandler:

    async def test_payment_vip(self, handler: RoleSyncHandler, gateway: MagicMock):
        await handler.handle(_event(vip_type="vip"))
        gateway.add_role.assert_awaited_once_with("123", VIP_ROLE)
        gateway.remove_role.assert_awaited_once_with("123", VIP_PLUS_ROLE)
        gateway.send_dm.assert_awaited_once()

    async def test_payment_vip_plus(self, handler: RoleSyncHandler, gateway: MagicMock):
        await handler.handle(_event(vip_type="vip+"))
        gateway.add_role.assert_awaited_once_with("123", VIP_PLUS_ROLE)
        gateway.remove_role.assert_awaited_once_with("123", VIP_ROLE)

    async def test_expired_removes_both(self, handler: RoleSyncHandler, gateway: MagicMock):
        await handler.handle(_event(type_="VIP_EXPIRED"))
        gateway.add_role.assert_not_called()
        removed = {c.args[1] for c in gateway.remove_role.await_args_list}
        assert removed == {VIP_ROLE, VIP_PLUS_ROLE}

    async def test_steam_linked_only_dms(self, handler: RoleSyncHandler, gateway: MagicMock):
        await handler.handle(_event(type_="STEAM_LINKED", vip_type=None))
        gateway.send_dm.assert_awaited_once()
        gateway.is_member.assert_not_called()
        gateway.add_role.assert_not_called()

    async def test_member_left_guild(self, handler: RoleSyncHandler, gateway: MagicMock):
        gateway.is_member = AsyncMock(return_value=False)
        await handler.handle(_event())
        gateway.add_role.assert_not_called()

    async def test_dm_failure_is_swallowed(self, handler: RoleSyncHandler, gateway: MagicMock):
        gateway.send_dm = AsyncMock(side_effect=RuntimeError("DMs closed"))
        await handler.handle(_event())
        gateway.add_role.assert_awaited_once()

    async def test_role_failure_raises(self, handler: RoleSyncHandler, gateway: MagicMock):
        gateway.add_role = AsyncMock(side_effect=RuntimeError("missing permissions"))
        with pytest.raises(RuntimeError):
            await handler.handle(_event())

    def test_handles(self, handler: RoleSyncHandler):
        assert handler.handles("VIP_EXPIRED")
        assert not handler.handles("VIP_GIFTED")
        assert not handler.handles(None)


# ═══════════════════════════════════════════════════════════════
#  EventPoller
# ═══════════════════════════════════════════════════════════════


class TestEventPoller:

    async def test_acks_after_success(self, poller: EventPoller, backend: MagicMock, gateway: MagicMock):
        backend.get_pending_events = AsyncMock(return_value=[_event("e1"), _event("e2", "STEAM_LINKED")])
        assert await poller.poll_once() == 2
        assert [c.args[0] for c in backend.ack_event.await_args_list] == ["e1", "e2"]
        assert poller.events_applied_total == 2

    async def test_failed_handler_not_acked(self, poller: EventPoller, backend: MagicMock, gateway: MagicMock):
        """A failing event stays pending; the rest of the batch still runs."""
        gateway.add_role = AsyncMock(side_effect=[RuntimeError("rate limited"), None])
        backend.get_pending_events = AsyncMock(return_value=[_event("e1"), _event("e2")])
        assert await poller.poll_once() == 1
        backend.ack_event.assert_awaited_once_with("e2")
        assert poller.events_failed_total == 1

    async def test_unknown_type_acked(self, poller: EventPoller, backend: MagicMock, gateway: MagicMock):
        backend.get_pending_events = AsyncMock(return_value=[_event("e1", "VIP_GIFTED")])
        assert await poller.poll_once() == 1
        backend.ack_event.assert_awaited_once_with("e1")
        gateway.send_dm.assert_not_called()

    async def test_lost_ack_not_reapplied(self, poller: EventPoller, backend: MagicMock, gateway: MagicMock):
        """When only the ack failed, the redelivered event is acked without repeating side effects."""
        backend.get_pending_events = AsyncMock(return_value=[_event("e1")])
        backend.ack_event = AsyncMock(side_effect=[UpstreamError("timeout"), None])
        assert await poller.poll_once() == 0
        assert await poller.poll_once() == 1
        assert gateway.add_role.await_count == 1
        assert backend.ack_event.await_count == 2

    async def test_fetch_failure(self, poller: EventPoller, backend: MagicMock):
        backend.get_pending_events = AsyncMock(side_effect=UpstreamError("down"))
        assert await poller.poll_once() == 0

    async def test_event_without_id_skipped(self, poller: EventPoller, backend: MagicMock):
        backend.get_pending_events = AsyncMock(return_value=[{"type": "STEAM_LINKED"}])
        assert await poller.poll_once() == 0
        backend.ack_event.assert_not_called()

    async def test_remembered_ids_bounded(self, sample_config: VipSyncConfig, backend: MagicMock, handler):
        config = sample_config.consumer.model_copy(update={"remembered_event_ids": 2})
        poller = EventPoller(config, backend, handler, logging.getLogger("test"))
        backend.get_pending_events = AsyncMock(
            return_value=[_event(f"e{i}", "STEAM_LINKED") for i in range(5)],
        )
        await poller.poll_once()
        assert poller._applied == {"e3", "e4"}

    async def test_start_stop(self, poller: EventPoller):
        await poller.start()
        await poller.stop()
