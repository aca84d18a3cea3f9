"""Tests for OrderLedger and WebhookProcessor — checkout and the payment state machine."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from vip_sync.config import VipSyncConfig
from vip_sync.database import VipDatabase
from vip_sync.entitlement_store import EntitlementStore
from vip_sync.errors import AuthError, ConflictError, NotFoundError, UpstreamError, ValidationError
from vip_sync.order_ledger import OrderLedger, normalize_status
from vip_sync.outbox import OutboxQueue
from vip_sync.utils import to_iso
from vip_sync.webhook_processor import WebhookProcessor, extract_webhook_fields

from tests.conftest import NOW, WEBHOOK_SECRET


@pytest.mark.parametrize("raw,expected", [
    ("PAID", "paid"),
    ("  Approved ", "approved"),
    ("", "unknown"),
    (None, "unknown"),
    ("refused", "refused"),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


class TestCreateOrder:

    async def test_pending_with_fresh_nsu(self, ledger: OrderLedger):
        a = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        b = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        assert a["status"] == "pending"
        assert a["order_nsu"].startswith("ORD-")
        assert a["order_nsu"] != b["order_nsu"]

    @pytest.mark.parametrize("discord_id,server_id,vip_type", [
        ("", "server1", "vip"),
        ("d1", "server9", "vip"),
        ("d1", "server1", "gold"),
    ])
    async def test_rejects_bad_input(self, ledger: OrderLedger, discord_id, server_id, vip_type):
        with pytest.raises(ValidationError):
            await ledger.create_order(discord_id, server_id, vip_type, 1.0)


class TestCheckout:

    async def test_creates_link_and_order(self, ledger: OrderLedger, mock_payment_client: MagicMock):
        order = await ledger.checkout("d1", "server1", "vip+")
        assert order["checkout_url"] == "https://pay.example.com/c/abc"
        assert order["amount"] == 49.9
        kwargs = mock_payment_client.create_checkout_link.call_args.kwargs
        assert kwargs["order_nsu"] == order["order_nsu"]
        assert kwargs["description"] == "Rust SERVER1 - VIP+"
        assert kwargs["webhook_url"] == "https://vip.example.com/webhooks/infinitepay"
        assert kwargs["redirect_url"] == "https://vip.example.com/payment/success"

    async def test_validation_before_gateway(self, ledger: OrderLedger, mock_payment_client: MagicMock):
        with pytest.raises(ValidationError):
            await ledger.checkout("d1", "server1", "gold")
        mock_payment_client.create_checkout_link.assert_not_called()

    async def test_gateway_failure_stores_nothing(
        self, ledger: OrderLedger, mock_payment_client: MagicMock, database: VipDatabase,
    ):
        mock_payment_client.create_checkout_link = AsyncMock(side_effect=UpstreamError("down"))
        with pytest.raises(UpstreamError):
            await ledger.checkout("d1", "server1", "vip", idempotency_key="k1")
        assert await database.get_order_by_idempotency_key("k1") is None

    async def test_idempotency_key_replays(self, ledger: OrderLedger, mock_payment_client: MagicMock):
        first = await ledger.checkout("d1", "server1", "vip", idempotency_key="k1")
        second = await ledger.checkout("d1", "server1", "vip", idempotency_key="k1")
        assert first["order_nsu"] == second["order_nsu"]
        assert mock_payment_client.create_checkout_link.await_count == 1
        assert ledger.checkouts_created_total == 1

    async def test_idempotency_key_reuse_for_other_intent(self, ledger: OrderLedger):
        await ledger.checkout("d1", "server1", "vip", idempotency_key="k1")
        with pytest.raises(ConflictError):
            await ledger.checkout("d1", "server1", "vip+", idempotency_key="k1")

    async def test_no_gateway_configured(self, sample_config: VipSyncConfig, database: VipDatabase):
        ledger = OrderLedger(sample_config, database)
        with pytest.raises(ValidationError):
            await ledger.checkout("d1", "server1", "vip")


class TestApplyWebhook:

    async def test_unknown_order(self, ledger: OrderLedger):
        with pytest.raises(NotFoundError):
            await ledger.apply_webhook("ORD-missing", "T1", "paid", now=NOW)

    async def test_success_credits_thirty_days(
        self, ledger: OrderLedger, entitlements: EntitlementStore, outbox: OutboxQueue,
    ):
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        result = await ledger.apply_webhook(order["order_nsu"], "T1", "PAID", now=NOW)
        assert result["order"]["status"] == "paid"
        rec = await entitlements.get("server1", discord_id="d1")
        assert rec["vip_type"] == "vip"
        assert rec["vip_expires_at"] == to_iso(NOW + timedelta(days=30))
        events = await outbox.list_pending()
        assert [(e["type"], e["discord_id"], e["vip_type"]) for e in events] == [("PAYMENT_CONFIRMED", "d1", "vip")]

    async def test_second_purchase_stacks(self, ledger: OrderLedger, entitlements: EntitlementStore):
        """Two purchases at t and t+1d leave an expiry of t+60d."""
        o1 = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        o2 = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        await ledger.apply_webhook(o1["order_nsu"], "T1", "approved", now=NOW)
        await ledger.apply_webhook(o2["order_nsu"], "T2", "approved", now=NOW + timedelta(days=1))
        rec = await entitlements.get("server1", discord_id="d1")
        assert rec["vip_expires_at"] == to_iso(NOW + timedelta(days=60))

    async def test_purchase_after_expiry_starts_from_now(self, ledger: OrderLedger, entitlements: EntitlementStore):
        await entitlements.upsert("server1", {
            "discord_id": "d1", "vip_type": "vip", "vip_expires_at": to_iso(NOW - timedelta(days=5)),
        }, NOW)
        order = await ledger.create_order("d1", "server1", "vip+", 49.9, now=NOW)
        await ledger.apply_webhook(order["order_nsu"], "T1", "confirmed", now=NOW)
        rec = await entitlements.get("server1", discord_id="d1")
        assert rec["vip_type"] == "vip+"
        assert rec["vip_expires_at"] == to_iso(NOW + timedelta(days=30))

    async def test_redelivery_credits_once(
        self, ledger: OrderLedger, entitlements: EntitlementStore, outbox: OutboxQueue,
    ):
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        await ledger.apply_webhook(order["order_nsu"], "T1", "paid", now=NOW)
        with pytest.raises(ConflictError):
            await ledger.apply_webhook(order["order_nsu"], "T1", "paid", now=NOW + timedelta(minutes=5))
        rec = await entitlements.get("server1", discord_id="d1")
        assert rec["vip_expires_at"] == to_iso(NOW + timedelta(days=30))
        assert await outbox.pending_count() == 1

    async def test_non_success_status(self, ledger: OrderLedger, entitlements: EntitlementStore, outbox: OutboxQueue):
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        result = await ledger.apply_webhook(order["order_nsu"], "T1", "  ", now=NOW)
        assert result["order"]["status"] == "unknown"
        assert result["order"]["transaction_nsu"] == "T1"
        assert await entitlements.get("server1", discord_id="d1") is None
        assert await outbox.pending_count() == 0


class TestWebhookProcessor:

    async def test_bad_secret(self, webhook_processor: WebhookProcessor, ledger: OrderLedger, outbox: OutboxQueue):
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        with pytest.raises(AuthError):
            await webhook_processor.handle("wrong", order["order_nsu"], "T1", "paid")
        with pytest.raises(AuthError):
            await webhook_processor.handle(None, order["order_nsu"], "T1", "paid")
        assert await outbox.pending_count() == 0

    async def test_unset_secret_rejects_everything(self, ledger: OrderLedger):
        processor = WebhookProcessor("", ledger)
        with pytest.raises(AuthError):
            await processor.handle("", "ORD-1", "T1", "paid")

    async def test_missing_ids(self, webhook_processor: WebhookProcessor):
        with pytest.raises(ValidationError):
            await webhook_processor.handle(WEBHOOK_SECRET, "ORD-1", None, "paid")

    async def test_applies(self, webhook_processor: WebhookProcessor, ledger: OrderLedger):
        order = await ledger.create_order("d1", "server1", "vip", 29.9, now=NOW)
        result = await webhook_processor.handle(WEBHOOK_SECRET, order["order_nsu"], "T1", "paid")
        assert result["entitlement"]["vip_type"] == "vip"


class TestExtractWebhookFields:

    def test_flat(self):
        assert extract_webhook_fields({"order_nsu": "O", "transaction_nsu": "T", "status": "paid"}) == ("O", "T", "paid")

    def test_nested(self):
        body = {"order": {"order_nsu": "O"}, "transaction": {"transaction_nsu": 123}, "transaction_status": "approved"}
        assert extract_webhook_fields(body) == ("O", "123", "approved")

    def test_empty(self):
        assert extract_webhook_fields({}) == (None, None, "")
