"""Order ledger — checkout creation and the payment state machine.

An order is created ``pending`` once the gateway hands back a checkout URL.
Gateway notifications move it through free-text statuses; the success class
(approved/paid/confirmed) credits VIP time exactly once per
(orderNsu, transactionNsu).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .config import VIP_TYPES
from .errors import ConflictError, ValidationError
from .utils import generate_order_nsu, is_non_empty, now_utc, to_iso

if TYPE_CHECKING:
    from .config import VipSyncConfig
    from .database import VipDatabase
    from .payment_client import InfinitePayClient

SUCCESS_STATUSES = frozenset({"approved", "paid", "confirmed"})


def normalize_status(status: object) -> str:
    """Case-insensitive status; empty becomes ``unknown``."""
    text = str(status or "").strip().lower()
    return text or "unknown"


class OrderLedger:
    """Creates orders and applies gateway notifications to them."""

    def __init__(
        self,
        config: VipSyncConfig,
        database: VipDatabase,
        payment_client: InfinitePayClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._payments = payment_client
        self._logger = logger or logging.getLogger("vipsync.orders")
        self.checkouts_created_total: int = 0

    # ══════════════════════════════════════════════════════════
    #  Validation
    # ══════════════════════════════════════════════════════════

    def validate_request(self, discord_id: object, server_id: object, vip_type: object) -> None:
        """Reject bad input before any external call or write."""
        if not is_non_empty(discord_id) or not self._config.is_known_server(server_id):
            raise ValidationError("Valid discordId and serverId are required")
        if vip_type not in VIP_TYPES:
            raise ValidationError("vipType must be vip or vip+")

    # ══════════════════════════════════════════════════════════
    #  Creation
    # ══════════════════════════════════════════════════════════

    async def create_order(
        self,
        discord_id: str,
        server_id: str,
        vip_type: str,
        amount: float,
        checkout_url: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Persist a new pending order with a fresh orderNsu."""
        self.validate_request(discord_id, server_id, vip_type)
        return await self._db.create_order({
            "order_nsu": generate_order_nsu(),
            "discord_id": discord_id,
            "server_id": server_id,
            "vip_type": vip_type,
            "amount": amount,
            "checkout_url": checkout_url,
            "idempotency_key": idempotency_key,
            "created_at": to_iso(now or now_utc()),
        })

    async def checkout(
        self,
        discord_id: str,
        server_id: str,
        vip_type: str,
        redirect_url: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        """Create a payment link and its order.

        A repeated ``idempotency_key`` returns the original order without
        calling the gateway again. No order is stored when the gateway fails.
        """
        self.validate_request(discord_id, server_id, vip_type)

        if idempotency_key:
            existing = await self._db.get_order_by_idempotency_key(idempotency_key)
            if existing:
                self._check_same_intent(existing, discord_id, server_id, vip_type)
                self._logger.info("Checkout replay for key %s -> %s", idempotency_key, existing["order_nsu"])
                return existing

        if self._payments is None:
            raise ValidationError("Payment gateway is not configured")

        amount = self._config.pricing.price_for(vip_type)
        order_nsu = generate_order_nsu()
        base_url = self._config.http.public_url
        checkout_url = await self._payments.create_checkout_link(
            order_nsu=order_nsu,
            amount=amount,
            description=f"Rust {server_id.upper()} - {vip_type.upper()}",
            redirect_url=redirect_url or f"{base_url}/payment/success",
            webhook_url=f"{base_url}/webhooks/infinitepay",
            metadata={"discordId": discord_id, "serverId": server_id, "vipType": vip_type},
        )

        order = await self._db.create_order({
            "order_nsu": order_nsu,
            "discord_id": discord_id,
            "server_id": server_id,
            "vip_type": vip_type,
            "amount": amount,
            "checkout_url": checkout_url,
            "idempotency_key": idempotency_key,
            "created_at": to_iso(now_utc()),
        })
        if order["order_nsu"] != order_nsu:
            # Lost a race against a concurrent request with the same key.
            self._check_same_intent(order, discord_id, server_id, vip_type)
        else:
            self.checkouts_created_total += 1
            self._logger.info(
                "Order %s created: %s %s for %s (%.2f)",
                order_nsu, vip_type, server_id, discord_id, amount,
            )
        return order

    @staticmethod
    def _check_same_intent(order: dict, discord_id: str, server_id: str, vip_type: str) -> None:
        if (order["discord_id"], order["server_id"], order["vip_type"]) != (discord_id, server_id, vip_type):
            raise ConflictError("Idempotency key was already used for a different checkout")

    async def get_order(self, order_nsu: str) -> dict | None:
        return await self._db.get_order(order_nsu)

    # ══════════════════════════════════════════════════════════
    #  Gateway Notifications
    # ══════════════════════════════════════════════════════════

    async def apply_webhook(
        self,
        order_nsu: str,
        transaction_nsu: str,
        status: object,
        now: datetime | None = None,
    ) -> dict:
        """Apply one notification.

        Success-class statuses extend the buyer's VIP by the configured
        duration on top of any remaining time. Raises NotFoundError for an
        unknown order and ConflictError for a redelivered transaction.
        """
        normalized = normalize_status(status)
        credit = normalized in SUCCESS_STATUSES
        result = await self._db.apply_order_webhook(
            order_nsu,
            transaction_nsu,
            normalized,
            credit,
            now or now_utc(),
            self._config.pricing.duration_days,
        )
        if credit:
            ent = result["entitlement"]
            self._logger.info(
                "Payment confirmed for %s (tx %s): %s on %s until %s",
                order_nsu, transaction_nsu, ent["vip_type"], ent["server_id"], ent["vip_expires_at"],
            )
        else:
            self._logger.info("Order %s status -> %s", order_nsu, normalized)
        return result
