"""Webhook processor — authenticates gateway callbacks and hands them to the ledger."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Any

from .errors import AuthError, ValidationError
from .utils import is_non_empty

if TYPE_CHECKING:
    from .order_ledger import OrderLedger


def _as_text(value: Any) -> str | None:
    # Gateways sometimes send numeric ids.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value if isinstance(value, str) else None


def extract_webhook_fields(body: dict[str, Any]) -> tuple[str | None, str | None, str]:
    """Pull (order_nsu, transaction_nsu, status) from the flat or nested payload shapes."""
    order = body.get("order") if isinstance(body.get("order"), dict) else {}
    transaction = body.get("transaction") if isinstance(body.get("transaction"), dict) else {}
    order_nsu = body.get("order_nsu") or order.get("order_nsu")
    transaction_nsu = body.get("transaction_nsu") or transaction.get("transaction_nsu")
    status = body.get("status") or body.get("transaction_status") or ""
    return _as_text(order_nsu), _as_text(transaction_nsu), str(status)


class WebhookProcessor:
    """Shared-secret gate in front of OrderLedger.apply_webhook."""

    def __init__(self, secret: str, ledger: OrderLedger, logger: logging.Logger | None = None) -> None:
        self._secret = secret
        self._ledger = ledger
        self._logger = logger or logging.getLogger("vipsync.webhooks")

    def _authenticate(self, secret_header: str | None) -> None:
        # An unset secret rejects everything rather than accepting everything.
        if not self._secret or not secret_header or not hmac.compare_digest(
            secret_header.encode(), self._secret.encode(),
        ):
            self._logger.warning("Rejected webhook with invalid secret")
            raise AuthError("Invalid webhook secret")

    async def handle(
        self,
        secret_header: str | None,
        order_nsu: object,
        transaction_nsu: object,
        status: object,
    ) -> dict:
        self._authenticate(secret_header)
        if not is_non_empty(order_nsu) or not is_non_empty(transaction_nsu):
            raise ValidationError("order_nsu and transaction_nsu are required")
        return await self._ledger.apply_webhook(order_nsu, transaction_nsu, status)
