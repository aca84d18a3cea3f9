"""Backend HTTP API — aiohttp.web application.

Routes for the bot (API key), game-server plugins (plugin token), the payment
gateway (shared webhook secret) and the Steam login round trip. Domain errors
raised by handlers are mapped to JSON responses by ``_error_middleware``.
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from . import __version__
from .errors import AuthError, ConflictError, ValidationError, VipSyncError
from .utils import is_non_empty, now_utc, to_iso
from .webhook_processor import extract_webhook_fields

if TYPE_CHECKING:
    from .config import VipSyncConfig
    from .database import VipDatabase
    from .entitlement_store import EntitlementStore
    from .linking_sessions import LinkingSessionStore
    from .order_ledger import OrderLedger
    from .outbox import OutboxQueue
    from .sweeper import ExpirySweeper
    from .webhook_processor import WebhookProcessor


def event_to_json(event: dict) -> dict:
    return {
        "eventId": event["event_id"],
        "type": event["type"],
        "discordId": event["discord_id"],
        "serverId": event["server_id"],
        "vipType": event["vip_type"],
        "createdAt": event["created_at"],
        "processed": event["processed"],
        "processedAt": event["processed_at"],
    }


def entitlement_to_json(record: dict) -> dict:
    return {
        "serverId": record["server_id"],
        "discordId": record["discord_id"],
        "steamId": record["steam_id"],
        "vipType": record["vip_type"],
        "vipExpiresAt": record["vip_expires_at"],
    }


class BackendApiServer:
    """HTTP surface of the backend process."""

    def __init__(
        self,
        config: VipSyncConfig,
        database: VipDatabase,
        entitlements: EntitlementStore,
        ledger: OrderLedger,
        outbox: OutboxQueue,
        linking: LinkingSessionStore,
        webhooks: WebhookProcessor,
        sweeper: ExpirySweeper | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._entitlements = entitlements
        self._ledger = ledger
        self._outbox = outbox
        self._linking = linking
        self._webhooks = webhooks
        self._sweeper = sweeper
        self._logger = logger or logging.getLogger("vipsync.api")
        self._runner: web.AppRunner | None = None

        # Counters (for metrics)
        self.webhooks_applied_total: int = 0
        self.webhooks_duplicate_total: int = 0
        self.steam_links_total: int = 0
        self.events_acked_total: int = 0

        self.app = web.Application(middlewares=[self._error_middleware, self._auth_middleware])
        self.app.router.add_get("/health", self.health)
        self.app.router.add_get("/metrics", self.metrics)
        self.app.router.add_get("/auth/steam/link", self.steam_link)
        self.app.router.add_post("/auth/steam/link", self.steam_link)
        self.app.router.add_get("/auth/steam/callback", self.steam_callback)
        self.app.router.add_get("/payments/checkout", self.checkout)
        self.app.router.add_post("/payments/checkout", self.checkout)
        self.app.router.add_post("/webhooks/infinitepay", self.infinitepay_webhook)
        self.app.router.add_post("/bot/interactions", self.bot_interaction)
        self.app.router.add_get("/bot/events", self.bot_events)
        self.app.router.add_post("/bot/events/{event_id}/ack", self.bot_ack_event)
        self.app.router.add_get("/bot/ping", self.bot_ping)
        self.app.router.add_post("/plugin/apply-vip", self.plugin_apply_vip)
        self.app.router.add_post("/plugin/remove-vip", self.plugin_remove_vip)
        self.app.router.add_get("/plugin/vip-status", self.plugin_vip_status)

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.http.host, self._config.http.port)
        await site.start()
        self._logger.info("Backend API listening on %s:%d", self._config.http.host, self._config.http.port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Middlewares
    # ══════════════════════════════════════════════════════════

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except VipSyncError as e:
            if e.status >= 500:
                self._logger.warning("%s %s failed upstream: %s", request.method, request.path, e.message)
            return web.json_response({"error": e.message, "code": e.code}, status=e.status)
        except Exception:
            self._logger.exception("Unhandled error on %s %s", request.method, request.path)
            return web.json_response({"error": "internal server error", "code": "internal_error"}, status=500)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path.startswith("/bot/"):
            self._check_token(self._bot_key_from(request), self._config.auth.bot_api_key.strip(), "API key")
        elif request.path.startswith("/plugin/"):
            self._check_token(
                request.headers.get("x-api-token", "").strip(),
                self._config.auth.effective_plugin_token,
                "plugin token",
            )
        return await handler(request)

    @staticmethod
    def _bot_key_from(request: web.Request) -> str:
        key = request.headers.get("x-api-key", "").strip()
        if not key:
            auth_header = request.headers.get("Authorization", "").strip()
            if auth_header.lower().startswith("bearer "):
                key = auth_header[7:].strip()
        return key

    @staticmethod
    def _check_token(received: str, expected: str, label: str) -> None:
        if not expected or not received or not hmac.compare_digest(received.encode(), expected.encode()):
            raise AuthError(f"Invalid {label}")

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    @staticmethod
    async def _payload(request: web.Request) -> dict[str, Any]:
        """Query string for GET, JSON body otherwise."""
        if request.method == "GET":
            return dict(request.query)
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be JSON") from None
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    # ══════════════════════════════════════════════════════════
    #  Public
    # ══════════════════════════════════════════════════════════

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "servers": sorted(self._config.server_ids),
        })

    async def metrics(self, request: web.Request) -> web.Response:
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"vipsync_checkouts_created_total {self._ledger.checkouts_created_total}")
        lines.append(f"vipsync_webhooks_applied_total {self.webhooks_applied_total}")
        lines.append(f"vipsync_webhooks_duplicate_total {self.webhooks_duplicate_total}")
        lines.append(f"vipsync_steam_links_total {self.steam_links_total}")
        lines.append(f"vipsync_events_acked_total {self.events_acked_total}")
        if self._sweeper:
            lines.append(f"vipsync_sweeps_total {self._sweeper.sweeps_total}")
            lines.append(f"vipsync_vip_expired_total {self._sweeper.expired_total}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"vipsync_outbox_pending {await self._outbox.pending_count()}")
        now = now_utc()
        for server in self._config.servers:
            active = await self._db.count_active_vips(server.id, now)
            lines.append(f'vipsync_active_vips{{server="{server.id}"}} {active}')

        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def steam_link(self, request: web.Request) -> web.Response:
        payload = await self._payload(request)
        session = await self._linking.create_session(payload.get("discordId"), payload.get("serverId"))
        return web.json_response({"steamAuthUrl": session["auth_url"], "sessionId": session["session_id"]})

    async def steam_callback(self, request: web.Request) -> web.Response:
        """Browser-facing: answers in plain text rather than JSON."""
        session_id = request.query.get("sessionId", "")
        try:
            await self._linking.complete_callback(session_id, request.query)
        except VipSyncError as e:
            self._logger.info("Steam callback rejected (%s): %s", e.code, e.message)
            return web.Response(text=e.message, status=e.status)
        self.steam_links_total += 1
        return web.Response(text="Steam account linked. You can return to Discord now.")

    async def checkout(self, request: web.Request) -> web.Response:
        payload = await self._payload(request)
        idempotency_key = request.headers.get("Idempotency-Key") or payload.get("idempotencyKey")
        order = await self._ledger.checkout(
            payload.get("discordId"),
            payload.get("serverId"),
            payload.get("vipType"),
            redirect_url=payload.get("redirectUrl"),
            idempotency_key=idempotency_key or None,
        )
        return web.json_response({"checkoutUrl": order["checkout_url"], "orderNsu": order["order_nsu"]})

    async def infinitepay_webhook(self, request: web.Request) -> web.Response:
        secret = request.headers.get("x-webhook-secret")
        try:
            body = await self._payload(request)
        except ValidationError:
            body = {}
        order_nsu, transaction_nsu, status = extract_webhook_fields(body)
        try:
            await self._webhooks.handle(secret, order_nsu, transaction_nsu, status)
        except ConflictError:
            # Redelivery of an already credited transaction: acknowledge so the gateway stops retrying.
            self.webhooks_duplicate_total += 1
            self._logger.info("Duplicate webhook for %s / %s ignored", order_nsu, transaction_nsu)
            return web.json_response({"ok": True, "duplicate": True})
        self.webhooks_applied_total += 1
        return web.json_response({"ok": True})

    # ══════════════════════════════════════════════════════════
    #  Bot
    # ══════════════════════════════════════════════════════════

    async def bot_interaction(self, request: web.Request) -> web.Response:
        payload = await self._payload(request)
        missing = [f for f in ("discordId", "serverId", "type", "command") if not is_non_empty(payload.get(f))]
        if "discordId" in missing or "serverId" in missing:
            raise ValidationError("Valid discordId and serverId are required")
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        return web.json_response({
            "ok": True,
            "interaction": {
                "discordId": payload["discordId"],
                "serverId": payload["serverId"],
                "type": payload["type"],
                "command": payload["command"],
                "receivedAt": to_iso(now_utc()),
            },
        })

    async def bot_events(self, request: web.Request) -> web.Response:
        limit = request.query.get("limit")
        if limit is not None and not (limit.isascii() and limit.isdigit() and int(limit) > 0):
            raise ValidationError("limit must be a positive integer")
        events = await self._outbox.list_pending(int(limit) if limit is not None else None)
        return web.json_response({"events": [event_to_json(e) for e in events]})

    async def bot_ack_event(self, request: web.Request) -> web.Response:
        event = await self._outbox.ack(request.match_info["event_id"])
        self.events_acked_total += 1
        return web.json_response({"ok": True, "processedAt": event["processed_at"]})

    async def bot_ping(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "ts": to_iso(now_utc())})

    # ══════════════════════════════════════════════════════════
    #  Game-Server Plugin
    # ══════════════════════════════════════════════════════════

    async def plugin_apply_vip(self, request: web.Request) -> web.Response:
        payload = await self._payload(request)
        record = await self._entitlements.apply_vip(
            payload.get("serverId"),
            payload.get("steamId"),
            payload.get("vipType"),
            vip_expires_at=payload.get("vipExpiresAt"),
            discord_id=payload.get("discordId") or None,
        )
        return web.json_response({"ok": True, "entitlement": entitlement_to_json(record)})

    async def plugin_remove_vip(self, request: web.Request) -> web.Response:
        payload = await self._payload(request)
        await self._entitlements.remove_vip(payload.get("serverId"), payload.get("steamId"))
        return web.json_response({"ok": True})

    async def plugin_vip_status(self, request: web.Request) -> web.Response:
        status = await self._entitlements.vip_status(
            request.query.get("serverId"), request.query.get("steamId"),
        )
        return web.json_response(status)
