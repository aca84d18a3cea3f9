"""Service orchestrators — BackendApp and ConsumerApp.

Backend: config → DB init → gateway clients → domain components →
background jobs → HTTP API → run until stopped.
Consumer: config → backend client → Discord gateway → event poller.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from . import __version__
from .api_server import BackendApiServer
from .backend_client import BackendApiClient
from .config import VipSyncConfig, load_config
from .database import VipDatabase
from .discord_gateway import DiscordGateway
from .entitlement_store import EntitlementStore
from .errors import UpstreamError
from .event_poller import EventPoller, RoleSyncHandler
from .linking_sessions import LinkingSessionStore
from .order_ledger import OrderLedger
from .outbox import OutboxQueue
from .payment_client import InfinitePayClient
from .retention import RetentionJob
from .steam_openid import SteamOpenIdClient
from .sweeper import ExpirySweeper
from .webhook_processor import WebhookProcessor


class BackendApp:
    """Top-level backend orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("vipsync")

        # Components (initialized in start())
        self.config: VipSyncConfig | None = None
        self.db: VipDatabase | None = None
        self.entitlements: EntitlementStore | None = None
        self.outbox: OutboxQueue | None = None
        self.payment_client: InfinitePayClient | None = None
        self.steam_client: SteamOpenIdClient | None = None
        self.ledger: OrderLedger | None = None
        self.linking: LinkingSessionStore | None = None
        self.webhooks: WebhookProcessor | None = None
        self.sweeper: ExpirySweeper | None = None
        self.retention: RetentionJob | None = None
        self.api_server: BackendApiServer | None = None

        self._running = False
        self._stopped = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start every component, then block until stop() is called."""
        self.logger.info("Starting vip-sync backend...")

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d server(s)", len(self.config.servers))
        if not self.config.infinitepay.webhook_secret:
            self.logger.warning("infinitepay.webhook_secret is empty; all payment webhooks will be rejected")
        if not self.config.auth.bot_api_key:
            self.logger.warning("auth.bot_api_key is empty; bot and plugin routes will reject every request")

        # 2. Initialize database
        self.db = VipDatabase(self.config.database.path, logging.getLogger("vipsync.database"))
        await self.db.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Gateway clients
        self.payment_client = InfinitePayClient(self.config.infinitepay)
        await self.payment_client.start()
        self.steam_client = SteamOpenIdClient(self.config.steam, realm=self.config.http.public_url)
        await self.steam_client.start()

        # 4. Domain components
        self.entitlements = EntitlementStore(self.config, self.db)
        self.outbox = OutboxQueue(self.db)
        self.ledger = OrderLedger(self.config, self.db, payment_client=self.payment_client)
        self.linking = LinkingSessionStore(self.config, self.db, self.steam_client)
        self.webhooks = WebhookProcessor(self.config.infinitepay.webhook_secret, self.ledger)

        # 5. Background jobs
        self.sweeper = ExpirySweeper(self.config, self.entitlements)
        if self.config.sweeper.enabled:
            await self.sweeper.start()
        self.retention = RetentionJob(self.config.retention, self.outbox, self.linking)
        if self.config.retention.enabled:
            await self.retention.start()

        # 6. HTTP API
        self.api_server = BackendApiServer(
            config=self.config,
            database=self.db,
            entitlements=self.entitlements,
            ledger=self.ledger,
            outbox=self.outbox,
            linking=self.linking,
            webhooks=self.webhooks,
            sweeper=self.sweeper,
        )
        await self.api_server.start()

        self._running = True
        self.logger.info("vip-sync backend started successfully (v%s)", __version__)

        # 7. Block until stop()
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        self._stop_event.set()
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        self.logger.info("Shutting down vip-sync backend...")

        if self.api_server:
            await self.api_server.stop()
        if self.retention:
            await self.retention.stop()
        if self.sweeper:
            await self.sweeper.stop()
        if self.steam_client:
            await self.steam_client.stop()
        if self.payment_client:
            await self.payment_client.stop()

        self.logger.info("vip-sync backend stopped.")


class ConsumerApp:
    """Chat-bot consumer orchestrator: Discord gateway plus the outbox poller."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("vipsync.consumer")

        self.config: VipSyncConfig | None = None
        self.backend_client: BackendApiClient | None = None
        self.gateway: DiscordGateway | None = None
        self.poller: EventPoller | None = None

        self._running = False
        self._stopped = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        self.logger.info("Starting vip-sync consumer...")

        self.config = load_config(str(self.config_path))
        consumer = self.config.consumer
        if not consumer.bot_api_key:
            self.logger.warning("consumer.bot_api_key is empty; the backend will reject every poll")

        self.backend_client = BackendApiClient(consumer)
        await self.backend_client.start()
        try:
            await self.backend_client.ping()
            self.logger.info("Backend reachable at %s", consumer.backend_url)
        except UpstreamError as e:
            self.logger.warning("Backend ping failed, will keep polling: %s", e)

        self.gateway = DiscordGateway(consumer)
        await self.gateway.start()

        self.poller = EventPoller(consumer, self.backend_client, RoleSyncHandler(consumer, self.gateway))
        await self.poller.start()

        self._running = True
        self.logger.info("vip-sync consumer started successfully (v%s)", __version__)
        await self._stop_event.wait()

    async def stop(self) -> None:
        self._stop_event.set()
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        self.logger.info("Shutting down vip-sync consumer...")

        if self.poller:
            await self.poller.stop()
        if self.gateway:
            await self.gateway.stop()
        if self.backend_client:
            await self.backend_client.stop()

        self.logger.info("vip-sync consumer stopped.")
