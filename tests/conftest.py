"""Shared test fixtures for vip-sync."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from vip_sync.config import VipSyncConfig
from vip_sync.database import VipDatabase
from vip_sync.entitlement_store import EntitlementStore
from vip_sync.linking_sessions import LinkingSessionStore
from vip_sync.order_ledger import OrderLedger
from vip_sync.outbox import OutboxQueue
from vip_sync.steam_openid import SteamOpenIdClient
from vip_sync.webhook_processor import WebhookProcessor

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

BOT_KEY = "test-bot-key"
PLUGIN_TOKEN = "test-plugin-token"
WEBHOOK_SECRET = "test-webhook-secret"


# ── Minimal config dict matching VipSyncConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "servers": [{"id": "server1", "name": "Main"}, {"id": "server2", "name": "Modded"}],
        "database": {"path": ":memory:"},
        "http": {"host": "127.0.0.1", "port": 8080, "base_url": "https://vip.example.com"},
        "auth": {"bot_api_key": BOT_KEY, "plugin_api_token": PLUGIN_TOKEN},
        "pricing": {"vip": 29.9, "vip_plus": 49.9, "duration_days": 30},
        "infinitepay": {"handle": "test-handle", "webhook_secret": WEBHOOK_SECRET},
        "steam": {"session_ttl_minutes": 15},
        "sweeper": {"enabled": False, "interval_seconds": 60},
        "retention": {"enabled": False, "processed_event_days": 7, "session_days": 1},
        "consumer": {
            "backend_url": "http://backend.test",
            "bot_api_key": BOT_KEY,
            "polling_interval_seconds": 15,
            "guild_id": 1000,
            "vip_role_id": 11,
            "vip_plus_role_id": 22,
            "remembered_event_ids": 100,
        },
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> VipSyncConfig:
    """Return a parsed VipSyncConfig."""
    return VipSyncConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_vip_sync.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[VipDatabase, None]:
    """Provide an initialized database with temp file."""
    db = VipDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Domain components ───────────────────────────────────────

@pytest.fixture
def entitlements(sample_config: VipSyncConfig, database: VipDatabase) -> EntitlementStore:
    return EntitlementStore(sample_config, database, logging.getLogger("test"))


@pytest.fixture
def outbox(database: VipDatabase) -> OutboxQueue:
    return OutboxQueue(database, logging.getLogger("test"))


@pytest.fixture
def mock_payment_client() -> MagicMock:
    """Return a mock InfinitePayClient handing out a fixed checkout URL."""
    client = MagicMock()
    client.create_checkout_link = AsyncMock(return_value="https://pay.example.com/c/abc")
    client.start = AsyncMock()
    client.stop = AsyncMock()
    return client


@pytest.fixture
def ledger(sample_config: VipSyncConfig, database: VipDatabase, mock_payment_client: MagicMock) -> OrderLedger:
    return OrderLedger(sample_config, database, mock_payment_client, logging.getLogger("test"))


@pytest.fixture
def steam_client(sample_config: VipSyncConfig) -> SteamOpenIdClient:
    """Real URL builder; verify() is replaced per test."""
    return SteamOpenIdClient(sample_config.steam, sample_config.http.public_url, logging.getLogger("test"))


@pytest.fixture
def linking(sample_config: VipSyncConfig, database: VipDatabase, steam_client: SteamOpenIdClient) -> LinkingSessionStore:
    return LinkingSessionStore(sample_config, database, steam_client, logging.getLogger("test"))


@pytest.fixture
def webhook_processor(ledger: OrderLedger) -> WebhookProcessor:
    return WebhookProcessor(WEBHOOK_SECRET, ledger, logging.getLogger("test"))
