"""Configuration system for vip-sync.

One YAML file configures both processes: the backend reads everything except
``consumer``; the consumer reads only ``consumer``. String
values support ``${VAR}`` and ``${VAR:-default}`` environment expansion so
secrets can stay out of the file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

VIP_TYPES: tuple[str, ...] = ("vip", "vip+")


# ═══════════════════════════════════════════════════════════════
#  Backend
# ═══════════════════════════════════════════════════════════════

class ServerConfig(BaseModel):
    """One entry of the fixed game-server registry."""
    id: str
    name: str = ""


class DatabaseConfig(BaseModel):
    path: str = "vip_sync.db"


class HttpConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    base_url: str = Field(default="", description="Public URL; defaults to http://localhost:<port>")

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def public_url(self) -> str:
        return self.base_url or f"http://localhost:{self.port}"


class AuthConfig(BaseModel):
    bot_api_key: str = ""
    plugin_api_token: str = Field(default="", description="Falls back to bot_api_key when empty")

    @property
    def effective_plugin_token(self) -> str:
        return (self.plugin_api_token or self.bot_api_key).strip()


class PricingConfig(BaseModel):
    vip: float = 29.9
    vip_plus: float = 49.9
    duration_days: int = 30

    def price_for(self, vip_type: str) -> float:
        return self.vip if vip_type == "vip" else self.vip_plus


class InfinitePayConfig(BaseModel):
    base_url: str = "https://api.infinitepay.io"
    checkout_path: str = "/invoices/public/checkout/links"
    handle: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 15.0


class SteamConfig(BaseModel):
    openid_endpoint: str = "https://steamcommunity.com/openid/login"
    timeout_seconds: float = 10.0
    session_ttl_minutes: int = 15


class SweeperConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = 60.0


class RetentionConfig(BaseModel):
    enabled: bool = True
    cron: str = Field(default="0 4 * * *", description="UTC cron expression")
    processed_event_days: int = 7
    session_days: int = 1


# ═══════════════════════════════════════════════════════════════
#  Consumer (chat bot)
# ═══════════════════════════════════════════════════════════════

class ConsumerConfig(BaseModel):
    backend_url: str = "http://localhost:8080"
    bot_api_key: str = ""
    polling_interval_seconds: float = 15.0
    request_timeout_seconds: float = 10.0
    discord_token: str = ""
    guild_id: int = 0
    vip_role_id: int = 0
    vip_plus_role_id: int = 0
    remembered_event_ids: int = 1000

    @field_validator("backend_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("bot_api_key")
    @classmethod
    def _normalize_api_key(cls, v: str) -> str:
        """Tolerate quoted values and a pasted ``Bearer`` prefix."""
        v = v.strip().strip("'\"")
        return re.sub(r"^Bearer\s+", "", v, flags=re.IGNORECASE).strip()


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class VipSyncConfig(BaseModel):
    """Full vip-sync config."""

    servers: list[ServerConfig] = Field(
        default_factory=lambda: [ServerConfig(id="server1"), ServerConfig(id="server2")],
    )
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    infinitepay: InfinitePayConfig = Field(default_factory=InfinitePayConfig)
    steam: SteamConfig = Field(default_factory=SteamConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)

    @model_validator(mode="after")
    def _check_servers(self) -> VipSyncConfig:
        ids = [s.id for s in self.servers]
        if not ids:
            raise ValueError("At least one server must be configured.")
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate server ids: {ids}")
        return self

    @property
    def server_ids(self) -> frozenset[str]:
        return frozenset(s.id for s in self.servers)

    def is_known_server(self, server_id: object) -> bool:
        return isinstance(server_id, str) and server_id in self.server_ids


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> VipSyncConfig:
    """Load and validate YAML config file into VipSyncConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return VipSyncConfig(**raw)
