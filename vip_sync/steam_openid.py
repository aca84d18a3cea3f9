"""Steam OpenID 2.0 client.

Steam only supports the stateless "dumb mode" of OpenID 2.0: the relying
party re-posts the signed assertion with ``openid.mode=check_authentication``
and Steam answers ``is_valid:true`` or ``is_valid:false``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING
from urllib.parse import urlencode

import aiohttp

from .errors import IdentityVerificationError, UpstreamError, VerificationFailure

if TYPE_CHECKING:
    from .config import SteamConfig

OPENID_NS = "http://specs.openid.net/auth/2.0"
IDENTIFIER_SELECT = "http://specs.openid.net/auth/2.0/identifier_select"
CLAIMED_ID_RE = re.compile(r"^https?://steamcommunity\.com/openid/id/(\d+)/?$")


class SteamOpenIdClient:
    """Builds login redirects and verifies returned assertions."""

    def __init__(self, config: SteamConfig, realm: str, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._realm = realm
        self._logger = logger or logging.getLogger("vipsync.steam")
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def build_auth_url(self, return_to: str) -> str:
        params = {
            "openid.ns": OPENID_NS,
            "openid.mode": "checkid_setup",
            "openid.return_to": return_to,
            "openid.realm": self._realm,
            "openid.identity": IDENTIFIER_SELECT,
            "openid.claimed_id": IDENTIFIER_SELECT,
        }
        return f"{self._config.openid_endpoint}?{urlencode(params)}"

    async def verify(self, params: Mapping[str, str], expected_return_to: str) -> str:
        """Verify an assertion and return the SteamID64.

        Raises IdentityVerificationError with a typed reason when Steam does
        not vouch for the assertion, UpstreamError when Steam is unreachable.
        """
        if params.get("openid.mode") != "id_res":
            raise IdentityVerificationError(VerificationFailure.NOT_AUTHENTICATED)

        return_to = params.get("openid.return_to", "")
        if not return_to.startswith(expected_return_to):
            raise IdentityVerificationError(VerificationFailure.RETURN_TO_MISMATCH)

        match = CLAIMED_ID_RE.match(params.get("openid.claimed_id", ""))
        if not match:
            raise IdentityVerificationError(VerificationFailure.BAD_CLAIMED_ID)

        if not self._session:
            raise UpstreamError("Steam OpenID client is not started")

        form = {k: v for k, v in params.items() if k.startswith("openid.")}
        form["openid.mode"] = "check_authentication"
        try:
            async with self._session.post(self._config.openid_endpoint, data=form) as resp:
                resp.raise_for_status()
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.error("Steam OpenID verification request failed: %s", e)
            raise UpstreamError("Steam OpenID is unavailable") from e

        if not self._is_valid(body):
            raise IdentityVerificationError(VerificationFailure.NOT_AUTHENTICATED)
        return match.group(1)

    @staticmethod
    def _is_valid(body: str) -> bool:
        for line in body.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "is_valid":
                return value.strip() == "true"
        return False
