"""InfinitePay checkout-link client.

One POST per new order; the gateway answers with a hosted payment URL.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from .errors import UpstreamError

if TYPE_CHECKING:
    from .config import InfinitePayConfig


class InfinitePayClient:
    """Creates hosted checkout links for new orders."""

    def __init__(self, config: InfinitePayConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("vipsync.infinitepay")
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            base_url=self._config.base_url,
            headers={
                "Authorization": f"Bearer {self._config.handle}",
                "Content-Type": "application/json",
            },
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def create_checkout_link(
        self,
        order_nsu: str,
        amount: float,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create a payment link and return its URL.

        Raises UpstreamError on transport/HTTP failure or when the response
        carries no URL.
        """
        if not self._session:
            raise UpstreamError("Payment gateway client is not started")

        payload = {
            "amount": amount,
            "description": description,
            "order_nsu": order_nsu,
            "redirect_url": redirect_url,
            "webhook_url": webhook_url,
            "metadata": metadata or {},
        }
        try:
            async with self._session.post(self._config.checkout_path, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._logger.error(
                        "Checkout link creation failed for %s: HTTP %d %s",
                        order_nsu, resp.status, body[:200],
                    )
                    raise UpstreamError(f"Payment gateway returned HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.error("Checkout link creation failed for %s: %s", order_nsu, e)
            raise UpstreamError("Error creating checkout at payment gateway") from e

        url = self._extract_url(data)
        if not url:
            self._logger.error("Payment gateway returned no checkout URL for %s", order_nsu)
            raise UpstreamError("Payment gateway did not return a checkout URL")
        return url

    @staticmethod
    def _extract_url(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        nested = data.get("data")
        return (
            data.get("url")
            or data.get("checkout_url")
            or (nested.get("url") if isinstance(nested, dict) else None)
        )
