"""Shared utility helpers for vip-sync."""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Format a datetime as a fixed-width UTC ISO string (``...T12:00:00.000Z``).

    Fixed width keeps stored timestamps comparable as plain strings in SQLite.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse a stored ISO timestamp to a timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError, AttributeError):
        return None


def generate_order_nsu() -> str:
    """Order id: epoch millis plus a random suffix (``ORD-1760000000000-1a2b3c4d``)."""
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def is_non_empty(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())
