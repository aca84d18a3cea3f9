"""SQLite database module for vip-sync.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory, autocommit). Every
read-modify-write runs inside ``BEGIN IMMEDIATE`` so two overlapping calls on
the same server cannot lose each other's update.

Composite operations (webhook confirmation, link consumption, expiry sweep)
write the entitlement change and its outbox event in one transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from .errors import ConflictError, ExpiredError, NotFoundError
from .utils import parse_timestamp, to_iso

ENTITLEMENT_FIELDS = ("discord_id", "steam_id", "vip_type", "vip_expires_at")


class VipDatabase:
    """SQLite-backed persistence for entitlements, orders, outbox and link sessions."""

    def __init__(self, db_path: str, logger: logging.Logger | None = None) -> None:
        self._db_path = db_path
        self._logger = logger or logging.getLogger("vipsync.database")

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    @contextmanager
    def _immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entitlements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    server_id TEXT NOT NULL,
                    discord_id TEXT,
                    steam_id TEXT,
                    vip_type TEXT,
                    vip_expires_at TEXT,
                    updated_at TEXT
                )
            """)
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_entitlements_discord "
                "ON entitlements(server_id, discord_id) WHERE discord_id IS NOT NULL"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_entitlements_steam "
                "ON entitlements(server_id, steam_id) WHERE steam_id IS NOT NULL"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entitlements_active "
                "ON entitlements(server_id, vip_expires_at) WHERE vip_type IS NOT NULL"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    order_nsu TEXT PRIMARY KEY,
                    transaction_nsu TEXT,
                    discord_id TEXT NOT NULL,
                    server_id TEXT NOT NULL,
                    vip_type TEXT NOT NULL,
                    amount REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    checkout_url TEXT,
                    idempotency_key TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_receipts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_nsu TEXT NOT NULL,
                    transaction_nsu TEXT NOT NULL,
                    status TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    UNIQUE(order_nsu, transaction_nsu)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS outbox_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    discord_id TEXT,
                    server_id TEXT NOT NULL,
                    vip_type TEXT,
                    created_at TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_pending "
                "ON outbox_events(processed, seq)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS link_sessions (
                    session_id TEXT PRIMARY KEY,
                    discord_id TEXT NOT NULL,
                    server_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    used INTEGER NOT NULL DEFAULT 0,
                    used_at TEXT,
                    steam_id TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_link_sessions_created "
                "ON link_sessions(created_at)"
            )
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Row Helpers
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _event_row(row: sqlite3.Row) -> dict:
        event = dict(row)
        event["processed"] = bool(event["processed"])
        event.pop("seq", None)
        return event

    @staticmethod
    def _session_row(row: sqlite3.Row) -> dict:
        session = dict(row)
        session["used"] = bool(session["used"])
        return session

    @staticmethod
    def _find_entitlement(
        conn: sqlite3.Connection,
        server_id: str,
        discord_id: str | None,
        steam_id: str | None,
    ) -> tuple[dict | None, dict | None]:
        """Return (discord_match, steam_match) rows for the matching rule."""
        by_discord = None
        by_steam = None
        if discord_id:
            row = conn.execute(
                "SELECT * FROM entitlements WHERE server_id = ? AND discord_id = ?",
                (server_id, discord_id),
            ).fetchone()
            by_discord = dict(row) if row else None
        if steam_id:
            row = conn.execute(
                "SELECT * FROM entitlements WHERE server_id = ? AND steam_id = ?",
                (server_id, steam_id),
            ).fetchone()
            by_steam = dict(row) if row else None
        return by_discord, by_steam

    def _fold_entitlements(self, conn: sqlite3.Connection, keep: dict, orphan: dict, updated_at: str) -> dict:
        """Move ``orphan``'s Steam ID and VIP onto ``keep``.

        The record with the later expiry wins the tier. ``orphan`` is left with
        every field cleared, never deleted. Must run inside a write transaction.
        """
        vip_type = keep["vip_type"]
        vip_expires_at = keep["vip_expires_at"]
        if (orphan["vip_expires_at"] or "") > (vip_expires_at or ""):
            vip_type = orphan["vip_type"]
            vip_expires_at = orphan["vip_expires_at"]

        conn.execute(
            "UPDATE entitlements SET steam_id = NULL, vip_type = NULL, vip_expires_at = NULL, "
            "updated_at = ? WHERE id = ?",
            (updated_at, orphan["id"]),
        )
        conn.execute(
            "UPDATE entitlements SET steam_id = ?, vip_type = ?, vip_expires_at = ?, updated_at = ? WHERE id = ?",
            (orphan["steam_id"], vip_type, vip_expires_at, updated_at, keep["id"]),
        )
        self._logger.info(
            "Folded entitlement #%d into #%d on %s", orphan["id"], keep["id"], keep["server_id"],
        )
        return {**keep, "steam_id": orphan["steam_id"], "vip_type": vip_type, "vip_expires_at": vip_expires_at}

    def _upsert_entitlement_tx(
        self,
        conn: sqlite3.Connection,
        server_id: str,
        patch: dict[str, Any],
        now: datetime,
    ) -> dict:
        """Merge ``patch`` into the matching record, or create one.

        Must run inside a write transaction. A Discord-only record and a
        Steam-only record for the same player are folded into one. Raises
        ConflictError when the patch would merge two distinct identities.
        """
        discord_id = patch.get("discord_id")
        steam_id = patch.get("steam_id")
        by_discord, by_steam = self._find_entitlement(conn, server_id, discord_id, steam_id)

        if by_discord and by_steam and by_discord["id"] != by_steam["id"]:
            if by_steam["discord_id"] is not None or by_discord["steam_id"] is not None:
                raise ConflictError(
                    f"discordId and steamId belong to different records on {server_id}"
                )
            by_discord = self._fold_entitlements(conn, by_discord, by_steam, to_iso(now))
            by_steam = None
        if not by_discord and by_steam and discord_id and by_steam["discord_id"] not in (None, discord_id):
            raise ConflictError(f"steamId is already linked to another account on {server_id}")

        existing = by_discord or by_steam
        fields = {k: patch[k] for k in ENTITLEMENT_FIELDS if k in patch}
        updated_at = to_iso(now)

        if existing:
            if fields:
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE entitlements SET {assignments}, updated_at = ? WHERE id = ?",
                    (*fields.values(), updated_at, existing["id"]),
                )
            row_id = existing["id"]
        else:
            cursor = conn.execute(
                "INSERT INTO entitlements (server_id, discord_id, steam_id, vip_type, "
                "vip_expires_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    server_id,
                    fields.get("discord_id"),
                    fields.get("steam_id"),
                    fields.get("vip_type"),
                    fields.get("vip_expires_at"),
                    updated_at,
                ),
            )
            row_id = cursor.lastrowid

        row = conn.execute("SELECT * FROM entitlements WHERE id = ?", (row_id,)).fetchone()
        return dict(row)

    @staticmethod
    def _insert_event_tx(
        conn: sqlite3.Connection,
        event_type: str,
        discord_id: str | None,
        server_id: str,
        vip_type: str | None,
        now: datetime,
    ) -> dict:
        """Append an outbox event. Must run inside a write transaction."""
        event = {
            "event_id": str(uuid.uuid4()),
            "type": event_type,
            "discord_id": discord_id,
            "server_id": server_id,
            "vip_type": vip_type,
            "created_at": to_iso(now),
            "processed": False,
            "processed_at": None,
        }
        conn.execute(
            "INSERT INTO outbox_events (event_id, type, discord_id, server_id, vip_type, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                event["event_id"],
                event_type,
                discord_id,
                server_id,
                vip_type,
                event["created_at"],
            ),
        )
        return event

    # ══════════════════════════════════════════════════════════
    #  Entitlements
    # ══════════════════════════════════════════════════════════

    async def upsert_entitlement(self, server_id: str, patch: dict[str, Any], now: datetime) -> dict:
        """Atomically merge ``patch`` into the matching entitlement."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    return self._upsert_entitlement_tx(conn, server_id, patch, now)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_entitlement(
        self,
        server_id: str,
        discord_id: str | None = None,
        steam_id: str | None = None,
    ) -> dict | None:
        """Return the record matching discordId (preferred) or steamId."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                by_discord, by_steam = self._find_entitlement(conn, server_id, discord_id, steam_id)
                return by_discord or by_steam
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_entitlements(self, server_id: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM entitlements WHERE server_id = ? ORDER BY id",
                    (server_id,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def clear_vip(self, server_id: str, steam_id: str, now: datetime) -> dict | None:
        """Clear vip fields on the record with ``steam_id``. None if no record."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    cursor = conn.execute(
                        "UPDATE entitlements SET vip_type = NULL, vip_expires_at = NULL, updated_at = ? "
                        "WHERE server_id = ? AND steam_id = ?",
                        (to_iso(now), server_id, steam_id),
                    )
                    if cursor.rowcount == 0:
                        return None
                    row = conn.execute(
                        "SELECT * FROM entitlements WHERE server_id = ? AND steam_id = ?",
                        (server_id, steam_id),
                    ).fetchone()
                    return dict(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def clear_expired(self, server_id: str, now: datetime) -> list[dict]:
        """Demote every lapsed entitlement on ``server_id`` and enqueue VIP_EXPIRED.

        Returns the demoted records, each with ``previous_vip_type`` and the
        emitted ``event`` (None when the record has no discordId). Records whose
        expiry cannot be parsed are logged and left untouched.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            demoted: list[dict] = []
            try:
                with self._immediate(conn):
                    rows = conn.execute(
                        "SELECT * FROM entitlements WHERE server_id = ? AND vip_type IS NOT NULL "
                        "AND vip_expires_at IS NOT NULL",
                        (server_id,),
                    ).fetchall()
                    for row in rows:
                        expires_at = parse_timestamp(row["vip_expires_at"])
                        if expires_at is None:
                            self._logger.warning(
                                "Skipping entitlement #%d on %s: unparsable expiry %r",
                                row["id"], server_id, row["vip_expires_at"],
                            )
                            continue
                        if expires_at > now:
                            continue

                        conn.execute(
                            "UPDATE entitlements SET vip_type = NULL, vip_expires_at = NULL, "
                            "updated_at = ? WHERE id = ?",
                            (to_iso(now), row["id"]),
                        )
                        record = dict(row)
                        record["previous_vip_type"] = row["vip_type"]
                        record["vip_type"] = None
                        record["vip_expires_at"] = None
                        record["event"] = None
                        if row["discord_id"]:
                            record["event"] = self._insert_event_tx(
                                conn, "VIP_EXPIRED", row["discord_id"], server_id, row["vip_type"], now,
                            )
                        demoted.append(record)
                return demoted
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_active_vips(self, server_id: str, now: datetime) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) FROM entitlements WHERE server_id = ? "
                    "AND vip_type IS NOT NULL AND vip_expires_at > ?",
                    (server_id, to_iso(now)),
                ).fetchone()
                return row[0]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Orders
    # ══════════════════════════════════════════════════════════

    async def create_order(self, order: dict[str, Any]) -> dict:
        """Insert a new order.

        If another order already holds the same idempotency key, that order is
        returned instead and nothing is written.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    if order.get("idempotency_key"):
                        row = conn.execute(
                            "SELECT * FROM orders WHERE idempotency_key = ?",
                            (order["idempotency_key"],),
                        ).fetchone()
                        if row:
                            return dict(row)
                    conn.execute(
                        "INSERT INTO orders (order_nsu, transaction_nsu, discord_id, server_id, vip_type, "
                        "amount, status, checkout_url, idempotency_key, created_at) "
                        "VALUES (?, NULL, ?, ?, ?, ?, 'pending', ?, ?, ?)",
                        (
                            order["order_nsu"],
                            order["discord_id"],
                            order["server_id"],
                            order["vip_type"],
                            order["amount"],
                            order.get("checkout_url"),
                            order.get("idempotency_key"),
                            order["created_at"],
                        ),
                    )
                    row = conn.execute(
                        "SELECT * FROM orders WHERE order_nsu = ?", (order["order_nsu"],),
                    ).fetchone()
                    return dict(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_order(self, order_nsu: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM orders WHERE order_nsu = ?", (order_nsu,)).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_order_by_idempotency_key(self, key: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM orders WHERE idempotency_key = ?", (key,)).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def apply_order_webhook(
        self,
        order_nsu: str,
        transaction_nsu: str,
        status: str,
        credit: bool,
        now: datetime,
        duration_days: int,
    ) -> dict:
        """Record a gateway notification and, when ``credit`` is set, extend VIP.

        Returns ``{order, entitlement, event}`` (the last two None when nothing
        was credited). Raises NotFoundError for an unknown order and
        ConflictError when this (order, transaction) pair was already credited;
        in both cases nothing is written.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    order_row = conn.execute(
                        "SELECT * FROM orders WHERE order_nsu = ?", (order_nsu,),
                    ).fetchone()
                    if not order_row:
                        raise NotFoundError(f"Order {order_nsu} not found")
                    order = dict(order_row)

                    entitlement = None
                    event = None
                    if credit:
                        cursor = conn.execute(
                            "INSERT INTO webhook_receipts (order_nsu, transaction_nsu, status, received_at) "
                            "VALUES (?, ?, ?, ?) ON CONFLICT(order_nsu, transaction_nsu) DO NOTHING",
                            (order_nsu, transaction_nsu, status, to_iso(now)),
                        )
                        if cursor.rowcount == 0:
                            raise ConflictError(
                                f"Transaction {transaction_nsu} for order {order_nsu} already applied"
                            )

                        current, _ = self._find_entitlement(conn, order["server_id"], order["discord_id"], None)
                        current_expiry = parse_timestamp(current["vip_expires_at"]) if current else None
                        base = max(now, current_expiry or now)
                        new_expiry = base + timedelta(days=duration_days)
                        entitlement = self._upsert_entitlement_tx(
                            conn,
                            order["server_id"],
                            {
                                "discord_id": order["discord_id"],
                                "vip_type": order["vip_type"],
                                "vip_expires_at": to_iso(new_expiry),
                            },
                            now,
                        )
                        event = self._insert_event_tx(
                            conn, "PAYMENT_CONFIRMED", order["discord_id"], order["server_id"],
                            order["vip_type"], now,
                        )

                    conn.execute(
                        "UPDATE orders SET transaction_nsu = ?, status = ?, updated_at = ? WHERE order_nsu = ?",
                        (transaction_nsu, status, to_iso(now), order_nsu),
                    )
                    order.update(transaction_nsu=transaction_nsu, status=status, updated_at=to_iso(now))
                    return {"order": order, "entitlement": entitlement, "event": event}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Outbox
    # ══════════════════════════════════════════════════════════

    async def enqueue_event(
        self,
        event_type: str,
        discord_id: str | None,
        server_id: str,
        vip_type: str | None,
        now: datetime,
    ) -> dict:
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    return self._insert_event_tx(conn, event_type, discord_id, server_id, vip_type, now)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_pending_events(self, limit: int | None = None) -> list[dict]:
        """Unprocessed events in insertion order."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM outbox_events WHERE processed = 0 ORDER BY seq LIMIT ?",
                    (limit if limit is not None else -1,),
                ).fetchall()
                return [self._event_row(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_event(self, event_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM outbox_events WHERE event_id = ?", (event_id,)).fetchone()
                return self._event_row(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def ack_event(self, event_id: str, now: datetime) -> dict | None:
        """Mark an event processed. Already-processed events are left as they are.

        Returns the event row, or None if the id is unknown.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    conn.execute(
                        "UPDATE outbox_events SET processed = 1, processed_at = ? "
                        "WHERE event_id = ? AND processed = 0",
                        (to_iso(now), event_id),
                    )
                    row = conn.execute(
                        "SELECT * FROM outbox_events WHERE event_id = ?", (event_id,),
                    ).fetchone()
                    return self._event_row(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def purge_processed_events(self, cutoff: datetime) -> int:
        """Delete processed events acked before ``cutoff``. Returns count."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    cursor = conn.execute(
                        "DELETE FROM outbox_events WHERE processed = 1 AND processed_at < ?",
                        (to_iso(cutoff),),
                    )
                    return cursor.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_pending_events(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT COUNT(*) FROM outbox_events WHERE processed = 0").fetchone()[0]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Link Sessions
    # ══════════════════════════════════════════════════════════

    async def create_link_session(self, session_id: str, discord_id: str, server_id: str, now: datetime) -> dict:
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    conn.execute(
                        "INSERT INTO link_sessions (session_id, discord_id, server_id, created_at) "
                        "VALUES (?, ?, ?, ?)",
                        (session_id, discord_id, server_id, to_iso(now)),
                    )
                    row = conn.execute(
                        "SELECT * FROM link_sessions WHERE session_id = ?", (session_id,),
                    ).fetchone()
                    return self._session_row(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_link_session(self, session_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM link_sessions WHERE session_id = ?", (session_id,),
                ).fetchone()
                return self._session_row(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def consume_link_session(
        self,
        session_id: str,
        steam_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> dict:
        """Consume a session once, bind the Steam identity and enqueue STEAM_LINKED.

        The ``used = 0`` guard on the UPDATE is the compare-and-swap: of two
        concurrent callbacks only one sees a changed row. Returns
        ``{session, entitlement, event}``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    row = conn.execute(
                        "SELECT * FROM link_sessions WHERE session_id = ?", (session_id,),
                    ).fetchone()
                    if not row or row["used"]:
                        raise NotFoundError("Link session is invalid or was already used")
                    created_at = parse_timestamp(row["created_at"])
                    if created_at is None or now - created_at > ttl:
                        raise ExpiredError("Link session has expired")

                    cursor = conn.execute(
                        "UPDATE link_sessions SET used = 1, used_at = ?, steam_id = ? "
                        "WHERE session_id = ? AND used = 0",
                        (to_iso(now), steam_id, session_id),
                    )
                    if cursor.rowcount == 0:
                        raise NotFoundError("Link session is invalid or was already used")

                    session = self._session_row(row)
                    session.update(used=True, used_at=to_iso(now), steam_id=steam_id)
                    entitlement = self._upsert_entitlement_tx(
                        conn,
                        session["server_id"],
                        {"discord_id": session["discord_id"], "steam_id": steam_id},
                        now,
                    )
                    event = self._insert_event_tx(
                        conn, "STEAM_LINKED", session["discord_id"], session["server_id"], None, now,
                    )
                    return {"session": session, "entitlement": entitlement, "event": event}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def prune_link_sessions(self, cutoff: datetime) -> int:
        """Delete sessions created before ``cutoff``, used or not. Returns count."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                with self._immediate(conn):
                    cursor = conn.execute(
                        "DELETE FROM link_sessions WHERE created_at < ?", (to_iso(cutoff),),
                    )
                    return cursor.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
