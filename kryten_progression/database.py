"""SQLite database module for kryten-progression.

Follows the kryten-userstats pattern: each public method is async and wraps
a synchronous inner function via asyncio.run_in_executor(None, _sync).
A new connection is created per call (WAL mode, 30s busy timeout, Row factory).

Spend and claim paths open an explicit ``BEGIN IMMEDIATE`` transaction so the
read-check-write sequence holds the write lock from the first read; every
step commits together or not at all.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from .utils import format_timestamp, parse_timestamp

_SELECTION_COLUMNS = ("avatar_id", "particle_style", "corner_border_key", "card_plate_key")


class ProgressionDatabase:
    """SQLite-backed persistence for the progression microservice."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    def _get_tx_connection(self) -> sqlite3.Connection:
        """Connection in manual-transaction mode, write lock already taken."""
        conn = self._get_connection()
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        return conn

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
                CREATE TABLE IF NOT EXISTS students (
                    student_id TEXT PRIMARY KEY,
                    name TEXT,
                    lifetime_points INTEGER DEFAULT 0,
                    points_balance INTEGER DEFAULT 0,
                    level INTEGER DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    student_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    reason TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_student "
                "ON transactions(student_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_category "
                "ON transactions(category)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS level_settings (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    base_jump REAL NOT NULL,
                    difficulty_pct REAL NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS cosmetic_items (
                    category TEXT NOT NULL,
                    item_key TEXT NOT NULL,
                    name TEXT,
                    unlock_level INTEGER DEFAULT 1,
                    unlock_points INTEGER DEFAULT 0,
                    enabled BOOLEAN DEFAULT 1,
                    aura TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(category, item_key)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS unlock_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    student_id TEXT NOT NULL,
                    item_type TEXT NOT NULL,
                    item_key TEXT NOT NULL,
                    unlocked_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, item_type, item_key)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_unlocks_student ON unlock_records(student_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS avatar_settings (
                    student_id TEXT PRIMARY KEY,
                    avatar_id TEXT DEFAULT 'none',
                    particle_style TEXT DEFAULT 'none',
                    corner_border_key TEXT DEFAULT 'none',
                    card_plate_key TEXT DEFAULT 'none',
                    avatar_set_at TIMESTAMP,
                    avatar_daily_granted_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
            """)

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Students & Ledger
    # ══════════════════════════════════════════════════════════

    async def get_or_create_student(self, student_id: str, name: str | None = None) -> dict:
        """Return student row as dict. Creates with defaults if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO students (student_id, name) VALUES (?, ?)",
                    (student_id, name),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM students WHERE student_id = ?", (student_id,),
                ).fetchone()
                return dict(row) if row else {}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_student(self, student_id: str) -> dict | None:
        """Return student row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM students WHERE student_id = ?", (student_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_all_students(self) -> list[dict]:
        """Every student row (id, lifetime, balance, cached level)."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT student_id, name, lifetime_points, points_balance, level "
                    "FROM students ORDER BY student_id",
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def update_student_levels(self, levels: dict[str, int]) -> None:
        """Persist cached levels for many students in one transaction."""
        if not levels:
            return
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.executemany(
                    "UPDATE students SET level = ? WHERE student_id = ?",
                    [(lvl, sid) for sid, lvl in levels.items()],
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_level_distribution(self) -> dict[int, int]:
        """Count of students per cached level."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict[int, int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT level, COUNT(*) AS cnt FROM students GROUP BY level ORDER BY level",
                ).fetchall()
                return {r["level"]: r["cnt"] for r in rows}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def append_ledger_entry(
        self,
        student_id: str,
        delta: float,
        reason: str | None = None,
        category: str = "manual",
    ) -> dict:
        """Atomically apply a ledger delta and log it.

        Positive deltas raise both balance and lifetime points; negative
        deltas only lower the balance. Creates the student if missing.
        Returns the updated student row.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO students (student_id) VALUES (?)", (student_id,),
                )
                earned = delta if delta > 0 else 0
                conn.execute(
                    "UPDATE students SET points_balance = points_balance + ?, "
                    "lifetime_points = lifetime_points + ? WHERE student_id = ?",
                    (delta, earned, student_id),
                )
                conn.execute(
                    "INSERT INTO transactions (student_id, amount, category, reason) "
                    "VALUES (?, ?, ?, ?)",
                    (student_id, delta, category, reason),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM students WHERE student_id = ?", (student_id,),
                ).fetchone()
                return dict(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_recent_transactions(self, student_id: str, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE student_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (student_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Level Settings
    # ══════════════════════════════════════════════════════════

    async def get_level_settings(self) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT base_jump, difficulty_pct, updated_at FROM level_settings WHERE id = 1",
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_level_settings(self, base_jump: float, difficulty_pct: float) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO level_settings (id, base_jump, difficulty_pct) VALUES (1, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET base_jump = excluded.base_jump, "
                    "difficulty_pct = excluded.difficulty_pct, updated_at = CURRENT_TIMESTAMP",
                    (base_jump, difficulty_pct),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Catalog
    # ══════════════════════════════════════════════════════════

    async def upsert_catalog_item(
        self,
        category: str,
        item_key: str,
        name: str = "",
        unlock_level: int = 1,
        unlock_points: float = 0,
        enabled: bool = True,
        aura: dict | None = None,
    ) -> None:
        """Insert or replace a catalog definition."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO cosmetic_items "
                    "(category, item_key, name, unlock_level, unlock_points, enabled, aura) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(category, item_key) DO UPDATE SET "
                    "name = excluded.name, unlock_level = excluded.unlock_level, "
                    "unlock_points = excluded.unlock_points, enabled = excluded.enabled, "
                    "aura = excluded.aura, updated_at = CURRENT_TIMESTAMP",
                    (
                        category, item_key, name, unlock_level, unlock_points,
                        1 if enabled else 0, json.dumps(aura) if aura is not None else None,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def set_catalog_item_enabled(self, category: str, item_key: str, enabled: bool) -> bool:
        """Toggle an item. Returns False if the item does not exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE cosmetic_items SET enabled = ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE category = ? AND item_key = ?",
                    (1 if enabled else 0, category, item_key),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def delete_catalog_item(self, category: str, item_key: str) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM cosmetic_items WHERE category = ? AND item_key = ?",
                    (category, item_key),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_catalog(self, category: str) -> list[dict]:
        """All items of a category (enabled or not), cheapest level first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM cosmetic_items WHERE category = ? "
                    "ORDER BY unlock_level, unlock_points, item_key",
                    (category,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_catalog_item(self, category: str, item_key: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM cosmetic_items WHERE category = ? AND item_key = ?",
                    (category, item_key),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Unlock Records
    # ══════════════════════════════════════════════════════════

    async def get_unlock_records(self, student_id: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT item_type, item_key, unlocked_at FROM unlock_records "
                    "WHERE student_id = ? ORDER BY id",
                    (student_id,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def has_unlock(self, student_id: str, item_type: str, item_key: str) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT 1 FROM unlock_records WHERE student_id = ? "
                    "AND item_type = ? AND item_key = ?",
                    (student_id, item_type, item_key),
                ).fetchone()
                return row is not None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def purchase_unlock(
        self,
        student_id: str,
        item_type: str,
        item_key: str,
        cost: float,
        min_lifetime_points: float,
        selection_column: str,
        reason: str,
        now: datetime,
    ) -> dict:
        """Record an unlock, charge it and select the item in one transaction.

        Returns ``{"status": ..., "balance": ...}`` where status is one of
        ``unlocked``, ``already_unlocked``, ``insufficient_balance``,
        ``level_too_low`` or ``no_student``. Nothing is written unless the
        status is ``unlocked``.
        """
        if selection_column not in _SELECTION_COLUMNS:
            raise ValueError(f"Unknown selection column: {selection_column}")
        loop = asyncio.get_running_loop()
        stamp = format_timestamp(now)

        def _sync() -> dict:
            conn = self._get_tx_connection()
            try:
                student = conn.execute(
                    "SELECT points_balance, lifetime_points FROM students WHERE student_id = ?",
                    (student_id,),
                ).fetchone()
                if student is None:
                    conn.rollback()
                    return {"status": "no_student", "balance": None}
                balance = student["points_balance"]

                existing = conn.execute(
                    "SELECT 1 FROM unlock_records WHERE student_id = ? "
                    "AND item_type = ? AND item_key = ?",
                    (student_id, item_type, item_key),
                ).fetchone()
                if existing:
                    conn.rollback()
                    return {"status": "already_unlocked", "balance": balance}

                if student["lifetime_points"] < min_lifetime_points:
                    conn.rollback()
                    return {"status": "level_too_low", "balance": balance}
                if balance < cost:
                    conn.rollback()
                    return {"status": "insufficient_balance", "balance": balance}

                conn.execute(
                    "INSERT INTO unlock_records (student_id, item_type, item_key, unlocked_at) "
                    "VALUES (?, ?, ?, ?)",
                    (student_id, item_type, item_key, stamp),
                )
                conn.execute(
                    "UPDATE students SET points_balance = points_balance - ? WHERE student_id = ?",
                    (cost, student_id),
                )
                conn.execute(
                    "INSERT INTO transactions (student_id, amount, category, reason) "
                    "VALUES (?, ?, ?, ?)",
                    (student_id, -cost, f"unlock_{item_type}", reason),
                )
                self._write_selection(conn, student_id, {selection_column: item_key}, stamp)
                conn.commit()
                row = conn.execute(
                    "SELECT points_balance FROM students WHERE student_id = ?", (student_id,),
                ).fetchone()
                return {"status": "unlocked", "balance": row["points_balance"]}
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Avatar Settings
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _write_selection(
        conn: sqlite3.Connection, student_id: str, fields: dict[str, str], stamp: str | None,
    ) -> None:
        """Upsert selection columns on an open connection.

        Changing ``avatar_id`` restarts the daily bonus window.
        """
        current = conn.execute(
            "SELECT avatar_id FROM avatar_settings WHERE student_id = ?", (student_id,),
        ).fetchone()
        if current is None:
            conn.execute(
                "INSERT INTO avatar_settings (student_id, avatar_set_at, updated_at) "
                "VALUES (?, ?, ?)",
                (student_id, stamp, stamp),
            )
            previous_avatar = None
        else:
            previous_avatar = current["avatar_id"]

        for column, value in fields.items():
            conn.execute(
                f"UPDATE avatar_settings SET {column} = ?, updated_at = ? WHERE student_id = ?",
                (value, stamp, student_id),
            )
        if "avatar_id" in fields and fields["avatar_id"] != previous_avatar:
            conn.execute(
                "UPDATE avatar_settings SET avatar_set_at = ?, avatar_daily_granted_at = NULL "
                "WHERE student_id = ?",
                (stamp, student_id),
            )

    async def get_avatar_settings(self, student_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM avatar_settings WHERE student_id = ?", (student_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_all_avatar_settings(self) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM avatar_settings ORDER BY student_id",
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_avatar_selection(
        self, student_id: str, fields: dict[str, str], now: datetime,
    ) -> dict:
        """Write one or more selection columns and return the stored row."""
        for column in fields:
            if column not in _SELECTION_COLUMNS:
                raise ValueError(f"Unknown selection column: {column}")
        loop = asyncio.get_running_loop()
        stamp = format_timestamp(now)

        def _sync() -> dict:
            conn = self._get_tx_connection()
            try:
                self._write_selection(conn, student_id, fields, stamp)
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM avatar_settings WHERE student_id = ?", (student_id,),
                ).fetchone()
                return dict(row)
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def revoke_selection(
        self, student_id: str, column: str, expected_key: str, now: datetime,
    ) -> bool:
        """Reset a selection to 'none' only if it still holds ``expected_key``.

        Returns True if a row changed. A concurrent re-selection wins.
        """
        if column not in _SELECTION_COLUMNS:
            raise ValueError(f"Unknown selection column: {column}")
        loop = asyncio.get_running_loop()
        stamp = format_timestamp(now)

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    f"UPDATE avatar_settings SET {column} = 'none', updated_at = ? "
                    f"WHERE student_id = ? AND {column} = ?",
                    (stamp, student_id, expected_key),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Daily Aura Bonus
    # ══════════════════════════════════════════════════════════

    async def claim_daily_bonus(
        self,
        student_id: str,
        avatar_id: str,
        points: float,
        expected_anchor: datetime | None,
        window: timedelta,
        now: datetime,
        reason: str,
    ) -> dict:
        """Credit the daily bonus and stamp the grant time atomically.

        The readiness check is repeated under the write lock. Returns
        ``{"status": ..., "balance": ...}`` with status ``granted``,
        ``not_ready`` or ``conflict`` (avatar or anchor moved since the
        caller read them).
        """
        loop = asyncio.get_running_loop()
        stamp = format_timestamp(now)

        def _sync() -> dict:
            conn = self._get_tx_connection()
            try:
                row = conn.execute(
                    "SELECT avatar_id, avatar_set_at, avatar_daily_granted_at "
                    "FROM avatar_settings WHERE student_id = ?",
                    (student_id,),
                ).fetchone()
                if row is None or row["avatar_id"] != avatar_id:
                    conn.rollback()
                    return {"status": "conflict", "balance": None}
                anchor = (
                    parse_timestamp(row["avatar_daily_granted_at"])
                    or parse_timestamp(row["avatar_set_at"])
                )
                if anchor != expected_anchor:
                    conn.rollback()
                    return {"status": "conflict", "balance": None}
                if anchor is not None and now < anchor + window:
                    conn.rollback()
                    return {"status": "not_ready", "balance": None}

                conn.execute(
                    "INSERT OR IGNORE INTO students (student_id) VALUES (?)", (student_id,),
                )
                conn.execute(
                    "UPDATE students SET points_balance = points_balance + ?, "
                    "lifetime_points = lifetime_points + ? WHERE student_id = ?",
                    (points, points, student_id),
                )
                conn.execute(
                    "INSERT INTO transactions (student_id, amount, category, reason) "
                    "VALUES (?, ?, 'avatar_daily', ?)",
                    (student_id, points, reason),
                )
                conn.execute(
                    "UPDATE avatar_settings SET avatar_daily_granted_at = ? WHERE student_id = ?",
                    (stamp, student_id),
                )
                conn.commit()
                balance = conn.execute(
                    "SELECT points_balance FROM students WHERE student_id = ?", (student_id,),
                ).fetchone()
                return {"status": "granted", "balance": balance["points_balance"]}
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
