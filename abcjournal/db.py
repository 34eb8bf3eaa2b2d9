# -*- coding: utf-8 -*-
"""SQLite schema, migrations and connection bootstrap for ABCJournal."""
from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

import aiosqlite

from .models import analysis_to_response

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("ABCJOURNAL_DB", "abcjournal.sqlite3")

LATEST_VERSION = 3


# ---------------------------------------------------------------------
# Base schema (version 1)
# ---------------------------------------------------------------------

SCHEMA_V1: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS entries (
        id           TEXT PRIMARY KEY,
        adversity    TEXT NOT NULL,
        belief       TEXT NOT NULL,
        consequence  TEXT,
        dispute      TEXT,
        energy       TEXT,
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL,
        account_id   TEXT,
        dirty_since  TEXT,
        is_deleted   INTEGER NOT NULL DEFAULT 0 CHECK (is_deleted IN (0, 1))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entries_updated_at ON entries(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_entries_dirty_since ON entries(dirty_since)",
]

VAULT_SQL = """
CREATE TABLE IF NOT EXISTS vault (
    id                INTEGER PRIMARY KEY CHECK (id = 1),
    passphrase_hash   TEXT NOT NULL,
    kek_salt          BLOB NOT NULL,
    key_wrapped       BLOB NOT NULL,
    key_wrap_nonce    BLOB NOT NULL,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
)
"""


# ---------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------

@asynccontextmanager
async def transaction(conn: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run the block inside ``BEGIN IMMEDIATE``; roll back on any exception.

    Cancellation counts as an exception, so a cancelled write leaves no
    partial row behind.
    """
    await conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        await conn.rollback()
        raise
    else:
        await conn.commit()


# ---------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------

async def _column_exists(conn: aiosqlite.Connection, table: str, column: str) -> bool:
    """Return True if `column` is present in `table`."""
    cur = await conn.execute(f"PRAGMA table_info({table})")
    rows = await cur.fetchall()
    await cur.close()
    for r in rows:
        # PRAGMA table_info columns: cid, name, type, notnull, default_value, pk
        if len(r) >= 2 and r[1] == column:
            return True
    return False


async def get_user_version(conn: aiosqlite.Connection) -> int:
    cur = await conn.execute("PRAGMA user_version")
    row = await cur.fetchone()
    await cur.close()
    return int(row[0]) if row else 0


async def _upgrade_legacy_analysis(conn: aiosqlite.Connection) -> int:
    """Fill ai_response from the legacy analysis column. Returns rows converted."""
    cur = await conn.execute(
        "SELECT id, belief, analysis FROM entries WHERE analysis IS NOT NULL AND ai_response IS NULL"
    )
    rows = await cur.fetchall()
    await cur.close()
    converted = 0
    for entry_id, belief, raw in rows:
        try:
            response = analysis_to_response(json.loads(raw), belief)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("leaving unreadable legacy analysis on entry %s: %s", entry_id, exc)
            continue
        await conn.execute(
            "UPDATE entries SET ai_response = ?, analysis = NULL WHERE id = ?",
            (json.dumps(response.to_dict()), entry_id),
        )
        converted += 1
    return converted


async def migrate_db(conn: aiosqlite.Connection) -> int:
    """Bring the schema to LATEST_VERSION. Idempotent; returns the final version."""
    current = await get_user_version(conn)
    if current >= LATEST_VERSION:
        return current

    async with transaction(conn):
        if current < 1:
            for stmt in SCHEMA_V1:
                await conn.execute(stmt)

        if current < 2 and not await _column_exists(conn, "entries", "analysis"):
            await conn.execute("ALTER TABLE entries ADD COLUMN analysis TEXT")

        if current < 3:
            add_cols = []
            if not await _column_exists(conn, "entries", "ai_response"):
                add_cols.append("ALTER TABLE entries ADD COLUMN ai_response TEXT")
            if not await _column_exists(conn, "entries", "ai_retry_count"):
                add_cols.append("ALTER TABLE entries ADD COLUMN ai_retry_count INTEGER NOT NULL DEFAULT 0")
            if not await _column_exists(conn, "entries", "dispute_history"):
                add_cols.append("ALTER TABLE entries ADD COLUMN dispute_history TEXT NOT NULL DEFAULT '[]'")
            for stmt in add_cols:
                await conn.execute(stmt)
            await conn.execute(VAULT_SQL)
            converted = await _upgrade_legacy_analysis(conn)
            if converted:
                logger.info("converted %d legacy analysis rows", converted)

        await conn.execute(f"PRAGMA user_version = {LATEST_VERSION}")

    logger.info("entries schema migrated from v%d to v%d", current, LATEST_VERSION)
    return LATEST_VERSION


# ---------------------------------------------------------------------
# Connection / initialization
# ---------------------------------------------------------------------

async def connect_db(path: str = DB_PATH) -> aiosqlite.Connection:
    """Open *path*, apply PRAGMAs and migrations, and return the connection.

    The connection runs in autocommit mode; writers use :func:`transaction`.
    """
    conn = await aiosqlite.connect(path, isolation_level=None)
    try:
        conn.row_factory = aiosqlite.Row
        if path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys = ON;")
        await migrate_db(conn)
    except BaseException:
        await conn.close()
        raise
    return conn


async def wipe_entries(conn: aiosqlite.Connection) -> None:
    """Delete every entry row; the schema stays in place."""
    async with transaction(conn):
        await conn.execute("DELETE FROM entries")
