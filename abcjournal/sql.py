# -*- coding: utf-8 -*-
"""aiosqlite-backed EntriesAdapter.

Rows mirror the Entry attributes one column each; ``ai_response`` and
``dispute_history`` are stored as JSON text. With a cipher configured the
user-authored columns are AES-GCM encrypted at rest. Every mutation runs
in its own ``BEGIN IMMEDIATE`` transaction covering read-modify-write.

Passing ``conn=None`` builds a *detached* adapter: it lazily opens a
private in-memory database with the same schema, so contract tests run
the real row encoding without touching disk.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, List, Optional, Tuple

import aiosqlite

from .adapter import ANY_ACCOUNT, EntriesAdapter, EntryFilter, Mutation
from .clock import Clock
from .crypto import DecryptionError, EntryCipher
from .db import connect_db, transaction, wipe_entries
from .errors import CorruptRecord, DuplicateEntryError, NotFoundError
from .models import TEXT_FIELDS, AnalyzeBeliefResult, DisputeRecord, Entry

logger = logging.getLogger(__name__)

COLUMNS: Tuple[str, ...] = (
    "id",
    "adversity",
    "belief",
    "consequence",
    "dispute",
    "energy",
    "created_at",
    "updated_at",
    "account_id",
    "dirty_since",
    "is_deleted",
    "ai_response",
    "ai_retry_count",
    "dispute_history",
)

ENCRYPTED_COLUMNS: Tuple[str, ...] = TEXT_FIELDS + ("ai_response", "dispute_history")

SELECT_SQL = f"SELECT {', '.join(COLUMNS)} FROM entries"

INSERT_SQL = (
    f"INSERT INTO entries ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in COLUMNS)})"
)

UPDATE_SQL = (
    "UPDATE entries SET "
    + ", ".join(f"{c} = ?" for c in COLUMNS if c not in ("id", "created_at"))
    + " WHERE id = ?"
)


class SQLEntriesAdapter(EntriesAdapter):
    """Entries persisted in the ``entries`` table of an embedded SQLite database."""

    name = "sqlite"

    def __init__(
        self,
        conn: Optional[aiosqlite.Connection],
        clock: Clock,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        cipher: Optional[EntryCipher] = None,
    ) -> None:
        super().__init__(clock, id_factory)
        self._conn = conn
        self._detached = conn is None
        self._cipher = cipher
        self._closed = False
        self._open_lock = asyncio.Lock()

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def closed(self) -> bool:
        return self._closed

    async def _connection(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError("adapter is closed")
        if self._conn is None:
            async with self._open_lock:
                if self._conn is None:
                    self._conn = await connect_db(":memory:")
        return self._conn

    # -----------------------------------------------------------------
    # Row <-> Entry
    # -----------------------------------------------------------------

    def _seal(self, entry_id: str, column: str, value: Optional[str]) -> Optional[str]:
        if self._cipher is None or column not in ENCRYPTED_COLUMNS:
            return value
        return self._cipher.encrypt(entry_id, column, value)

    def _open(self, entry_id: str, column: str, value: Optional[str]) -> Optional[str]:
        if self._cipher is None or column not in ENCRYPTED_COLUMNS:
            return value
        try:
            return self._cipher.decrypt(entry_id, column, value)
        except DecryptionError as exc:
            raise CorruptRecord(entry_id, column, str(exc)) from exc

    def _to_row(self, entry: Entry) -> dict:
        response = json.dumps(entry.ai_response.to_dict(), ensure_ascii=False) if entry.ai_response else None
        history = json.dumps([r.to_dict() for r in entry.dispute_history], ensure_ascii=False)
        row = {
            "id": entry.id,
            "adversity": entry.adversity,
            "belief": entry.belief,
            "consequence": entry.consequence,
            "dispute": entry.dispute,
            "energy": entry.energy,
            "created_at": entry.created_at,
            "updated_at": entry.updated_at,
            "account_id": entry.account_id,
            "dirty_since": entry.dirty_since,
            "is_deleted": 1 if entry.is_deleted else 0,
            "ai_response": response,
            "ai_retry_count": entry.ai_retry_count,
            "dispute_history": history,
        }
        for column in ENCRYPTED_COLUMNS:
            row[column] = self._seal(entry.id, column, row[column])
        return row

    def _from_row(self, row: Any) -> Entry:
        entry_id = row["id"]
        values = {c: self._open(entry_id, c, row[c]) for c in ENCRYPTED_COLUMNS}

        try:
            raw = values["ai_response"]
            response = AnalyzeBeliefResult.from_dict(json.loads(raw)) if raw else None
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning("corrupt ai_response on entry %s: %s", entry_id, exc)
            raise CorruptRecord(entry_id, "ai_response", str(exc)) from exc

        try:
            items = json.loads(values["dispute_history"] or "[]")
            if not isinstance(items, list):
                raise TypeError("dispute_history is not a list")
            history = [DisputeRecord.from_dict(item) for item in items]
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning("corrupt dispute_history on entry %s: %s", entry_id, exc)
            raise CorruptRecord(entry_id, "dispute_history", str(exc)) from exc

        return Entry(
            id=entry_id,
            adversity=values["adversity"],
            belief=values["belief"],
            consequence=values["consequence"],
            dispute=values["dispute"],
            energy=values["energy"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            ai_response=response,
            ai_retry_count=int(row["ai_retry_count"] or 0),
            dispute_history=history,
            dirty_since=row["dirty_since"],
            is_deleted=bool(row["is_deleted"]),
            account_id=row["account_id"],
        )

    async def _read(self, conn: aiosqlite.Connection, entry_id: str) -> Optional[Entry]:
        cur = await conn.execute(f"{SELECT_SQL} WHERE id = ? LIMIT 1", (entry_id,))
        row = await cur.fetchone()
        await cur.close()
        return self._from_row(row) if row else None

    # -----------------------------------------------------------------
    # Storage primitives
    # -----------------------------------------------------------------

    async def _insert(self, entry: Entry) -> None:
        conn = await self._connection()
        row = self._to_row(entry)
        async with transaction(conn):
            try:
                await conn.execute(INSERT_SQL, tuple(row[c] for c in COLUMNS))
            except aiosqlite.IntegrityError as exc:
                raise DuplicateEntryError(entry.id) from exc

    async def _fetch(self, entry_id: str) -> Optional[Entry]:
        conn = await self._connection()
        return await self._read(conn, entry_id)

    async def _mutate(self, entry_id: str, fn: Mutation) -> Entry:
        conn = await self._connection()
        async with transaction(conn):
            current = await self._read(conn, entry_id)
            if current is None:
                raise NotFoundError(entry_id)
            updated = fn(current.copy())
            if updated is None:
                return current
            row = self._to_row(updated)
            params = [row[c] for c in COLUMNS if c not in ("id", "created_at")]
            params.append(entry_id)
            await conn.execute(UPDATE_SQL, params)
            return updated

    async def _select(self, query: EntryFilter) -> List[Entry]:
        conn = await self._connection()
        clauses: List[str] = []
        params: List[Any] = []
        if query.is_deleted is not None:
            clauses.append("is_deleted = ?")
            params.append(1 if query.is_deleted else 0)
        if query.account_id is not ANY_ACCOUNT:
            if query.account_id is None:
                clauses.append("account_id IS NULL")
            else:
                clauses.append("account_id = ?")
                params.append(query.account_id)
        if query.dirty_only:
            clauses.append("dirty_since IS NOT NULL")
        if query.needs_analysis:
            # Staleness lives inside the (possibly encrypted) JSON; checked after decoding.
            clauses.append("is_deleted = 0")

        sql = SELECT_SQL
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        direction = "DESC" if query.descending else "ASC"
        sql += f" ORDER BY {query.order_by} {direction}, id {direction}"
        if query.limit is not None and not query.needs_analysis:
            sql += " LIMIT ?"
            params.append(query.limit)

        cur = await conn.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return [self._from_row(r) for r in rows]

    async def clear(self) -> None:
        conn = await self._connection()
        await wipe_entries(conn)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
