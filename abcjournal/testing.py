# -*- coding: utf-8 -*-
"""Deterministic test doubles and the adapter factory.

Every factory call returns a fresh adapter wired to its own clock and id
generator, so contract tests can run unmodified against each backend and
in parallel without shared state.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Union

from .adapter import EntriesAdapter
from .clock import format_iso, parse_iso
from .crypto import EntryCipher
from .db import connect_db, wipe_entries
from .memory import MemoryEntriesAdapter
from .sql import SQLEntriesAdapter

DEFAULT_START = "2025-09-11T00:00:00.000Z"


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: str = DEFAULT_START) -> None:
        self._current = parse_iso(start)

    def now_iso(self) -> str:
        return format_iso(self._current)

    def set(self, iso: str) -> None:
        self._current = parse_iso(iso)

    def advance(self, **delta: float) -> str:
        """Move forward by a ``timedelta(**delta)``; returns the new time."""
        self._current += timedelta(**delta)
        return self.now_iso()

    def advance_ms(self, ms: int) -> str:
        return self.advance(milliseconds=ms)

    @property
    def now(self) -> datetime:
        return self._current


class SequentialIds:
    """Id factory yielding ``<prefix>-0``, ``<prefix>-1``, ..."""

    def __init__(self, prefix: str = "entry") -> None:
        self._prefix = prefix
        self._counter = itertools.count()

    def __call__(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


@dataclass
class AdapterContext:
    name: str
    adapter: EntriesAdapter
    clock: ManualClock
    cleanup: Callable[[], Awaitable[None]]


def _idempotent(fn: Callable[[], Awaitable[None]]) -> Callable[[], Awaitable[None]]:
    done = False

    async def cleanup() -> None:
        nonlocal done
        if done:
            return
        done = True
        await fn()

    return cleanup


async def make_memory(start: str = DEFAULT_START) -> AdapterContext:
    """Dict-backed adapter."""
    clock = ManualClock(start)
    adapter = MemoryEntriesAdapter(clock, id_factory=SequentialIds())

    async def _cleanup() -> None:
        await adapter.clear()
        await adapter.close()

    return AdapterContext("memory", adapter, clock, _idempotent(_cleanup))


async def make_sqlite(
    path: Optional[Union[str, Path]] = None,
    *,
    cipher: Optional[EntryCipher] = None,
    start: str = DEFAULT_START,
) -> AdapterContext:
    """SQLite adapter; detached (private in-memory database) when *path* is None.

    Cleanup wipes rows (unless the test already closed the adapter), then
    closes the connection.
    """
    clock = ManualClock(start)
    if path is None:
        adapter = SQLEntriesAdapter(None, clock, id_factory=SequentialIds(), cipher=cipher)

        async def _cleanup() -> None:
            if not adapter.closed:
                await adapter.clear()
            await adapter.close()

        return AdapterContext("sqlite-detached", adapter, clock, _idempotent(_cleanup))

    conn = await connect_db(str(path))
    adapter = SQLEntriesAdapter(conn, clock, id_factory=SequentialIds(), cipher=cipher)

    async def _cleanup_file() -> None:
        if not adapter.closed:
            await wipe_entries(conn)
        await adapter.close()

    return AdapterContext("sqlite", adapter, clock, _idempotent(_cleanup_file))


BACKENDS: Tuple[str, ...] = ("memory", "sqlite-detached", "sqlite")


async def make_backend(name: str, tmp_dir: Optional[Path] = None) -> AdapterContext:
    """Build the backend called *name*; file-backed SQLite needs *tmp_dir*."""
    if name == "memory":
        return await make_memory()
    if name == "sqlite-detached":
        return await make_sqlite()
    if name == "sqlite":
        if tmp_dir is None:
            raise ValueError("file-backed sqlite needs a directory")
        directory = Path(tmp_dir)
        directory.mkdir(parents=True, exist_ok=True)
        return await make_sqlite(directory / "entries.db")
    raise ValueError(f"unknown backend {name!r}")
