# -*- coding: utf-8 -*-
"""Dict-backed EntriesAdapter for fast, isolated tests."""
from __future__ import annotations

from typing import Callable, Dict, List, Optional

from .adapter import EntriesAdapter, EntryFilter, Mutation
from .clock import Clock
from .errors import DuplicateEntryError, NotFoundError
from .models import Entry


class MemoryEntriesAdapter(EntriesAdapter):
    """Keeps entries in a dict keyed by id. Never shared between instances."""

    name = "memory"

    def __init__(self, clock: Clock, id_factory: Optional[Callable[[], str]] = None) -> None:
        super().__init__(clock, id_factory)
        self._rows: Dict[str, Entry] = {}

    async def _insert(self, entry: Entry) -> None:
        if entry.id in self._rows:
            raise DuplicateEntryError(entry.id)
        self._rows[entry.id] = entry.copy()

    async def _fetch(self, entry_id: str) -> Optional[Entry]:
        return self._rows.get(entry_id)

    async def _mutate(self, entry_id: str, fn: Mutation) -> Entry:
        current = self._rows.get(entry_id)
        if current is None:
            raise NotFoundError(entry_id)
        # fn works on a copy so a failing rule leaves the stored row intact.
        updated = fn(current.copy())
        if updated is None:
            return current
        self._rows[entry_id] = updated
        return updated

    async def _select(self, query: EntryFilter) -> List[Entry]:
        return list(self._rows.values())

    async def clear(self) -> None:
        self._rows.clear()
