# -*- coding: utf-8 -*-
"""Storage-agnostic EntriesAdapter contract.

The mutation rules (timestamps, dirty tracking, validation, append-only
dispute history, AI retry bookkeeping) live here, once. Backends only
implement the storage primitives:

    _insert(entry)          persist a new row, DuplicateEntryError on clash
    _fetch(entry_id)        one row or None
    _mutate(entry_id, fn)   atomically load, apply *fn*, persist its result
    _select(query)          rows matching the storage-level part of *query*
    clear(), close()

All operations are coroutines so a UI event loop is never blocked.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .clock import Clock, latest, normalize_iso, parse_iso
from .errors import NotFoundError, StaleAcknowledgment, ValidationError
from .models import (
    ANALYZED_FIELDS,
    OPTIONAL_TEXT_FIELDS,
    REQUIRED_TEXT_FIELDS,
    TEXT_FIELDS,
    AnalyzeBeliefResult,
    DisputeBeliefResult,
    DisputeRecord,
    Entry,
)

logger = logging.getLogger(__name__)

CREATE_FIELDS = TEXT_FIELDS + ("id", "account_id")
PATCH_FIELDS = TEXT_FIELDS + ("account_id", "ai_response", "ai_retry_count")
# Local edits grow dispute_history only through append_dispute.
SYNC_ONLY_FIELDS = ("updated_at", "is_deleted", "dispute_history")
ORDER_FIELDS = ("updated_at", "created_at")


def new_entry_id() -> str:
    return str(uuid.uuid4())


class _AnyAccount:
    def __repr__(self) -> str:
        return "ANY_ACCOUNT"


ANY_ACCOUNT: Any = _AnyAccount()

Mutation = Callable[[Entry], Optional[Entry]]


# ---------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EntryFilter:
    """Criteria for ``EntriesAdapter.list``.

    ``is_deleted=None`` returns live entries and tombstones alike.
    ``account_id`` left at ANY_ACCOUNT matches every owner; ``None`` matches
    only unclaimed entries.
    """

    is_deleted: Optional[bool] = False
    account_id: Any = ANY_ACCOUNT
    dirty_only: bool = False
    needs_analysis: bool = False
    order_by: str = "updated_at"
    descending: bool = True
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.order_by not in ORDER_FIELDS:
            raise ValidationError(f"cannot order by {self.order_by!r}", field="order_by")
        if self.limit is not None and self.limit < 0:
            raise ValidationError("limit must be non-negative", field="limit")

    def matches(self, entry: Entry) -> bool:
        if self.is_deleted is not None and entry.is_deleted != self.is_deleted:
            return False
        if self.account_id is not ANY_ACCOUNT and entry.account_id != self.account_id:
            return False
        if self.dirty_only and entry.dirty_since is None:
            return False
        if self.needs_analysis and not entry.needs_analysis:
            return False
        return True

    def sort_key(self, entry: Entry):
        return (getattr(entry, self.order_by), entry.id)

    def apply(self, entries: List[Entry]) -> List[Entry]:
        """Filter, order and truncate *entries*."""
        kept = sorted(
            (e for e in entries if self.matches(e)),
            key=self.sort_key,
            reverse=self.descending,
        )
        if self.limit is not None:
            kept = kept[: self.limit]
        return kept


# ---------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------

class EntriesAdapter(ABC):
    """CRUD + dirty-tracking surface every storage backend satisfies identically."""

    name = "abstract"

    def __init__(self, clock: Clock, id_factory: Optional[Callable[[], str]] = None) -> None:
        self._clock = clock
        self._id_factory = id_factory or new_entry_id

    @property
    def clock(self) -> Clock:
        return self._clock

    # -- storage primitives -------------------------------------------------

    @abstractmethod
    async def _insert(self, entry: Entry) -> None:
        ...

    @abstractmethod
    async def _fetch(self, entry_id: str) -> Optional[Entry]:
        ...

    @abstractmethod
    async def _mutate(self, entry_id: str, fn: Mutation) -> Entry:
        """Load *entry_id*, apply *fn* and persist its result atomically.

        *fn* receives a private copy and returns the entry to store, or None
        to leave the row untouched. Returns the stored (or untouched) entry.
        Raises NotFoundError when the id does not exist.
        """

    @abstractmethod
    async def _select(self, query: EntryFilter) -> List[Entry]:
        """Return candidate rows; the caller applies ``query`` on top."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every row, keeping the schema."""

    async def close(self) -> None:
        """Release backend resources."""

    # -- public operations --------------------------------------------------

    async def create(self, data: Optional[Mapping[str, Any]] = None, **fields: Any) -> Entry:
        """Create a new dirty entry stamped with the current time."""
        values: Dict[str, Any] = dict(data or {})
        values.update(fields)
        entry = self._build_entry(values)
        await self._insert(entry)
        return entry.copy()

    async def update(
        self,
        entry_id: str,
        patch: Optional[Mapping[str, Any]] = None,
        *,
        from_sync: bool = False,
        **fields: Any,
    ) -> Entry:
        """Merge *patch* onto the stored entry.

        Local edits mark the entry dirty. ``from_sync=True`` applies a remote
        write: ``dirty_since`` is cleared and the remote ``updated_at``,
        ``is_deleted`` and ``dispute_history`` may be supplied.
        """
        changes: Dict[str, Any] = dict(patch or {})
        changes.update(fields)
        self._check_patch_keys(changes, from_sync)
        result = await self._mutate(entry_id, lambda current: self._apply_patch(current, changes, from_sync))
        return result.copy()

    async def soft_delete(self, entry_id: str) -> Entry:
        """Turn the entry into a dirty tombstone; repeat calls only restamp."""

        def _delete(current: Entry) -> Entry:
            current.is_deleted = True
            self._touch(current)
            return current

        result = await self._mutate(entry_id, _delete)
        return result.copy()

    async def append_dispute(self, entry_id: str, result: DisputeBeliefResult) -> Entry:
        """Append one dispute record, stamped now, to the entry's history."""

        def _append(current: Entry) -> Entry:
            stamp = self._touch(current)
            current.dispute_history.append(DisputeRecord(result=result, created_at=stamp))
            return current

        updated = await self._mutate(entry_id, _append)
        return updated.copy()

    async def increment_retry(self, entry_id: str) -> Entry:
        """Count one failed enrichment attempt.

        The counter only moves while no AI response is stored; otherwise the
        entry is returned untouched.
        """

        def _bump(current: Entry) -> Optional[Entry]:
            if current.ai_response is not None:
                return None
            current.ai_retry_count += 1
            self._touch(current)
            return current

        updated = await self._mutate(entry_id, _bump)
        return updated.copy()

    async def get_by_id(self, entry_id: str) -> Optional[Entry]:
        """Return the entry, tombstones included, or None."""
        found = await self._fetch(entry_id)
        return found.copy() if found is not None else None

    async def list(self, query: Optional[EntryFilter] = None, **criteria: Any) -> List[Entry]:
        """Return a materialized, ordered list of matching entries."""
        if query is None:
            query = EntryFilter(**criteria)
        elif criteria:
            query = replace(query, **criteria)
        rows = await self._select(query)
        return [e.copy() for e in query.apply(rows)]

    async def mark_synced(self, entry_id: str, synced_at: str) -> Union[Entry, StaleAcknowledgment]:
        """Acknowledge a push made at *synced_at*.

        Clears ``dirty_since`` only if no local mutation happened after
        *synced_at*; otherwise returns a StaleAcknowledgment and leaves the
        entry untouched.
        """
        try:
            parse_iso(synced_at)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid synced_at: {synced_at!r}", field="synced_at") from exc

        outcome: Dict[str, Any] = {}

        def _acknowledge(current: Entry) -> Optional[Entry]:
            state, stale = current.sync_state.on_acknowledge(current.dirty_since, synced_at)
            if stale:
                outcome["stale"] = StaleAcknowledgment(entry_id, synced_at, current.dirty_since)
                return None
            if state is current.sync_state:
                return None
            current.dirty_since = None
            return current

        result = await self._mutate(entry_id, _acknowledge)
        if "stale" in outcome:
            logger.warning(
                "stale sync acknowledgment for %s: synced_at=%s dirty_since=%s",
                entry_id,
                synced_at,
                result.dirty_since,
            )
            return outcome["stale"]
        return result.copy()

    # -- rules --------------------------------------------------------------

    def _stamp(self, current: Optional[Entry] = None) -> str:
        now = normalize_iso(self._clock.now_iso())
        if current is None:
            return now
        return latest(current.updated_at, now)

    def _touch(self, current: Entry) -> str:
        """Record a local mutation on *current*; returns the stamp used."""
        stamp = self._stamp(current)
        current.updated_at = stamp
        current.dirty_since = stamp
        return stamp

    def _build_entry(self, values: Dict[str, Any]) -> Entry:
        unknown = set(values) - set(CREATE_FIELDS)
        if unknown:
            raise ValidationError(f"unexpected fields on create: {sorted(unknown)}")
        for name in REQUIRED_TEXT_FIELDS:
            _check_required_text(name, values.get(name))
        for name in OPTIONAL_TEXT_FIELDS:
            _check_optional_text(name, values.get(name))
        _check_optional_text("account_id", values.get("account_id"))

        entry_id = values.get("id")
        if entry_id is None:
            entry_id = self._id_factory()
        elif not isinstance(entry_id, str) or not entry_id.strip():
            raise ValidationError("id must be a non-empty string", field="id")

        now = self._stamp()
        return Entry(
            id=entry_id,
            adversity=values["adversity"],
            belief=values["belief"],
            consequence=values.get("consequence"),
            dispute=values.get("dispute"),
            energy=values.get("energy"),
            created_at=now,
            updated_at=now,
            dirty_since=now,
            account_id=values.get("account_id"),
        )

    def _check_patch_keys(self, changes: Mapping[str, Any], from_sync: bool) -> None:
        allowed = set(PATCH_FIELDS)
        if from_sync:
            allowed.update(SYNC_ONLY_FIELDS)
        rejected = set(changes) - allowed
        if rejected:
            raise ValidationError(f"fields cannot be patched: {sorted(rejected)}")
        remote_stamp = changes.get("updated_at")
        if remote_stamp is not None:
            try:
                parse_iso(remote_stamp)
            except (AttributeError, TypeError, ValueError) as exc:
                raise ValidationError(f"invalid updated_at: {remote_stamp!r}", field="updated_at") from exc

    def _apply_patch(self, current: Entry, changes: Mapping[str, Any], from_sync: bool) -> Entry:
        merged = current
        previous = current.copy()

        for name in REQUIRED_TEXT_FIELDS:
            if name in changes:
                _check_required_text(name, changes[name])
                setattr(merged, name, changes[name])
        for name in OPTIONAL_TEXT_FIELDS:
            if name in changes:
                _check_optional_text(name, changes[name])
                setattr(merged, name, changes[name])
        if "account_id" in changes:
            _check_optional_text("account_id", changes["account_id"])
            merged.account_id = changes["account_id"]

        if "dispute_history" in changes:
            merged.dispute_history = [_coerce_record(r) for r in changes["dispute_history"]]

        if "ai_response" in changes:
            merged.ai_response = _coerce_response(changes["ai_response"])
        elif previous.ai_response is not None and any(
            name in changes and changes[name] != getattr(previous, name) for name in ANALYZED_FIELDS
        ):
            merged.ai_response = replace(previous.ai_response, is_stale=True)

        if "ai_retry_count" in changes:
            count = changes["ai_retry_count"]
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                raise ValidationError("ai_retry_count must be a non-negative int", field="ai_retry_count")
            if not from_sync and count < previous.ai_retry_count and merged.ai_response is None:
                raise ValidationError("ai_retry_count cannot decrease", field="ai_retry_count")
            if not from_sync and previous.ai_response is not None and count > previous.ai_retry_count:
                raise ValidationError(
                    "ai_retry_count only grows while no response is stored", field="ai_retry_count"
                )
            merged.ai_retry_count = count
        if changes.get("ai_response") is not None and not (from_sync and "ai_retry_count" in changes):
            merged.ai_retry_count = 0

        if from_sync:
            remote_stamp = changes.get("updated_at")
            stamp = (
                latest(previous.updated_at, normalize_iso(remote_stamp)) if remote_stamp else self._stamp(previous)
            )
            if "is_deleted" in changes:
                merged.is_deleted = bool(changes["is_deleted"])
            merged.updated_at = stamp
            merged.dirty_since = None
        else:
            stamp = self._touch(merged)

        if merged.ai_response is not None and merged.ai_response.created_at is None:
            merged.ai_response = replace(merged.ai_response, created_at=stamp)
        return merged


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _check_required_text(name: str, value: Any) -> None:
    if value is None:
        raise ValidationError(f"{name} is required", field=name)
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be text", field=name)
    if not value.strip():
        raise ValidationError(f"{name} must not be empty", field=name)


def _check_optional_text(name: str, value: Any) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be text or None", field=name)


def _coerce_response(value: Any) -> Optional[AnalyzeBeliefResult]:
    if value is None or isinstance(value, AnalyzeBeliefResult):
        return value
    if isinstance(value, Mapping):
        return AnalyzeBeliefResult.from_dict(value)
    raise ValidationError("ai_response must be an AnalyzeBeliefResult", field="ai_response")


def _coerce_record(value: Any) -> DisputeRecord:
    if isinstance(value, DisputeRecord):
        return value
    if isinstance(value, Mapping):
        return DisputeRecord.from_dict(value)
    raise ValidationError("dispute_history items must be DisputeRecord", field="dispute_history")
