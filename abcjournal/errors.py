# -*- coding: utf-8 -*-
"""Error taxonomy for the entry store and the AI enrichment pipeline.

Storage errors propagate to the caller unmodified. The coordinator turns
every AI failure into :class:`AiServiceError`. A stale sync acknowledgment
is not an error: :meth:`EntriesAdapter.mark_synced` returns a
:class:`StaleAcknowledgment` instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class EntryStoreError(Exception):
    """Base class for all errors raised by abcjournal."""


class ValidationError(EntryStoreError, ValueError):
    """Input is missing required fields or breaks an entry invariant."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateEntryError(ValidationError):
    """An entry with the same id already exists (tombstones included)."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"duplicate id: {entry_id}", field="id")
        self.entry_id = entry_id


class NotFoundError(EntryStoreError, LookupError):
    """The targeted id does not exist."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Entry {entry_id} not found")
        self.entry_id = entry_id


class CorruptRecord(EntryStoreError):
    """A stored row could not be decoded (bad JSON or failed decryption)."""

    def __init__(self, entry_id: str, column: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"entry {entry_id} has a corrupt {column} column{detail}")
        self.entry_id = entry_id
        self.column = column


class AiServiceError(EntryStoreError):
    """An enrichment call failed; the entry itself is left intact."""

    def __init__(self, code: str, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class VaultLockedError(EntryStoreError):
    """The vault is missing, or the passphrase did not unlock it."""


@dataclass(frozen=True)
class StaleAcknowledgment:
    """A sync acknowledgment that raced a newer local edit.

    Returned (never raised) by ``mark_synced``. The entry keeps its
    ``dirty_since`` so the caller can push it again.
    """

    entry_id: str
    synced_at: str
    dirty_since: Optional[str]
