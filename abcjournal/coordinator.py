# -*- coding: utf-8 -*-
"""AI enrichment: one attempt per call, results written through the adapter.

The coordinator never schedules retries. A failed call bumps the entry's
``ai_retry_count`` and raises :class:`AiServiceError`; when and whether to
try again is decided by the caller (see :mod:`abcjournal.scheduler`).

The entry is written at most once per call, after the service answered.
A call cancelled while waiting on the service writes nothing.
"""
from __future__ import annotations

import logging
from typing import Union

from .adapter import EntriesAdapter
from .ai import AiService, analysis_request, dispute_request, normalize_analysis, normalize_dispute
from .errors import AiServiceError, NotFoundError
from .models import AnalyzeBeliefResult, DisputeBeliefResult, Entry

logger = logging.getLogger(__name__)


class EnrichmentCoordinator:
    """Runs belief analysis and dispute generation against an AiService."""

    def __init__(self, adapter: EntriesAdapter, service: AiService) -> None:
        self._adapter = adapter
        self._service = service

    @property
    def service(self) -> AiService:
        return self._service

    async def _load(self, entry_or_id: Union[Entry, str]) -> Entry:
        entry_id = entry_or_id.id if isinstance(entry_or_id, Entry) else entry_or_id
        entry = await self._adapter.get_by_id(entry_id)
        if entry is None or entry.is_deleted:
            raise NotFoundError(entry_id)
        return entry

    async def _record_failure(self, entry: Entry, error: AiServiceError) -> None:
        updated = await self._adapter.increment_retry(entry.id)
        logger.warning(
            "AI %s failed for entry %s (retry count %d): %s",
            self._service.mode,
            entry.id,
            updated.ai_retry_count,
            error,
        )

    async def analyze_belief(self, entry_or_id: Union[Entry, str]) -> AnalyzeBeliefResult:
        """Analyze the entry's belief and store the result as its ai_response."""
        entry = await self._load(entry_or_id)
        try:
            raw = await self._service.analyze(analysis_request(entry))
            result = normalize_analysis(raw)
        except AiServiceError as exc:
            await self._record_failure(entry, exc)
            raise
        except Exception as exc:
            error = AiServiceError("service-error", str(exc) or type(exc).__name__)
            await self._record_failure(entry, error)
            raise error from exc

        updated = await self._adapter.update(entry.id, ai_response=result)
        return updated.ai_response or result

    async def dispute_belief(self, entry_or_id: Union[Entry, str]) -> DisputeBeliefResult:
        """Generate a dispute and append it to the entry's dispute history."""
        entry = await self._load(entry_or_id)
        try:
            raw = await self._service.dispute(dispute_request(entry))
            result = normalize_dispute(raw)
        except AiServiceError as exc:
            await self._record_failure(entry, exc)
            raise
        except Exception as exc:
            error = AiServiceError("service-error", str(exc) or type(exc).__name__)
            await self._record_failure(entry, error)
            raise error from exc

        await self._adapter.append_dispute(entry.id, result)
        return result
