# -*- coding: utf-8 -*-
"""Retry scheduling for AI enrichment, kept outside the coordinator.

Entries needing analysis are passed around as ids on an ``asyncio.Queue``.
A worker takes one id at a time and makes a single coordinator attempt; on
failure the id is put back after an exponential backoff delay computed from
the entry's persisted ``ai_retry_count``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from .adapter import EntriesAdapter
from .coordinator import EnrichmentCoordinator
from .errors import AiServiceError, EntryStoreError, NotFoundError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``base_delay * factor ** (attempts - 1)``, capped."""

    base_delay: float = 2.0
    max_delay: float = 300.0
    factor: float = 2.0
    max_attempts: Optional[int] = 5

    def delay_for(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * self.factor ** (attempts - 1))

    def should_retry(self, attempts: int) -> bool:
        return self.max_attempts is None or attempts < self.max_attempts


class EnrichmentQueue:
    """Feeds entry ids needing analysis to an EnrichmentCoordinator."""

    def __init__(
        self,
        adapter: EntriesAdapter,
        coordinator: EnrichmentCoordinator,
        policy: Optional[BackoffPolicy] = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._adapter = adapter
        self._coordinator = coordinator
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._queued: Set[str] = set()
        self._attempts: Dict[str, int] = {}
        self._retry_tasks: Set["asyncio.Task[None]"] = set()
        self.given_up: Set[str] = set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, entry_id: str) -> bool:
        """Queue *entry_id* unless it is already waiting. Returns True if queued."""
        if entry_id in self._queued:
            return False
        self._queued.add(entry_id)
        self.given_up.discard(entry_id)
        self._queue.put_nowait(entry_id)
        return True

    async def enqueue_pending(self) -> int:
        """Queue every live entry without a fresh analysis; returns how many were added."""
        entries = await self._adapter.list(needs_analysis=True, order_by="created_at", descending=False)
        return sum(1 for e in entries if self.enqueue(e.id))

    async def _attempt(self, entry_id: str) -> None:
        self._queued.discard(entry_id)
        try:
            await self._coordinator.analyze_belief(entry_id)
        except NotFoundError:
            logger.debug("dropping %s from enrichment queue: entry gone", entry_id)
            self._attempts.pop(entry_id, None)
            return
        except AiServiceError as exc:
            entry = await self._adapter.get_by_id(entry_id)
            attempts = self._attempts.get(entry_id, 0) + 1
            if entry is not None:
                attempts = max(attempts, entry.ai_retry_count)
            self._attempts[entry_id] = attempts
            if not exc.retryable or not self._policy.should_retry(attempts):
                logger.warning("giving up enrichment for %s after %d attempts: %s", entry_id, attempts, exc)
                self.given_up.add(entry_id)
                return
            delay = self._policy.delay_for(attempts)
            logger.debug("retrying enrichment for %s in %.1fs", entry_id, delay)
            self._schedule_retry(entry_id, delay)
            return
        except EntryStoreError as exc:
            logger.warning("giving up enrichment for %s: %s", entry_id, exc)
            self._attempts.pop(entry_id, None)
            self.given_up.add(entry_id)
            return
        self._attempts.pop(entry_id, None)

    def _schedule_retry(self, entry_id: str, delay: float) -> None:
        async def _later() -> None:
            await self._sleep(delay)
            self.enqueue(entry_id)

        task = asyncio.ensure_future(_later())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def run(self) -> None:
        """Worker loop; runs until cancelled."""
        while True:
            entry_id = await self._queue.get()
            try:
                await self._attempt(entry_id)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Process queued ids, including scheduled retries, until nothing is left."""
        while True:
            while not self._queue.empty():
                entry_id = self._queue.get_nowait()
                try:
                    await self._attempt(entry_id)
                finally:
                    self._queue.task_done()
            if not self._retry_tasks:
                return
            await asyncio.wait(set(self._retry_tasks))

    async def stop(self) -> None:
        """Cancel scheduled retries."""
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
