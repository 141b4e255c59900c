"""Concurrent execution of independent feed runs."""

import asyncio
import logging
from typing import Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore
from reconciler.domain import FeedRunRequest, FeedRunResult, RunStatus
from reconciler.worker.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runs feed pipelines for different retailers side by side.

    Each run gets its own ``PipelineOrchestrator``; the catalog store is the
    only thing they share.
    """

    def __init__(self, store: CatalogStore, max_concurrent_runs: Optional[int] = None):
        self.store = store
        self.max_concurrent_runs = max_concurrent_runs or settings.max_concurrent_runs
        self._semaphore = asyncio.Semaphore(self.max_concurrent_runs)
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def active_runs(self) -> int:
        """Runs started and not yet finished, including those waiting for a slot."""
        return len(self._cancel_events)

    def cancel(self, run_id: str) -> bool:
        """Ask a running feed run to stop at its next stage boundary."""
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    async def run_feed(self, request: FeedRunRequest) -> FeedRunResult:
        """Run one feed pipeline, waiting for a free slot first."""
        cancel_event = asyncio.Event()
        self._cancel_events[request.run_id] = cancel_event
        try:
            async with self._semaphore:
                orchestrator = PipelineOrchestrator(self.store)
                return await orchestrator.run(request, cancel_event)
        finally:
            self._cancel_events.pop(request.run_id, None)

    async def run_feeds(self, requests: list[FeedRunRequest]) -> list[FeedRunResult]:
        """
        Run several feed pipelines concurrently.

        Args:
            requests: Independent feed runs

        Returns:
            Results in the same order as ``requests``
        """
        logger.info(
            f"Running {len(requests)} feed runs (max {self.max_concurrent_runs} concurrent)"
        )
        results = await asyncio.gather(*(self.run_feed(request) for request in requests))
        failed = [r for r in results if r.status != RunStatus.SUCCESS]
        if failed:
            logger.warning(f"{len(failed)} of {len(results)} feed runs did not succeed")
        return list(results)
