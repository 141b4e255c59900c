"""Per-feed-run orchestration of the reconciliation pipeline.

parse -> classify -> match -> benchmark -> insight, strictly sequential within
a run. Every stage boundary checks the cancellation signal; every stage has a
soft time budget; the whole run has a hard timeout.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore, CatalogStoreError
from reconciler.detect.benchmark import BenchmarkCalculator
from reconciler.detect.insights import InsightGenerator
from reconciler.domain import (
    FeedHealth,
    FeedRunRequest,
    FeedRunResult,
    PipelineStage,
    RetailerSku,
    RunStatus,
    StageMetrics,
    utcnow,
)
from reconciler.ingest.feed_parser import FeedParseError, FeedParser, feed_parser
from reconciler.ingest.record_classifier import RecordClassifier
from reconciler.logging_config import RunLogger, get_logger
from reconciler.match.canonical_matcher import BatchCommitError, CanonicalMatcher
from reconciler.metrics import record_run, record_stage

logger = logging.getLogger(__name__)


class PipelineCancelled(Exception):
    """Raised at a stage boundary when the run's cancel signal is set."""

    def __init__(self, stage: PipelineStage):
        self.stage = stage
        super().__init__(f"Run cancelled before stage '{stage.value}'")


class StageFailure(Exception):
    """A stage failed; carries the stage and the last committed batch."""

    def __init__(
        self,
        stage: PipelineStage,
        cause: Exception,
        last_committed_batch: Optional[int] = None,
    ):
        self.stage = stage
        self.cause = cause
        self.last_committed_batch = last_committed_batch
        super().__init__(f"Stage '{stage.value}' failed: {cause}")


def stage_budget(records: int) -> float:
    """Soft time budget for a stage handling ``records`` rows."""
    return settings.stage_budget_base_seconds + records * settings.stage_budget_per_row_seconds


def feed_health(total: int, quarantined: int, rejected: int) -> FeedHealth:
    if total <= 0:
        return FeedHealth.HEALTHY
    reject_ratio = rejected / total
    quarantine_ratio = quarantined / total
    if reject_ratio > settings.feed_failed_reject_ratio:
        return FeedHealth.FAILED
    if quarantine_ratio > settings.feed_warning_quarantine_ratio or reject_ratio > settings.feed_warning_reject_ratio:
        return FeedHealth.WARNING
    return FeedHealth.HEALTHY


@dataclass
class RunContext:
    """Mutable state of one run. Owned by exactly one ``run()`` call."""

    request: FeedRunRequest
    result: FeedRunResult
    cancel_event: Optional[asyncio.Event]
    log: RunLogger
    current_stage: Optional[PipelineStage] = None
    skus: list[RetailerSku] = field(default_factory=list)
    changed_canonicals: set[str] = field(default_factory=set)


class PipelineOrchestrator:
    """
    Drives one feed run through the four reconciliation stages.

    The only component that knows about run identity and batch sizing. All
    stage errors are turned into a ``FeedRunResult``; ``run()`` never raises
    for pipeline failures.
    """

    def __init__(
        self,
        store: CatalogStore,
        parser: Optional[FeedParser] = None,
        classifier: Optional[RecordClassifier] = None,
        matcher: Optional[CanonicalMatcher] = None,
        benchmark_calculator: Optional[BenchmarkCalculator] = None,
        insight_generator: Optional[InsightGenerator] = None,
    ):
        self.store = store
        self.parser = parser or feed_parser
        self.classifier = classifier or RecordClassifier(store)
        self.matcher = matcher or CanonicalMatcher(store)
        self.benchmark_calculator = benchmark_calculator or BenchmarkCalculator(store)
        self.insight_generator = insight_generator or InsightGenerator(store)

    async def run(
        self,
        request: FeedRunRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FeedRunResult:
        """
        Execute one feed run.

        Args:
            request: Feed snapshot plus retailer/feed/run identity
            cancel_event: Set to cancel the run at the next stage boundary

        Returns:
            FeedRunResult with status, counts and per-stage metrics
        """
        result = FeedRunResult(
            run_id=request.run_id,
            retailer_id=request.retailer_id,
            feed_id=request.feed_id,
            batch_size=self.matcher.batch_size,
        )
        ctx = RunContext(
            request=request,
            result=result,
            cancel_event=cancel_event,
            log=get_logger(
                __name__,
                run_id=request.run_id,
                retailer_id=request.retailer_id,
                feed_id=request.feed_id,
            ),
        )
        ctx.log.info(f"Starting feed run {request.run_id} ({len(request.content)} bytes)")

        try:
            await asyncio.wait_for(self._execute(ctx), timeout=settings.run_timeout_seconds)
        except asyncio.TimeoutError:
            result.status = RunStatus.FAILURE
            result.failed_stage = ctx.current_stage
            result.error_message = f"Run exceeded {settings.run_timeout_seconds}s timeout"
            ctx.log.error(result.error_message)
        except PipelineCancelled as e:
            result.status = RunStatus.FAILURE
            result.failed_stage = e.stage
            result.error_message = str(e)
            ctx.log.warning(result.error_message)
        except StageFailure as e:
            result.failed_stage = e.stage
            result.last_committed_batch = e.last_committed_batch
            result.error_message = str(e.cause)
            if e.stage == PipelineStage.MATCH and e.last_committed_batch is not None:
                result.status = RunStatus.PARTIAL_FAILURE
            else:
                result.status = RunStatus.FAILURE
            ctx.log.error(f"Feed run failed in stage {e.stage.value}: {e.cause}")

        result.completed_at = utcnow()
        if result.status == RunStatus.FAILURE and result.failed_stage == PipelineStage.PARSE:
            result.feed_health = FeedHealth.FAILED
        else:
            result.feed_health = feed_health(
                result.total_rows, result.quarantined_count, result.rejected_count
            )

        try:
            await self.store.save_run(result)
        except CatalogStoreError as e:
            ctx.log.error(f"Could not record feed run {request.run_id}: {e}")

        record_run(result.status.value)
        ctx.log.info(
            f"Feed run {request.run_id} finished: {result.status.value} "
            f"(health {result.feed_health.value}) in {result.duration_seconds:.2f}s"
        )
        return result

    async def _run_stage(
        self,
        ctx: RunContext,
        stage: PipelineStage,
        records_in: int,
        work: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run one stage: cancel check, timing, budget and error wrapping."""
        if ctx.cancel_event is not None and ctx.cancel_event.is_set():
            raise PipelineCancelled(stage)

        ctx.current_stage = stage
        log = ctx.log.bind(stage=stage.value)
        metrics = StageMetrics(stage=stage, budget_seconds=stage_budget(records_in), records_in=records_in)
        ctx.result.stages[stage.value] = metrics

        start = time.perf_counter()
        try:
            output = await work()
        except BatchCommitError as e:
            ctx.result.matched_count = e.committed_count
            raise StageFailure(stage, e, e.last_committed_batch) from e
        except (FeedParseError, CatalogStoreError) as e:
            raise StageFailure(stage, e) from e
        except Exception as e:
            log.exception(f"Unexpected error in stage {stage.value}")
            raise StageFailure(stage, e) from e
        finally:
            metrics.elapsed_seconds = time.perf_counter() - start
            metrics.over_budget = metrics.elapsed_seconds > metrics.budget_seconds
            record_stage(stage.value, metrics.elapsed_seconds, metrics.over_budget)
            if metrics.over_budget:
                log.warning(
                    f"Stage {stage.value} took {metrics.elapsed_seconds:.2f}s, "
                    f"over its {metrics.budget_seconds:.2f}s budget"
                )

        return output

    async def _execute(self, ctx: RunContext) -> None:
        request = ctx.request
        result = ctx.result

        # Parse
        rows = await self._run_stage(
            ctx, PipelineStage.PARSE, 0,
            lambda: asyncio.to_thread(self.parser.parse, request.content, request.format),
        )
        result.total_rows = len(rows)
        result.stages[PipelineStage.PARSE.value].records_out = len(rows)
        result.content_hash = hashlib.sha256(request.content).hexdigest()

        unchanged = False
        if settings.skip_unchanged_feeds:
            try:
                previous_hash = await self.store.reusable_content_hash(request.feed_id)
            except CatalogStoreError as e:
                raise StageFailure(PipelineStage.CLASSIFY, e) from e
            unchanged = previous_hash == result.content_hash

        if unchanged:
            await self._reuse_previous_run(ctx)
        else:
            await self._classify(ctx, rows)
            await self._match(ctx)

        await self._benchmark(ctx)
        await self._insights(ctx)
        result.status = RunStatus.SUCCESS

    async def _reuse_previous_run(self, ctx: RunContext) -> None:
        """Unchanged feed: keep the persisted rows, refresh benchmarks and insights."""
        request = ctx.request
        result = ctx.result

        async def load():
            return await self.store.list_active_retailer_skus(request.retailer_id, request.feed_id)

        skus = await self._run_stage(ctx, PipelineStage.CLASSIFY, result.total_rows, load)
        ctx.skus = skus
        result.skipped_unchanged = True
        result.indexable_count = len(skus)
        result.retailer_sku_ids = [sku.id for sku in skus]
        result.matched_count = sum(1 for sku in skus if sku.canonical_sku_id)
        result.stages[PipelineStage.CLASSIFY.value].records_out = len(skus)
        ctx.log.info(f"Feed content unchanged, reusing {len(skus)} active SKUs")

    async def _classify(self, ctx: RunContext, rows: list[dict]) -> None:
        request = ctx.request
        result = ctx.result

        classification = await self._run_stage(
            ctx, PipelineStage.CLASSIFY, len(rows),
            lambda: self.classifier.classify_feed(
                rows, request.retailer_id, request.feed_id, request.run_id
            ),
        )
        ctx.skus = classification.indexable
        result.indexable_count = classification.indexable_count
        result.quarantined_count = classification.quarantined_count
        result.rejected_count = classification.rejected_count
        result.deactivated_count = classification.deactivated_count
        result.retailer_sku_ids = [sku.id for sku in classification.indexable]
        result.quarantined_ids = [record.id for record in classification.quarantined]
        result.error_codes = dict(classification.error_codes)
        result.row_errors = classification.row_errors
        result.stages[PipelineStage.CLASSIFY.value].records_out = (
            classification.indexable_count + classification.quarantined_count
        )

    async def _match(self, ctx: RunContext) -> None:
        result = ctx.result

        match_result = await self._run_stage(
            ctx, PipelineStage.MATCH, len(ctx.skus),
            lambda: self.matcher.match(ctx.skus),
        )
        result.matched_count = match_result.matched_count
        result.auto_created_count = match_result.auto_created_count
        result.last_committed_batch = match_result.last_committed_batch
        result.stages[PipelineStage.MATCH.value].records_out = match_result.matched_count

        for sku in ctx.skus:
            sku.canonical_sku_id = match_result.assignments.get(sku.id, sku.canonical_sku_id)

    async def _benchmark(self, ctx: RunContext) -> None:
        result = ctx.result

        benchmark_result = await self._run_stage(
            ctx, PipelineStage.BENCHMARK, len(ctx.skus),
            lambda: self.benchmark_calculator.recompute_all(ctx.request.run_id),
        )
        ctx.changed_canonicals = benchmark_result.changed_ids
        result.benchmark_count = benchmark_result.count
        result.stages[PipelineStage.BENCHMARK.value].records_out = benchmark_result.count

    async def _insight_targets(self, ctx: RunContext) -> list[RetailerSku]:
        """This run's SKUs plus every other active SKU whose benchmark moved."""
        targets = list(ctx.skus)
        if ctx.changed_canonicals:
            seen = {sku.id for sku in targets}
            affected = await self.store.list_active_skus_by_canonicals(ctx.changed_canonicals)
            targets.extend(sku for sku in affected if sku.id not in seen)
        return targets

    async def _insights(self, ctx: RunContext) -> None:
        result = ctx.result

        async def generate():
            targets = await self._insight_targets(ctx)
            return await self.insight_generator.generate(targets, ctx.request.run_id)

        insight_result = await self._run_stage(ctx, PipelineStage.INSIGHT, len(ctx.skus), generate)
        result.insight_count = insight_result.count
        result.stages[PipelineStage.INSIGHT.value].records_out = insight_result.count
