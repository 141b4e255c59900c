"""Tests for feed run orchestration."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from factories import PRODUCT_TITLES, build_rows, make_upc, to_csv
from reconciler.config import settings
from reconciler.db.memory import InMemoryCatalogStore
from reconciler.db.repository import CatalogStoreError
from reconciler.domain import (
    FeedFormat,
    FeedHealth,
    FeedRunRequest,
    InsightType,
    PipelineStage,
    RunStatus,
)
from reconciler.ingest.record_classifier import RecordClassifier
from reconciler.match.canonical_matcher import CanonicalMatcher
from reconciler.worker.pipeline import PipelineOrchestrator, feed_health, stage_budget
from reconciler.worker.tasks import TaskRunner


def _request(rows, run_id="run-1", retailer_id="retailer-a", feed_id="feed-a"):
    return FeedRunRequest(
        retailer_id=retailer_id,
        feed_id=feed_id,
        run_id=run_id,
        content=to_csv(rows),
        format=FeedFormat.CSV,
    )


def _stage_seconds(result):
    return sum(m.elapsed_seconds for m in result.stages.values())


@pytest.mark.asyncio
async def test_round_trip_feed(store):
    """Test a 150-row feed with 10% missing UPCs end to end."""
    rows = build_rows(150, missing_upc_every=10)

    result = await PipelineOrchestrator(store).run(_request(rows))

    assert result.status == RunStatus.SUCCESS
    assert result.total_rows == 150
    assert result.indexable_count == 135
    assert result.quarantined_count == 15
    assert result.rejected_count == 0
    assert len(store.retailer_skus) + len(store.quarantined) == 150
    assert result.batch_jobs == 2
    assert result.matched_count == 135
    assert all(sku.canonical_sku_id for sku in store.retailer_skus.values())
    assert result.feed_health == FeedHealth.HEALTHY
    assert set(result.stages) == {stage.value for stage in PipelineStage}
    # Every 10th row is the same product, so it has no indexable listing
    assert result.benchmark_count == len(store.benchmarks) == len(store.canonicals) == 9
    assert result.insight_count == 0
    assert result.error_codes == {"MISSING_UPC": 15}
    assert result.completed_at is not None
    assert (await store.get_run("run-1")).indexable_count == 135


@pytest.mark.asyncio
async def test_unchanged_feed_skips_classify_and_match(store):
    """Test re-sending an identical snapshot reuses the persisted rows."""
    rows = build_rows(20)
    orchestrator = PipelineOrchestrator(store)
    await orchestrator.run(_request(rows, run_id="run-1"))
    canonical_count = len(store.canonicals)

    result = await orchestrator.run(_request(rows, run_id="run-2"))

    assert result.status == RunStatus.SUCCESS
    assert result.skipped_unchanged is True
    assert result.indexable_count == 20
    assert result.matched_count == 20
    assert result.auto_created_count == 0
    assert len(store.canonicals) == canonical_count
    assert PipelineStage.MATCH.value not in result.stages
    assert PipelineStage.BENCHMARK.value in result.stages


@pytest.mark.asyncio
async def test_changed_feed_is_reprocessed(store):
    orchestrator = PipelineOrchestrator(store)
    await orchestrator.run(_request(build_rows(20), run_id="run-1"))

    result = await orchestrator.run(_request(build_rows(15), run_id="run-2"))

    assert result.skipped_unchanged is False
    assert result.indexable_count == 15
    assert result.deactivated_count == 5


@pytest.mark.asyncio
async def test_unreadable_feed_fails_parse(store):
    request = FeedRunRequest("retailer-a", "feed-a", "run-1", b"\xff\xfe\xfa", FeedFormat.GENERIC)

    result = await PipelineOrchestrator(store).run(request)

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.PARSE
    assert result.feed_health == FeedHealth.FAILED
    assert store.retailer_skus == {}
    assert (await store.get_run("run-1")).status == RunStatus.FAILURE


@pytest.mark.asyncio
async def test_cancel_before_start(store):
    event = asyncio.Event()
    event.set()

    result = await PipelineOrchestrator(store).run(_request(build_rows(5)), event)

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.PARSE
    assert result.stages == {}


@pytest.mark.asyncio
async def test_cancel_at_stage_boundary(store):
    """Test a cancel raised during classify stops the run before matching."""
    event = asyncio.Event()

    class CancellingClassifier(RecordClassifier):
        async def classify_feed(self, *args, **kwargs):
            result = await super().classify_feed(*args, **kwargs)
            event.set()
            return result

    orchestrator = PipelineOrchestrator(store, classifier=CancellingClassifier(store))
    result = await orchestrator.run(_request(build_rows(30)), event)

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.MATCH
    assert result.indexable_count == 30
    assert result.matched_count == 0
    assert PipelineStage.MATCH.value not in result.stages
    assert not any(sku.canonical_sku_id for sku in store.retailer_skus.values())


@pytest.mark.asyncio
async def test_partial_failure_after_committed_batch(store):
    """Test a match failure after some batches committed is a partial failure."""
    real_assign = store.assign_canonicals
    calls = []

    async def flaky(assignments):
        calls.append(assignments)
        if len(calls) > 1:
            raise CatalogStoreError("connection reset")
        await real_assign(assignments)

    store.assign_canonicals = flaky
    matcher = CanonicalMatcher(store, batch_size=50, max_retries=1, retry_backoff=0)

    result = await PipelineOrchestrator(store, matcher=matcher).run(_request(build_rows(150)))

    assert result.status == RunStatus.PARTIAL_FAILURE
    assert result.failed_stage == PipelineStage.MATCH
    assert result.last_committed_batch == 0
    assert result.matched_count == 50
    assert result.benchmark_count == 0
    assert PipelineStage.BENCHMARK.value not in result.stages


@pytest.mark.asyncio
async def test_failure_in_first_batch_is_full_failure(store):
    store.assign_canonicals = AsyncMock(side_effect=CatalogStoreError("read-only"))
    matcher = CanonicalMatcher(store, batch_size=50, max_retries=1, retry_backoff=0)

    result = await PipelineOrchestrator(store, matcher=matcher).run(_request(build_rows(20)))

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.MATCH
    assert result.last_committed_batch is None
    assert "read-only" in result.error_message


@pytest.mark.asyncio
async def test_store_failure_during_classify(store):
    store.upsert_retailer_skus = AsyncMock(side_effect=CatalogStoreError("disk full"))

    result = await PipelineOrchestrator(store).run(_request(build_rows(5)))

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.CLASSIFY
    assert result.error_message == "disk full"


@pytest.mark.asyncio
async def test_run_timeout(store, monkeypatch):
    """Test the hard run timeout aborts a stuck stage."""
    monkeypatch.setattr(settings, "run_timeout_seconds", 0.05)

    class SlowClassifier(RecordClassifier):
        async def classify_feed(self, *args, **kwargs):
            await asyncio.sleep(5)

    orchestrator = PipelineOrchestrator(store, classifier=SlowClassifier(store))
    result = await orchestrator.run(_request(build_rows(5)))

    assert result.status == RunStatus.FAILURE
    assert result.failed_stage == PipelineStage.CLASSIFY
    assert "timeout" in result.error_message


@pytest.mark.asyncio
async def test_unsaved_run_still_returns_result(store):
    store.save_run = AsyncMock(side_effect=CatalogStoreError("runs table locked"))

    result = await PipelineOrchestrator(store).run(_request(build_rows(5)))

    assert result.status == RunStatus.SUCCESS
    store.save_run.assert_awaited_once()


@pytest.mark.asyncio
async def test_feed_health_reported_on_success(store):
    """Test a noisy feed still succeeds but reports its health."""
    quarantine_heavy = build_rows(10, missing_upc_every=2)
    reject_heavy = build_rows(10)
    for row in reject_heavy[:6]:
        row["price"] = "0"

    orchestrator = PipelineOrchestrator(store)
    warning = await orchestrator.run(_request(quarantine_heavy, run_id="run-1", feed_id="feed-q"))
    failed = await orchestrator.run(_request(reject_heavy, run_id="run-2", feed_id="feed-r"))

    assert warning.status == RunStatus.SUCCESS
    assert warning.feed_health == FeedHealth.WARNING
    assert failed.status == RunStatus.SUCCESS
    assert failed.feed_health == FeedHealth.FAILED
    assert failed.rejected_count == 6


@pytest.mark.parametrize(
    "total,quarantined,rejected,health",
    [
        (100, 10, 0, FeedHealth.HEALTHY),
        (100, 31, 0, FeedHealth.WARNING),
        (100, 0, 11, FeedHealth.WARNING),
        (100, 0, 51, FeedHealth.FAILED),
        (0, 0, 0, FeedHealth.HEALTHY),
    ],
)
def test_feed_health(total, quarantined, rejected, health):
    assert feed_health(total, quarantined, rejected) == health


def test_stage_budget_scales_with_rows():
    assert stage_budget(0) == settings.stage_budget_base_seconds
    assert stage_budget(1000) == pytest.approx(
        settings.stage_budget_base_seconds + 1000 * settings.stage_budget_per_row_seconds
    )


@pytest.mark.asyncio
async def test_concurrent_runs_are_isolated(store):
    """Test runs for different retailers share only the canonical catalog."""
    runner = TaskRunner(store, max_concurrent_runs=3)
    requests = [
        _request(build_rows(40), run_id=f"run-{name}", retailer_id=name, feed_id=f"feed-{name}")
        for name in ("alpha", "bravo", "charlie")
    ]

    results = await runner.run_feeds(requests)

    assert [r.run_id for r in results] == ["run-alpha", "run-bravo", "run-charlie"]
    assert all(r.status == RunStatus.SUCCESS for r in results)
    assert all(r.indexable_count == 40 for r in results)
    id_sets = [set(r.retailer_sku_ids) for r in results]
    assert not (id_sets[0] & id_sets[1] or id_sets[0] & id_sets[2] or id_sets[1] & id_sets[2])
    assert len(store.retailer_skus) == 120
    assert len(store.canonicals) == 10
    assert all(b.seller_count == 3 for b in store.benchmarks.values())


@pytest.mark.asyncio
async def test_cancel_unknown_run(store):
    assert TaskRunner(store).cancel("never-started") is False


@pytest.mark.asyncio
async def test_scaling_is_near_linear():
    """Test a 3,000-row feed stays within 20x the stage time of a 150-row feed."""
    small = await PipelineOrchestrator(InMemoryCatalogStore()).run(_request(build_rows(150)))
    large = await PipelineOrchestrator(InMemoryCatalogStore()).run(_request(build_rows(3000)))

    assert small.status == large.status == RunStatus.SUCCESS
    assert large.indexable_count == 3000
    assert large.batch_jobs == 30
    assert _stage_seconds(large) < 20 * max(_stage_seconds(small), 0.1)


def _listing_rows(title, prices, prefix, upc_base):
    """Rows for one product as listed by one retailer."""
    return [
        {
            "title": f"{title} Lot {prefix}{i}",
            "price": price,
            "upc": make_upc(upc_base + i),
            "sku": f"{prefix}-{i}",
            "in_stock": "yes",
        }
        for i, price in enumerate(prices)
    ]


FEDERAL = PRODUCT_TITLES[0]
HORNADY = PRODUCT_TITLES[1]


@pytest.mark.asyncio
async def test_delisted_sku_loses_its_insights(store):
    """Test a listing that leaves the feed takes its insight with it."""
    orchestrator = PipelineOrchestrator(store)
    rows = _listing_rows(FEDERAL, ["10.00"] * 5 + ["20.00"], "A", 1000)

    first = await orchestrator.run(_request(rows, run_id="run-1"))
    assert first.insight_count == 1
    overpriced = next(iter(store.insights.values()))
    assert overpriced.type == InsightType.OVERPRICED

    second = await orchestrator.run(_request(rows[:5], run_id="run-2"))

    assert second.deactivated_count == 1
    assert store.retailer_skus[overpriced.retailer_sku_id].is_active is False
    assert await store.list_insights([overpriced.retailer_sku_id]) == []
    assert store.insights == {}


@pytest.mark.asyncio
async def test_benchmark_shift_refreshes_other_retailers(store):
    """Test another retailer's feed moving the median rewrites existing insights."""
    orchestrator = PipelineOrchestrator(store)
    b_rows = _listing_rows(FEDERAL, ["10.00"] * 4 + ["20.00"], "B", 2000)
    await orchestrator.run(_request(b_rows, run_id="run-b", retailer_id="retailer-b", feed_id="feed-b"))
    assert [i.type for i in store.insights.values()] == [InsightType.OVERPRICED]

    a_rows = _listing_rows(FEDERAL, ["20.00"] * 10, "A", 1000)
    result = await orchestrator.run(_request(a_rows, run_id="run-a"))

    assert result.status == RunStatus.SUCCESS
    insights = list(store.insights.values())
    assert len(insights) == 4
    assert all(i.retailer_id == "retailer-b" for i in insights)
    assert all(i.type == InsightType.UNDERPRICED for i in insights)
    assert all(i.market_median == Decimal("20.00") for i in insights)
    assert all(i.run_id == "run-a" for i in insights)


@pytest.mark.asyncio
async def test_removed_benchmark_clears_other_retailers(store):
    """Test insights go away when their canonical drops below the price minimum."""
    orchestrator = PipelineOrchestrator(store)
    await orchestrator.run(_request(
        _listing_rows(FEDERAL, ["20.00"], "B", 2000),
        run_id="run-b", retailer_id="retailer-b", feed_id="feed-b",
    ))
    assert store.benchmarks == {}

    await orchestrator.run(_request(_listing_rows(FEDERAL, ["10.00", "10.00"], "A", 1000), run_id="run-a1"))
    insights = list(store.insights.values())
    assert len(insights) == 1
    assert insights[0].retailer_id == "retailer-b"
    assert insights[0].type == InsightType.OVERPRICED
    federal_id = insights[0].canonical_sku_id

    result = await orchestrator.run(_request(_listing_rows(HORNADY, ["15.00"], "A", 3000), run_id="run-a2"))

    assert result.deactivated_count == 2
    assert federal_id not in store.benchmarks
    assert store.insights == {}


@pytest.mark.asyncio
async def test_failed_run_disables_unchanged_skip(store):
    """Test a snapshot identical to an older success is reprocessed after a failed run."""
    rows = build_rows(12)
    first = await PipelineOrchestrator(store).run(_request(rows, run_id="run-1"))
    assert first.status == RunStatus.SUCCESS

    real_assign = store.assign_canonicals
    store.assign_canonicals = AsyncMock(side_effect=CatalogStoreError("read-only"))
    matcher = CanonicalMatcher(store, max_retries=1, retry_backoff=0)
    failed = await PipelineOrchestrator(store, matcher=matcher).run(
        _request(build_rows(3, price="24.99"), run_id="run-2")
    )
    assert failed.status == RunStatus.FAILURE
    store.assign_canonicals = real_assign

    result = await PipelineOrchestrator(store).run(_request(rows, run_id="run-3"))

    assert result.status == RunStatus.SUCCESS
    assert result.skipped_unchanged is False
    active = [sku for sku in store.retailer_skus.values() if sku.is_active]
    assert len(active) == 12
    assert all(sku.canonical_sku_id for sku in active)
    assert all(sku.raw_price == Decimal("19.99") for sku in active)
    assert result.benchmark_count > 0
