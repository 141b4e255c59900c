"""Feed run API endpoints."""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from reconciler.api.deps import get_store, get_task_runner
from reconciler.db.repository import CatalogStore
from reconciler.domain import FeedFormat, FeedRunRequest, FeedRunResult
from reconciler.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["runs"])


# Response models
class StageMetricsResponse(BaseModel):
    """Timing of one pipeline stage."""
    stage: str
    elapsed_seconds: float
    budget_seconds: float
    records_in: int
    records_out: int
    over_budget: bool


class FeedRunResponse(BaseModel):
    """Response model for a feed run."""
    run_id: str
    retailer_id: str
    feed_id: str
    status: str
    feed_health: str
    total_rows: int
    indexable_count: int
    quarantined_count: int
    rejected_count: int
    deactivated_count: int
    matched_count: int
    auto_created_count: int
    benchmark_count: int
    insight_count: int
    batch_jobs: int
    skipped_unchanged: bool
    stages: Dict[str, StageMetricsResponse]
    error_codes: Dict[str, int]
    failed_stage: Optional[str]
    last_committed_batch: Optional[int]
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    retailer_sku_ids: List[str]
    quarantined_ids: List[str]

    @classmethod
    def from_result(cls, result: FeedRunResult) -> "FeedRunResponse":
        return cls(
            run_id=result.run_id,
            retailer_id=result.retailer_id,
            feed_id=result.feed_id,
            status=result.status.value,
            feed_health=result.feed_health.value,
            total_rows=result.total_rows,
            indexable_count=result.indexable_count,
            quarantined_count=result.quarantined_count,
            rejected_count=result.rejected_count,
            deactivated_count=result.deactivated_count,
            matched_count=result.matched_count,
            auto_created_count=result.auto_created_count,
            benchmark_count=result.benchmark_count,
            insight_count=result.insight_count,
            batch_jobs=result.batch_jobs,
            skipped_unchanged=result.skipped_unchanged,
            stages={
                name: StageMetricsResponse(
                    stage=m.stage.value,
                    elapsed_seconds=m.elapsed_seconds,
                    budget_seconds=m.budget_seconds,
                    records_in=m.records_in,
                    records_out=m.records_out,
                    over_budget=m.over_budget,
                )
                for name, m in result.stages.items()
            },
            error_codes=result.error_codes,
            failed_stage=result.failed_stage.value if result.failed_stage else None,
            last_committed_batch=result.last_committed_batch,
            error_message=result.error_message,
            started_at=result.started_at,
            completed_at=result.completed_at,
            retailer_sku_ids=result.retailer_sku_ids,
            quarantined_ids=result.quarantined_ids,
        )


@router.post("/feeds/{feed_id}/runs", response_model=FeedRunResponse)
async def trigger_feed_run(
    feed_id: str,
    request: Request,
    retailer_id: str,
    format: FeedFormat = FeedFormat.GENERIC,
    run_id: Optional[str] = None,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Run the pipeline on the feed snapshot sent as the request body."""
    content = await request.body()
    if not content:
        raise HTTPException(status_code=400, detail="Feed body is empty")

    run_request = FeedRunRequest(
        retailer_id=retailer_id,
        feed_id=feed_id,
        run_id=run_id or uuid4().hex,
        content=content,
        format=format,
    )
    logger.info(f"Feed run {run_request.run_id} requested for feed {feed_id}")
    result = await runner.run_feed(run_request)
    return FeedRunResponse.from_result(result)


@router.get("/runs/{run_id}", response_model=FeedRunResponse)
async def get_feed_run(run_id: str, store: CatalogStore = Depends(get_store)):
    """Get the recorded outcome of a feed run."""
    result = await store.get_run(run_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return FeedRunResponse.from_result(result)


@router.post("/runs/{run_id}/cancel")
async def cancel_feed_run(run_id: str, runner: TaskRunner = Depends(get_task_runner)):
    """Cancel an in-flight run at its next stage boundary."""
    if not runner.cancel(run_id):
        raise HTTPException(status_code=404, detail="Run is not in progress")
    return {"run_id": run_id, "cancel_requested": True}
