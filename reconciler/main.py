"""Catalog reconciler HTTP service."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from reconciler.api.deps import get_task_runner
from reconciler.api.routes import quarantine, runs
from reconciler.config import settings
from reconciler.db.models import Base
from reconciler.db.session import engine
from reconciler.logging_config import setup_logging
from reconciler.worker.tasks import TaskRunner
from reconciler import metrics  # noqa: F401  registers pipeline metrics

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema on startup, release the pool on shutdown."""
    logger.info(
        f"Starting catalog reconciler (batch size {settings.match_batch_size}, "
        f"max {settings.max_concurrent_runs} concurrent runs)"
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    await engine.dispose()
    logger.info("Catalog reconciler stopped")


app = FastAPI(
    title="Catalog Reconciler",
    description="Reconcile retailer catalog feeds against canonical products",
    version="0.1.0",
    lifespan=lifespan,
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="reconciler_http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, include_in_schema=False)

app.include_router(runs.router)
app.include_router(quarantine.router)


@app.get("/health")
async def health(runner: TaskRunner = Depends(get_task_runner)):
    """Liveness plus the number of feed runs in flight."""
    return {"status": "healthy", "active_runs": runner.active_runs}


if __name__ == "__main__":
    uvicorn.run(
        "reconciler.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
