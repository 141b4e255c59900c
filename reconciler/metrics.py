"""Prometheus metrics for the reconciliation pipeline."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("catalog_reconciler", "Catalog reconciler application info")
app_info.info({"version": "0.1.0", "name": "catalog-reconciler"})

# Classification metrics
records_classified_total = Counter(
    "records_classified_total",
    "Feed rows classified, by bucket",
    ["bucket"],
)

# Matching metrics
canonical_matches_total = Counter(
    "canonical_matches_total",
    "Retailer SKUs assigned to a canonical SKU, by match method",
    ["method"],
)

canonical_auto_created_total = Counter(
    "canonical_auto_created_total",
    "Canonical SKUs auto-created by the matcher",
)

match_batch_retries_total = Counter(
    "match_batch_retries_total",
    "Matching batches retried after a store failure",
)

# Benchmark / insight metrics
benchmarks_computed_total = Counter(
    "benchmarks_computed_total",
    "Benchmarks written, by confidence tier",
    ["confidence"],
)

insights_generated_total = Counter(
    "insights_generated_total",
    "Insights written, by type and severity",
    ["type", "severity"],
)

# Run metrics
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Feed runs finished, by status",
    ["status"],
)

stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Elapsed time per pipeline stage",
    ["stage"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

stage_budget_exceeded_total = Counter(
    "pipeline_stage_budget_exceeded_total",
    "Stages that ran past their soft time budget",
    ["stage"],
)


def record_classification(indexable: int, quarantined: int, rejected: int):
    """Record the bucket counts of one classification pass."""
    records_classified_total.labels(bucket="indexable").inc(indexable)
    records_classified_total.labels(bucket="quarantined").inc(quarantined)
    records_classified_total.labels(bucket="rejected").inc(rejected)


def record_match(method: str, count: int = 1):
    """Record canonical assignments for a match method."""
    canonical_matches_total.labels(method=method).inc(count)


def record_benchmark(confidence: str):
    """Record a written benchmark."""
    benchmarks_computed_total.labels(confidence=confidence).inc()


def record_insight(insight_type: str, severity: str):
    """Record a written insight."""
    insights_generated_total.labels(type=insight_type, severity=severity).inc()


def record_stage(stage: str, duration: float, over_budget: bool = False):
    """Record a finished pipeline stage."""
    stage_duration_seconds.labels(stage=stage).observe(duration)
    if over_budget:
        stage_budget_exceeded_total.labels(stage=stage).inc()


def record_run(status: str):
    """Record a finished feed run."""
    pipeline_runs_total.labels(status=status).inc()
