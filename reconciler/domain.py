"""Domain types shared by the pipeline stages."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedFormat(str, Enum):
    """Declared format of a feed payload."""

    CSV = "csv"
    XML = "xml"
    JSON = "json"
    GENERIC = "generic"  # Detect from content


class RecordBucket(str, Enum):
    """Classification outcome for one feed row."""

    INDEXABLE = "indexable"
    QUARANTINED = "quarantined"
    REJECTED = "rejected"


class IssueCode(str, Enum):
    """Row-level defect codes."""

    MISSING_TITLE = "MISSING_TITLE"
    MISSING_PRICE = "MISSING_PRICE"
    INVALID_PRICE = "INVALID_PRICE"
    MISSING_UPC = "MISSING_UPC"
    INVALID_UPC = "INVALID_UPC"
    INVALID_STOCK = "INVALID_STOCK"
    PARSE_ERROR = "PARSE_ERROR"


class QuarantineStatus(str, Enum):
    QUARANTINED = "QUARANTINED"
    RESOLVED = "RESOLVED"


class Provenance(str, Enum):
    """Where a canonical SKU came from."""

    CURATED = "CURATED"
    AUTO_CREATED = "AUTO_CREATED"


class ConfidenceTier(str, Enum):
    NONE = "NONE"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class InsightType(str, Enum):
    OVERPRICED = "OVERPRICED"
    UNDERPRICED = "UNDERPRICED"
    STOCK_OPPORTUNITY = "STOCK_OPPORTUNITY"  # Generated by curation tooling
    ATTRIBUTE_GAP = "ATTRIBUTE_GAP"  # Generated by curation tooling


class Severity(str, Enum):
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILURE = "FAILURE"


class FeedHealth(str, Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    FAILED = "FAILED"


class PipelineStage(str, Enum):
    PARSE = "parse"
    CLASSIFY = "classify"
    MATCH = "match"
    BENCHMARK = "benchmark"
    INSIGHT = "insight"


@dataclass
class Coercion:
    """A raw value that was rewritten into canonical form."""

    field: str
    raw_value: Any
    coerced_value: Any
    coercion_type: str


@dataclass
class FieldIssue:
    """A row-level defect found while coercing a field."""

    field: str
    code: IssueCode
    message: str
    raw_value: Any = None


@dataclass
class ParsedRecord:
    """One feed row after type coercion."""

    row_index: int
    title: Optional[str]
    price: Optional[Decimal]
    in_stock: Optional[bool]
    upc: Optional[str]  # Only set when format-valid
    raw_upc: Optional[str] = None
    sku: Optional[str] = None
    brand: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Optional[int] = None
    round_count: Optional[int] = None
    url: Optional[str] = None
    raw_row: dict = field(default_factory=dict)
    coercions: list[Coercion] = field(default_factory=list)
    issues: list[FieldIssue] = field(default_factory=list)


@dataclass
class RetailerSku:
    """A persisted, retailer-scoped product row."""

    id: str
    retailer_id: str
    feed_id: str
    feed_run_id: str
    sku_hash: str
    content_hash: str
    raw_title: str
    raw_price: Decimal
    raw_upc: Optional[str] = None
    raw_sku: Optional[str] = None
    raw_brand: Optional[str] = None
    raw_caliber: Optional[str] = None
    raw_grain: Optional[int] = None
    raw_pack_size: Optional[int] = None
    raw_in_stock: Optional[bool] = None
    raw_url: Optional[str] = None
    is_active: bool = True
    canonical_sku_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class QuarantinedRecord:
    """A row with usable title and price but no usable product identifier."""

    id: str
    retailer_id: str
    feed_id: str
    run_id: str
    match_key: str
    raw_data: dict
    parsed_fields: dict
    blocking_issues: list[dict] = field(default_factory=list)
    status: QuarantineStatus = QuarantineStatus.QUARANTINED
    resolved_upc: Optional[str] = None
    retailer_sku_id: Optional[str] = None


@dataclass(frozen=True)
class CanonicalAttributes:
    """Normalized attribute set of a canonical product signature."""

    caliber: str
    brand: str
    grain_weight: Optional[int] = None
    pack_size: Optional[int] = None

    @property
    def attribute_key(self) -> str:
        return f"{self.caliber}|{self.brand}"

    @property
    def natural_key(self) -> str:
        parts = [
            self.caliber.lower(),
            self.brand.lower(),
            str(self.grain_weight or ""),
            str(self.pack_size or ""),
        ]
        return "|".join(parts)

    def display_name(self) -> str:
        parts = [self.brand, self.caliber]
        if self.grain_weight:
            parts.append(f"{self.grain_weight}gr")
        if self.pack_size:
            parts.append(f"{self.pack_size}rd")
        return " ".join(parts)


@dataclass(frozen=True)
class CanonicalSku:
    """Retailer-independent product signature. Immutable once created."""

    id: str
    attributes: CanonicalAttributes
    provenance: Provenance = Provenance.CURATED
    upc: Optional[str] = None

    @property
    def caliber(self) -> str:
        return self.attributes.caliber

    @property
    def brand(self) -> str:
        return self.attributes.brand

    @property
    def attribute_key(self) -> str:
        return self.attributes.attribute_key

    @property
    def natural_key(self) -> str:
        return self.attributes.natural_key


@dataclass
class PriceObservation:
    """One active retailer price attached to a canonical SKU."""

    canonical_sku_id: str
    retailer_id: str
    retailer_sku_id: str
    price: Decimal
    in_stock: Optional[bool] = None


@dataclass
class Benchmark:
    """Cross-retailer price summary for one canonical SKU."""

    canonical_sku_id: str
    min_price: Decimal
    median_price: Decimal
    max_price: Decimal
    avg_price: Decimal
    seller_count: int
    data_points: int
    confidence: ConfidenceTier
    run_id: Optional[str] = None
    seller_display_cap: int = 10

    @property
    def display_seller_count(self) -> int:
        return min(self.seller_count, self.seller_display_cap)

    @property
    def is_usable(self) -> bool:
        return self.confidence != ConfidenceTier.NONE


@dataclass
class Insight:
    """A pricing anomaly for one (retailer SKU, canonical SKU, benchmark) triple."""

    retailer_sku_id: str
    retailer_id: str
    canonical_sku_id: str
    type: InsightType
    severity: Severity
    retailer_price: Decimal
    market_median: Decimal
    deviation: Decimal
    message: str = ""
    run_id: Optional[str] = None


@dataclass
class FeedRunRequest:
    """One feed snapshot to push through the pipeline."""

    retailer_id: str
    feed_id: str
    run_id: str
    content: bytes
    format: FeedFormat = FeedFormat.GENERIC


@dataclass
class StageMetrics:
    """Timing and counters for one pipeline stage."""

    stage: PipelineStage
    elapsed_seconds: float = 0.0
    budget_seconds: float = 0.0
    records_in: int = 0
    records_out: int = 0
    over_budget: bool = False


@dataclass
class FeedRunResult:
    """Outcome of one feed run, as reported to callers and dashboards."""

    run_id: str
    retailer_id: str
    feed_id: str
    status: RunStatus = RunStatus.SUCCESS
    feed_health: FeedHealth = FeedHealth.HEALTHY
    total_rows: int = 0
    indexable_count: int = 0
    quarantined_count: int = 0
    rejected_count: int = 0
    deactivated_count: int = 0
    retailer_sku_ids: list[str] = field(default_factory=list)
    quarantined_ids: list[str] = field(default_factory=list)
    batch_size: int = 100
    matched_count: int = 0
    auto_created_count: int = 0
    benchmark_count: int = 0
    insight_count: int = 0
    skipped_unchanged: bool = False
    content_hash: Optional[str] = None
    stages: dict[str, StageMetrics] = field(default_factory=dict)
    error_codes: dict[str, int] = field(default_factory=dict)
    row_errors: list[dict] = field(default_factory=list)
    failed_stage: Optional[PipelineStage] = None
    last_committed_batch: Optional[int] = None
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def batch_jobs(self) -> int:
        if self.batch_size <= 0:
            return 0
        return math.ceil(self.indexable_count / self.batch_size)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()
