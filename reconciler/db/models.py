"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CanonicalSkuRow(Base):
    """Retailer-independent product signature."""

    __tablename__ = "canonical_skus"

    # Autoincrement id doubles as registration order for tie-breaks
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    natural_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    caliber: Mapped[str] = mapped_column(String(64), nullable=False)
    brand: Mapped[str] = mapped_column(String(128), nullable=False)
    grain_weight: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pack_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(13), nullable=True, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    provenance: Mapped[str] = mapped_column(String(16), nullable=False, default="CURATED")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_canonical_skus_caliber_brand", "caliber", "brand"),
    )


class RetailerSkuRow(Base):
    """One retailer's listing, keyed by its identity hash."""

    __tablename__ = "retailer_skus"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feed_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    feed_run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_title: Mapped[str] = mapped_column(Text, nullable=False)
    raw_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    raw_upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    raw_sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    raw_brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    raw_caliber: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    raw_grain: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    raw_pack_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    raw_in_stock: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    raw_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    canonical_sku_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("canonical_skus.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("retailer_id", "sku_hash", name="uq_retailer_sku_hash"),
    )


class QuarantinedRecordRow(Base):
    """A feed row held back for missing or invalid product identity."""

    __tablename__ = "quarantined_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feed_id: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    match_key: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_data: Mapped[dict] = mapped_column(JsonType, nullable=False)
    parsed_fields: Mapped[dict] = mapped_column(JsonType, nullable=False)
    blocking_issues: Mapped[list] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="QUARANTINED")
    resolved_upc: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    retailer_sku_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("retailer_skus.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("feed_id", "match_key", name="uq_quarantine_feed_match_key"),
    )


class BenchmarkRow(Base):
    """Cross-retailer price summary, one per canonical SKU."""

    __tablename__ = "benchmarks"

    canonical_sku_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_skus.id"), primary_key=True
    )
    min_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    median_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    max_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    avg_price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    seller_count: Mapped[int] = mapped_column(Integer, nullable=False)
    data_points: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence: Mapped[str] = mapped_column(String(8), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class InsightRow(Base):
    """Derived pricing anomaly for one retailer SKU."""

    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retailer_sku_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailer_skus.id"), nullable=False
    )
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    canonical_sku_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_skus.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(8), nullable=False)
    retailer_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    market_median: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deviation: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "retailer_sku_id", "canonical_sku_id", "type", name="uq_insight_triple"
        ),
    )


class FeedRunRow(Base):
    """Outcome of one feed run."""

    __tablename__ = "feed_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feed_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    feed_health: Mapped[str] = mapped_column(String(8), nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    skipped_unchanged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    indexable_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quarantined_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rejected_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deactivated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    matched_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_created_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    benchmark_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    insight_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stage_metrics: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    error_codes: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    failed_stage: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    last_committed_batch: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
