"""Catalog store interface and its SQLAlchemy adapter.

The pipeline only talks to ``CatalogStore``. ``SqlCatalogStore`` persists to
PostgreSQL (or sqlite in tests); ``reconciler.db.memory.InMemoryCatalogStore``
keeps everything in process.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import asdict
from decimal import Decimal
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.db.models import (
    BenchmarkRow,
    CanonicalSkuRow,
    FeedRunRow,
    InsightRow,
    QuarantinedRecordRow,
    RetailerSkuRow,
)
from reconciler.domain import (
    Benchmark,
    CanonicalAttributes,
    CanonicalSku,
    ConfidenceTier,
    FeedHealth,
    FeedRunResult,
    Insight,
    InsightType,
    PipelineStage,
    PriceObservation,
    Provenance,
    QuarantinedRecord,
    QuarantineStatus,
    RetailerSku,
    RunStatus,
    Severity,
    StageMetrics,
)

logger = logging.getLogger(__name__)

# Max bound parameters per IN (...) query
QUERY_CHUNK_SIZE = 500


class CatalogStoreError(Exception):
    """Raised when the catalog store is unreachable or a write fails."""

    pass


def _chunks(items: list, size: int = QUERY_CHUNK_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class CatalogStore(ABC):
    """Read/write contract the reconciliation pipeline needs."""

    # ------------------------------------------------------------------
    # Canonical catalog
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_canonical_by_upc(self, upc: str) -> Optional[CanonicalSku]:
        ...

    @abstractmethod
    async def find_canonical_by_attributes(self, caliber: str, brand: str) -> list[CanonicalSku]:
        """Return candidates for ``caliber|brand`` in registration order."""
        ...

    @abstractmethod
    async def find_canonicals_by_upcs(self, upcs: Iterable[str]) -> dict[str, CanonicalSku]:
        ...

    @abstractmethod
    async def find_canonicals_by_attribute_keys(
        self, keys: Iterable[str]
    ) -> dict[str, list[CanonicalSku]]:
        """Bulk variant of ``find_canonical_by_attributes`` keyed by ``caliber|brand``."""
        ...

    @abstractmethod
    async def create_canonical(
        self,
        attributes: CanonicalAttributes,
        provenance: Provenance = Provenance.AUTO_CREATED,
        upc: Optional[str] = None,
    ) -> CanonicalSku:
        """Create a canonical SKU, or return the existing one with the same natural key."""
        ...

    # ------------------------------------------------------------------
    # Retailer SKUs
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_retailer_skus(self, skus: list[RetailerSku]) -> list[RetailerSku]:
        """Insert or update by ``(retailer_id, sku_hash)``; returns rows with IDs."""
        ...

    @abstractmethod
    async def get_retailer_skus(self, ids: Iterable[str]) -> list[RetailerSku]:
        ...

    @abstractmethod
    async def list_active_retailer_skus(self, retailer_id: str, feed_id: str) -> list[RetailerSku]:
        ...

    @abstractmethod
    async def list_active_skus_by_canonicals(self, canonical_ids: Iterable[str]) -> list[RetailerSku]:
        """Active retailer SKUs, across all retailers, assigned to any of ``canonical_ids``."""
        ...

    @abstractmethod
    async def deactivate_missing(self, retailer_id: str, feed_id: str, run_id: str) -> list[str]:
        """Deactivate the feed's active SKUs not touched by ``run_id``; returns their IDs."""
        ...

    @abstractmethod
    async def assign_canonicals(self, assignments: dict[str, str]) -> None:
        """Write ``retailer_sku_id -> canonical_sku_id`` in one transaction."""
        ...

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_quarantined(self, records: list[QuarantinedRecord]) -> list[QuarantinedRecord]:
        """Insert or update by ``(feed_id, match_key)``; never downgrades RESOLVED."""
        ...

    @abstractmethod
    async def get_quarantined(self, record_id: str) -> Optional[QuarantinedRecord]:
        ...

    @abstractmethod
    async def list_quarantined(self, feed_id: Optional[str] = None) -> list[QuarantinedRecord]:
        ...

    @abstractmethod
    async def find_resolved_upcs(self, feed_id: str, match_keys: Iterable[str]) -> dict[str, str]:
        """Map match keys of RESOLVED records to their operator-supplied UPC."""
        ...

    @abstractmethod
    async def resolve_quarantined(
        self, record_id: str, upc: str, retailer_sku_id: str
    ) -> QuarantinedRecord:
        ...

    # ------------------------------------------------------------------
    # Benchmarks and insights
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_active_prices(self) -> list[PriceObservation]:
        """Prices of every active retailer SKU with a canonical assignment."""
        ...

    @abstractmethod
    async def upsert_benchmark(self, canonical_id: str, benchmark: Benchmark) -> None:
        ...

    async def upsert_benchmarks(self, benchmarks: list[Benchmark]) -> None:
        for benchmark in benchmarks:
            await self.upsert_benchmark(benchmark.canonical_sku_id, benchmark)

    @abstractmethod
    async def delete_benchmarks(self, canonical_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def get_benchmarks(self, canonical_ids: Optional[Iterable[str]] = None) -> dict[str, Benchmark]:
        ...

    @abstractmethod
    async def clear_insights(self, retailer_sku_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def upsert_insight(self, insight: Insight) -> None:
        ...

    async def upsert_insights(self, insights: list[Insight]) -> None:
        for insight in insights:
            await self.upsert_insight(insight)

    @abstractmethod
    async def list_insights(self, retailer_sku_ids: Optional[Iterable[str]] = None) -> list[Insight]:
        ...

    # ------------------------------------------------------------------
    # Feed runs
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_run(self, result: FeedRunResult) -> None:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[FeedRunResult]:
        ...

    @abstractmethod
    async def reusable_content_hash(self, feed_id: str) -> Optional[str]:
        """Content hash of the feed's most recent run, or None unless that run succeeded."""
        ...


# ----------------------------------------------------------------------
# Row <-> domain conversion
# ----------------------------------------------------------------------

def _to_canonical(row: CanonicalSkuRow) -> CanonicalSku:
    return CanonicalSku(
        id=str(row.id),
        attributes=CanonicalAttributes(
            caliber=row.caliber,
            brand=row.brand,
            grain_weight=row.grain_weight,
            pack_size=row.pack_size,
        ),
        provenance=Provenance(row.provenance),
        upc=row.upc,
    )


def _to_retailer_sku(row: RetailerSkuRow) -> RetailerSku:
    return RetailerSku(
        id=str(row.id),
        retailer_id=row.retailer_id,
        feed_id=row.feed_id,
        feed_run_id=row.feed_run_id,
        sku_hash=row.sku_hash,
        content_hash=row.content_hash,
        raw_title=row.raw_title,
        raw_price=Decimal(row.raw_price),
        raw_upc=row.raw_upc,
        raw_sku=row.raw_sku,
        raw_brand=row.raw_brand,
        raw_caliber=row.raw_caliber,
        raw_grain=row.raw_grain,
        raw_pack_size=row.raw_pack_size,
        raw_in_stock=row.raw_in_stock,
        raw_url=row.raw_url,
        is_active=row.is_active,
        canonical_sku_id=str(row.canonical_sku_id) if row.canonical_sku_id is not None else None,
        updated_at=row.updated_at,
    )


def _to_quarantined(row: QuarantinedRecordRow) -> QuarantinedRecord:
    return QuarantinedRecord(
        id=str(row.id),
        retailer_id=row.retailer_id,
        feed_id=row.feed_id,
        run_id=row.run_id,
        match_key=row.match_key,
        raw_data=row.raw_data,
        parsed_fields=row.parsed_fields,
        blocking_issues=row.blocking_issues,
        status=QuarantineStatus(row.status),
        resolved_upc=row.resolved_upc,
        retailer_sku_id=str(row.retailer_sku_id) if row.retailer_sku_id is not None else None,
    )


def _to_benchmark(row: BenchmarkRow) -> Benchmark:
    return Benchmark(
        canonical_sku_id=str(row.canonical_sku_id),
        min_price=Decimal(row.min_price),
        median_price=Decimal(row.median_price),
        max_price=Decimal(row.max_price),
        avg_price=Decimal(row.avg_price),
        seller_count=row.seller_count,
        data_points=row.data_points,
        confidence=ConfidenceTier(row.confidence),
        run_id=row.run_id,
    )


def _to_insight(row: InsightRow) -> Insight:
    return Insight(
        retailer_sku_id=str(row.retailer_sku_id),
        retailer_id=row.retailer_id,
        canonical_sku_id=str(row.canonical_sku_id),
        type=InsightType(row.type),
        severity=Severity(row.severity),
        retailer_price=Decimal(row.retailer_price),
        market_median=Decimal(row.market_median),
        deviation=Decimal(row.deviation),
        message=row.message or "",
        run_id=row.run_id,
    )


def stage_metrics_to_dict(stages: dict[str, StageMetrics]) -> dict:
    return {
        name: {**asdict(metrics), "stage": metrics.stage.value}
        for name, metrics in stages.items()
    }


def stage_metrics_from_dict(data: Optional[dict]) -> dict[str, StageMetrics]:
    stages = {}
    for name, values in (data or {}).items():
        values = dict(values)
        values["stage"] = PipelineStage(values["stage"])
        stages[name] = StageMetrics(**values)
    return stages


def _to_run(row: FeedRunRow) -> FeedRunResult:
    return FeedRunResult(
        run_id=row.run_id,
        retailer_id=row.retailer_id,
        feed_id=row.feed_id,
        status=RunStatus(row.status),
        feed_health=FeedHealth(row.feed_health),
        total_rows=row.total_rows,
        indexable_count=row.indexable_count,
        quarantined_count=row.quarantined_count,
        rejected_count=row.rejected_count,
        deactivated_count=row.deactivated_count,
        matched_count=row.matched_count,
        auto_created_count=row.auto_created_count,
        benchmark_count=row.benchmark_count,
        insight_count=row.insight_count,
        skipped_unchanged=row.skipped_unchanged,
        content_hash=row.content_hash,
        stages=stage_metrics_from_dict(row.stage_metrics),
        error_codes=row.error_codes or {},
        failed_stage=PipelineStage(row.failed_stage) if row.failed_stage else None,
        last_committed_batch=row.last_committed_batch,
        error_message=row.error_message,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _int_ids(ids: Iterable[str]) -> list[int]:
    return [int(i) for i in ids]


class SqlCatalogStore(CatalogStore):
    """
    SQLAlchemy-backed catalog store.

    Every method opens its own session, so one store instance can be shared
    by concurrently running feed pipelines.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from reconciler.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, translating driver errors into CatalogStoreError."""
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Catalog store operation failed: {e}")
            raise CatalogStoreError(str(e)) from e

    # Canonical catalog

    async def find_canonical_by_upc(self, upc: str) -> Optional[CanonicalSku]:
        async with self._session() as db:
            row = await db.scalar(
                select(CanonicalSkuRow)
                .where(CanonicalSkuRow.upc == upc)
                .order_by(CanonicalSkuRow.id)
                .limit(1)
            )
            return _to_canonical(row) if row else None

    async def find_canonical_by_attributes(self, caliber: str, brand: str) -> list[CanonicalSku]:
        async with self._session() as db:
            result = await db.scalars(
                select(CanonicalSkuRow)
                .where(and_(CanonicalSkuRow.caliber == caliber, CanonicalSkuRow.brand == brand))
                .order_by(CanonicalSkuRow.id)
            )
            return [_to_canonical(row) for row in result]

    async def find_canonicals_by_upcs(self, upcs: Iterable[str]) -> dict[str, CanonicalSku]:
        upc_list = sorted(set(upcs))
        found: dict[str, CanonicalSku] = {}
        if not upc_list:
            return found

        async with self._session() as db:
            for chunk in _chunks(upc_list):
                result = await db.scalars(
                    select(CanonicalSkuRow)
                    .where(CanonicalSkuRow.upc.in_(chunk))
                    .order_by(CanonicalSkuRow.id)
                )
                for row in result:
                    # First registered wins
                    found.setdefault(row.upc, _to_canonical(row))
        return found

    async def find_canonicals_by_attribute_keys(
        self, keys: Iterable[str]
    ) -> dict[str, list[CanonicalSku]]:
        key_set = set(keys)
        found: dict[str, list[CanonicalSku]] = {}
        if not key_set:
            return found

        calibers = sorted({key.split("|", 1)[0] for key in key_set})
        brands = sorted({key.split("|", 1)[1] for key in key_set if "|" in key})

        async with self._session() as db:
            for caliber_chunk in _chunks(calibers):
                result = await db.scalars(
                    select(CanonicalSkuRow)
                    .where(CanonicalSkuRow.caliber.in_(caliber_chunk))
                    .where(CanonicalSkuRow.brand.in_(brands))
                    .order_by(CanonicalSkuRow.id)
                )
                for row in result:
                    canonical = _to_canonical(row)
                    if canonical.attribute_key in key_set:
                        found.setdefault(canonical.attribute_key, []).append(canonical)
        return found

    async def create_canonical(
        self,
        attributes: CanonicalAttributes,
        provenance: Provenance = Provenance.AUTO_CREATED,
        upc: Optional[str] = None,
    ) -> CanonicalSku:
        natural_key = attributes.natural_key
        query = select(CanonicalSkuRow).where(CanonicalSkuRow.natural_key == natural_key)

        async with self._session() as db:
            existing = await db.scalar(query)
            if existing:
                return _to_canonical(existing)

            row = CanonicalSkuRow(
                natural_key=natural_key,
                caliber=attributes.caliber,
                brand=attributes.brand,
                grain_weight=attributes.grain_weight,
                pack_size=attributes.pack_size,
                upc=upc,
                name=attributes.display_name(),
                provenance=provenance.value,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Another run created the same product first
                await db.rollback()
                existing = await db.scalar(query)
                if existing is None:
                    raise CatalogStoreError(f"Canonical SKU {natural_key} conflicted but was not found")
                logger.info(f"Reusing concurrently created canonical SKU {natural_key}")
                return _to_canonical(existing)

            await db.refresh(row)
            logger.debug(f"Created canonical SKU {row.id} ({natural_key})")
            return _to_canonical(row)

    # Retailer SKUs

    async def upsert_retailer_skus(self, skus: list[RetailerSku]) -> list[RetailerSku]:
        if not skus:
            return []

        by_retailer: dict[str, list[RetailerSku]] = {}
        for sku in skus:
            by_retailer.setdefault(sku.retailer_id, []).append(sku)

        saved: list[RetailerSkuRow] = []
        async with self._session() as db:
            for retailer_id, retailer_skus in by_retailer.items():
                existing: dict[str, RetailerSkuRow] = {}
                hashes = [sku.sku_hash for sku in retailer_skus]
                for chunk in _chunks(hashes):
                    result = await db.scalars(
                        select(RetailerSkuRow).where(
                            RetailerSkuRow.retailer_id == retailer_id,
                            RetailerSkuRow.sku_hash.in_(chunk),
                        )
                    )
                    existing.update({row.sku_hash: row for row in result})

                for sku in retailer_skus:
                    row = existing.get(sku.sku_hash)
                    if row is None:
                        row = RetailerSkuRow(
                            retailer_id=retailer_id,
                            sku_hash=sku.sku_hash,
                            canonical_sku_id=None,
                        )
                        db.add(row)
                        existing[sku.sku_hash] = row
                    row.feed_id = sku.feed_id
                    row.feed_run_id = sku.feed_run_id
                    row.content_hash = sku.content_hash
                    row.raw_title = sku.raw_title
                    row.raw_price = sku.raw_price
                    row.raw_upc = sku.raw_upc
                    row.raw_sku = sku.raw_sku
                    row.raw_brand = sku.raw_brand
                    row.raw_caliber = sku.raw_caliber
                    row.raw_grain = sku.raw_grain
                    row.raw_pack_size = sku.raw_pack_size
                    row.raw_in_stock = sku.raw_in_stock
                    row.raw_url = sku.raw_url
                    row.is_active = True
                    saved.append(row)

            await db.commit()
            return [_to_retailer_sku(row) for row in saved]

    async def get_retailer_skus(self, ids: Iterable[str]) -> list[RetailerSku]:
        id_list = _int_ids(ids)
        rows: list[RetailerSkuRow] = []
        async with self._session() as db:
            for chunk in _chunks(id_list):
                result = await db.scalars(select(RetailerSkuRow).where(RetailerSkuRow.id.in_(chunk)))
                rows.extend(result)
        rows.sort(key=lambda r: r.id)
        return [_to_retailer_sku(row) for row in rows]

    async def list_active_retailer_skus(self, retailer_id: str, feed_id: str) -> list[RetailerSku]:
        async with self._session() as db:
            result = await db.scalars(
                select(RetailerSkuRow)
                .where(
                    RetailerSkuRow.retailer_id == retailer_id,
                    RetailerSkuRow.feed_id == feed_id,
                    RetailerSkuRow.is_active.is_(True),
                )
                .order_by(RetailerSkuRow.id)
            )
            return [_to_retailer_sku(row) for row in result]

    async def list_active_skus_by_canonicals(self, canonical_ids: Iterable[str]) -> list[RetailerSku]:
        ids = sorted(_int_ids(set(canonical_ids)))
        rows: list[RetailerSkuRow] = []
        if not ids:
            return []
        async with self._session() as db:
            for chunk in _chunks(ids):
                rows.extend(await db.scalars(
                    select(RetailerSkuRow)
                    .where(
                        RetailerSkuRow.is_active.is_(True),
                        RetailerSkuRow.canonical_sku_id.in_(chunk),
                    )
                    .order_by(RetailerSkuRow.id)
                ))
        return [_to_retailer_sku(row) for row in sorted(rows, key=lambda r: r.id)]

    async def deactivate_missing(self, retailer_id: str, feed_id: str, run_id: str) -> list[str]:
        async with self._session() as db:
            stale_ids = list(await db.scalars(
                select(RetailerSkuRow.id)
                .where(
                    RetailerSkuRow.retailer_id == retailer_id,
                    RetailerSkuRow.feed_id == feed_id,
                    RetailerSkuRow.feed_run_id != run_id,
                    RetailerSkuRow.is_active.is_(True),
                )
                .order_by(RetailerSkuRow.id)
            ))
            for chunk in _chunks(stale_ids):
                await db.execute(
                    update(RetailerSkuRow)
                    .where(RetailerSkuRow.id.in_(chunk))
                    .values(is_active=False)
                )
            await db.commit()
            return [str(sku_id) for sku_id in stale_ids]

    async def assign_canonicals(self, assignments: dict[str, str]) -> None:
        if not assignments:
            return
        params = [
            {"id": int(sku_id), "canonical_sku_id": int(canonical_id)}
            for sku_id, canonical_id in assignments.items()
        ]
        async with self._session() as db:
            await db.execute(update(RetailerSkuRow), params)
            await db.commit()

    # Quarantine

    async def upsert_quarantined(self, records: list[QuarantinedRecord]) -> list[QuarantinedRecord]:
        if not records:
            return []

        saved: list[QuarantinedRecordRow] = []
        async with self._session() as db:
            by_feed: dict[str, list[QuarantinedRecord]] = {}
            for record in records:
                by_feed.setdefault(record.feed_id, []).append(record)

            for feed_id, feed_records in by_feed.items():
                existing: dict[str, QuarantinedRecordRow] = {}
                keys = [record.match_key for record in feed_records]
                for chunk in _chunks(keys):
                    result = await db.scalars(
                        select(QuarantinedRecordRow).where(
                            QuarantinedRecordRow.feed_id == feed_id,
                            QuarantinedRecordRow.match_key.in_(chunk),
                        )
                    )
                    existing.update({row.match_key: row for row in result})

                for record in feed_records:
                    row = existing.get(record.match_key)
                    if row is None:
                        row = QuarantinedRecordRow(
                            feed_id=feed_id,
                            match_key=record.match_key,
                            status=QuarantineStatus.QUARANTINED.value,
                            resolved_upc=None,
                            retailer_sku_id=None,
                        )
                        db.add(row)
                        existing[record.match_key] = row
                    row.retailer_id = record.retailer_id
                    row.run_id = record.run_id
                    row.raw_data = record.raw_data
                    row.parsed_fields = record.parsed_fields
                    row.blocking_issues = record.blocking_issues
                    saved.append(row)

            await db.commit()
            return [_to_quarantined(row) for row in saved]

    async def get_quarantined(self, record_id: str) -> Optional[QuarantinedRecord]:
        if not record_id.isdigit():
            return None
        async with self._session() as db:
            row = await db.get(QuarantinedRecordRow, int(record_id))
            return _to_quarantined(row) if row else None

    async def list_quarantined(self, feed_id: Optional[str] = None) -> list[QuarantinedRecord]:
        query = select(QuarantinedRecordRow).order_by(QuarantinedRecordRow.id)
        if feed_id:
            query = query.where(QuarantinedRecordRow.feed_id == feed_id)
        async with self._session() as db:
            result = await db.scalars(query)
            return [_to_quarantined(row) for row in result]

    async def find_resolved_upcs(self, feed_id: str, match_keys: Iterable[str]) -> dict[str, str]:
        keys = sorted(set(match_keys))
        found: dict[str, str] = {}
        if not keys:
            return found
        async with self._session() as db:
            for chunk in _chunks(keys):
                result = await db.execute(
                    select(QuarantinedRecordRow.match_key, QuarantinedRecordRow.resolved_upc).where(
                        QuarantinedRecordRow.feed_id == feed_id,
                        QuarantinedRecordRow.status == QuarantineStatus.RESOLVED.value,
                        QuarantinedRecordRow.match_key.in_(chunk),
                    )
                )
                for match_key, resolved_upc in result:
                    if resolved_upc:
                        found[match_key] = resolved_upc
        return found

    async def resolve_quarantined(
        self, record_id: str, upc: str, retailer_sku_id: str
    ) -> QuarantinedRecord:
        async with self._session() as db:
            row = await db.get(QuarantinedRecordRow, int(record_id))
            if row is None:
                raise CatalogStoreError(f"Quarantined record {record_id} not found")
            row.status = QuarantineStatus.RESOLVED.value
            row.resolved_upc = upc
            row.retailer_sku_id = int(retailer_sku_id)
            await db.commit()
            return _to_quarantined(row)

    # Benchmarks and insights

    async def list_active_prices(self) -> list[PriceObservation]:
        async with self._session() as db:
            result = await db.execute(
                select(
                    RetailerSkuRow.id,
                    RetailerSkuRow.retailer_id,
                    RetailerSkuRow.canonical_sku_id,
                    RetailerSkuRow.raw_price,
                    RetailerSkuRow.raw_in_stock,
                )
                .where(
                    RetailerSkuRow.is_active.is_(True),
                    RetailerSkuRow.canonical_sku_id.is_not(None),
                )
                .order_by(RetailerSkuRow.id)
            )
            return [
                PriceObservation(
                    canonical_sku_id=str(canonical_id),
                    retailer_id=retailer_id,
                    retailer_sku_id=str(sku_id),
                    price=Decimal(price),
                    in_stock=in_stock,
                )
                for sku_id, retailer_id, canonical_id, price, in_stock in result
            ]

    @staticmethod
    def _apply_benchmark(row: BenchmarkRow, benchmark: Benchmark) -> None:
        row.min_price = benchmark.min_price
        row.median_price = benchmark.median_price
        row.max_price = benchmark.max_price
        row.avg_price = benchmark.avg_price
        row.seller_count = benchmark.seller_count
        row.data_points = benchmark.data_points
        row.confidence = benchmark.confidence.value
        row.run_id = benchmark.run_id

    async def upsert_benchmark(self, canonical_id: str, benchmark: Benchmark) -> None:
        async with self._session() as db:
            row = await db.get(BenchmarkRow, int(canonical_id))
            if row is None:
                row = BenchmarkRow(canonical_sku_id=int(canonical_id))
                db.add(row)
            self._apply_benchmark(row, benchmark)
            await db.commit()

    async def upsert_benchmarks(self, benchmarks: list[Benchmark]) -> None:
        if not benchmarks:
            return
        async with self._session() as db:
            existing: dict[int, BenchmarkRow] = {}
            ids = [int(b.canonical_sku_id) for b in benchmarks]
            for chunk in _chunks(ids):
                result = await db.scalars(
                    select(BenchmarkRow).where(BenchmarkRow.canonical_sku_id.in_(chunk))
                )
                existing.update({row.canonical_sku_id: row for row in result})

            for benchmark in benchmarks:
                canonical_id = int(benchmark.canonical_sku_id)
                row = existing.get(canonical_id)
                if row is None:
                    row = BenchmarkRow(canonical_sku_id=canonical_id)
                    db.add(row)
                    existing[canonical_id] = row
                self._apply_benchmark(row, benchmark)
            await db.commit()

    async def delete_benchmarks(self, canonical_ids: Iterable[str]) -> int:
        ids = _int_ids(canonical_ids)
        if not ids:
            return 0
        deleted = 0
        async with self._session() as db:
            for chunk in _chunks(ids):
                result = await db.execute(
                    delete(BenchmarkRow).where(BenchmarkRow.canonical_sku_id.in_(chunk))
                )
                deleted += result.rowcount or 0
            await db.commit()
        return deleted

    async def get_benchmarks(self, canonical_ids: Optional[Iterable[str]] = None) -> dict[str, Benchmark]:
        rows: list[BenchmarkRow] = []
        async with self._session() as db:
            if canonical_ids is None:
                rows.extend(await db.scalars(select(BenchmarkRow)))
            else:
                for chunk in _chunks(_int_ids(set(canonical_ids))):
                    rows.extend(await db.scalars(
                        select(BenchmarkRow).where(BenchmarkRow.canonical_sku_id.in_(chunk))
                    ))
        return {str(row.canonical_sku_id): _to_benchmark(row) for row in rows}

    async def clear_insights(self, retailer_sku_ids: Iterable[str]) -> int:
        ids = _int_ids(retailer_sku_ids)
        if not ids:
            return 0
        deleted = 0
        async with self._session() as db:
            for chunk in _chunks(ids):
                result = await db.execute(
                    delete(InsightRow).where(InsightRow.retailer_sku_id.in_(chunk))
                )
                deleted += result.rowcount or 0
            await db.commit()
        return deleted

    @staticmethod
    def _apply_insight(row: InsightRow, insight: Insight) -> None:
        row.retailer_id = insight.retailer_id
        row.severity = insight.severity.value
        row.retailer_price = insight.retailer_price
        row.market_median = insight.market_median
        row.deviation = insight.deviation
        row.message = insight.message
        row.run_id = insight.run_id

    async def _upsert_insight(self, db: AsyncSession, insight: Insight) -> None:
        row = await db.scalar(
            select(InsightRow).where(
                InsightRow.retailer_sku_id == int(insight.retailer_sku_id),
                InsightRow.canonical_sku_id == int(insight.canonical_sku_id),
                InsightRow.type == insight.type.value,
            )
        )
        if row is None:
            row = InsightRow(
                retailer_sku_id=int(insight.retailer_sku_id),
                canonical_sku_id=int(insight.canonical_sku_id),
                type=insight.type.value,
            )
            db.add(row)
        self._apply_insight(row, insight)

    async def upsert_insight(self, insight: Insight) -> None:
        async with self._session() as db:
            await self._upsert_insight(db, insight)
            await db.commit()

    async def upsert_insights(self, insights: list[Insight]) -> None:
        if not insights:
            return
        async with self._session() as db:
            for insight in insights:
                await self._upsert_insight(db, insight)
            await db.commit()

    async def list_insights(self, retailer_sku_ids: Optional[Iterable[str]] = None) -> list[Insight]:
        rows: list[InsightRow] = []
        async with self._session() as db:
            if retailer_sku_ids is None:
                rows.extend(await db.scalars(select(InsightRow).order_by(InsightRow.id)))
            else:
                for chunk in _chunks(_int_ids(set(retailer_sku_ids))):
                    rows.extend(await db.scalars(
                        select(InsightRow)
                        .where(InsightRow.retailer_sku_id.in_(chunk))
                        .order_by(InsightRow.id)
                    ))
        return [_to_insight(row) for row in rows]

    # Feed runs

    async def save_run(self, result: FeedRunResult) -> None:
        async with self._session() as db:
            row = await db.get(FeedRunRow, result.run_id)
            if row is None:
                row = FeedRunRow(run_id=result.run_id)
                db.add(row)
            row.retailer_id = result.retailer_id
            row.feed_id = result.feed_id
            row.status = result.status.value
            row.feed_health = result.feed_health.value
            row.content_hash = result.content_hash
            row.skipped_unchanged = result.skipped_unchanged
            row.total_rows = result.total_rows
            row.indexable_count = result.indexable_count
            row.quarantined_count = result.quarantined_count
            row.rejected_count = result.rejected_count
            row.deactivated_count = result.deactivated_count
            row.matched_count = result.matched_count
            row.auto_created_count = result.auto_created_count
            row.benchmark_count = result.benchmark_count
            row.insight_count = result.insight_count
            row.stage_metrics = stage_metrics_to_dict(result.stages)
            row.error_codes = dict(result.error_codes)
            row.failed_stage = result.failed_stage.value if result.failed_stage else None
            row.last_committed_batch = result.last_committed_batch
            row.error_message = result.error_message
            row.started_at = result.started_at
            row.completed_at = result.completed_at
            await db.commit()

    async def get_run(self, run_id: str) -> Optional[FeedRunResult]:
        async with self._session() as db:
            row = await db.get(FeedRunRow, run_id)
            return _to_run(row) if row else None

    async def reusable_content_hash(self, feed_id: str) -> Optional[str]:
        async with self._session() as db:
            latest = (await db.execute(
                select(FeedRunRow.status, FeedRunRow.content_hash)
                .where(FeedRunRow.feed_id == feed_id)
                .order_by(FeedRunRow.completed_at.desc(), FeedRunRow.started_at.desc())
                .limit(1)
            )).first()
        if latest is None or latest.status != RunStatus.SUCCESS.value:
            return None
        return latest.content_hash
