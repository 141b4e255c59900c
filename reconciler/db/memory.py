"""In-process catalog store, used by tests and local runs."""

import copy
import itertools
import logging
from dataclasses import replace
from typing import Iterable, Optional

from reconciler.db.repository import CatalogStore, CatalogStoreError
from reconciler.domain import (
    Benchmark,
    CanonicalAttributes,
    CanonicalSku,
    FeedRunResult,
    Insight,
    PriceObservation,
    Provenance,
    QuarantinedRecord,
    QuarantineStatus,
    RetailerSku,
    RunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryCatalogStore(CatalogStore):
    """
    Dict-backed catalog store.

    No method awaits in the middle of a mutation, so concurrent pipeline
    runs on one event loop see each write as atomic. Returned values are
    copies; callers never hold references into the store.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.canonicals: dict[str, CanonicalSku] = {}
        self._canonical_by_natural_key: dict[str, str] = {}
        self.retailer_skus: dict[str, RetailerSku] = {}
        self._sku_by_identity: dict[tuple[str, str], str] = {}
        self.quarantined: dict[str, QuarantinedRecord] = {}
        self._quarantine_by_key: dict[tuple[str, str], str] = {}
        self.benchmarks: dict[str, Benchmark] = {}
        self.insights: dict[tuple[str, str, str], Insight] = {}
        self.runs: dict[str, FeedRunResult] = {}

    def _next_id(self) -> str:
        return str(next(self._ids))

    # Canonical catalog

    def add_curated(self, attributes: CanonicalAttributes, upc: Optional[str] = None) -> CanonicalSku:
        """Seed an operator-curated canonical SKU."""
        canonical = CanonicalSku(
            id=self._next_id(),
            attributes=attributes,
            provenance=Provenance.CURATED,
            upc=upc,
        )
        self.canonicals[canonical.id] = canonical
        self._canonical_by_natural_key[canonical.natural_key] = canonical.id
        return canonical

    def _ordered_canonicals(self) -> list[CanonicalSku]:
        # dicts keep insertion order, which is registration order
        return list(self.canonicals.values())

    async def find_canonical_by_upc(self, upc: str) -> Optional[CanonicalSku]:
        for canonical in self._ordered_canonicals():
            if canonical.upc == upc:
                return canonical
        return None

    async def find_canonical_by_attributes(self, caliber: str, brand: str) -> list[CanonicalSku]:
        return [
            c for c in self._ordered_canonicals()
            if c.caliber == caliber and c.brand == brand
        ]

    async def find_canonicals_by_upcs(self, upcs: Iterable[str]) -> dict[str, CanonicalSku]:
        wanted = set(upcs)
        found: dict[str, CanonicalSku] = {}
        for canonical in self._ordered_canonicals():
            if canonical.upc in wanted:
                found.setdefault(canonical.upc, canonical)
        return found

    async def find_canonicals_by_attribute_keys(
        self, keys: Iterable[str]
    ) -> dict[str, list[CanonicalSku]]:
        wanted = set(keys)
        found: dict[str, list[CanonicalSku]] = {}
        for canonical in self._ordered_canonicals():
            if canonical.attribute_key in wanted:
                found.setdefault(canonical.attribute_key, []).append(canonical)
        return found

    async def create_canonical(
        self,
        attributes: CanonicalAttributes,
        provenance: Provenance = Provenance.AUTO_CREATED,
        upc: Optional[str] = None,
    ) -> CanonicalSku:
        existing_id = self._canonical_by_natural_key.get(attributes.natural_key)
        if existing_id:
            return self.canonicals[existing_id]

        canonical = CanonicalSku(
            id=self._next_id(),
            attributes=attributes,
            provenance=provenance,
            upc=upc,
        )
        self.canonicals[canonical.id] = canonical
        self._canonical_by_natural_key[canonical.natural_key] = canonical.id
        return canonical

    # Retailer SKUs

    async def upsert_retailer_skus(self, skus: list[RetailerSku]) -> list[RetailerSku]:
        saved = []
        for sku in skus:
            identity = (sku.retailer_id, sku.sku_hash)
            existing_id = self._sku_by_identity.get(identity)
            if existing_id:
                current = self.retailer_skus[existing_id]
                stored = replace(
                    sku,
                    id=existing_id,
                    canonical_sku_id=current.canonical_sku_id,
                    is_active=True,
                    updated_at=utcnow(),
                )
            else:
                stored = replace(sku, id=self._next_id(), is_active=True)
                self._sku_by_identity[identity] = stored.id
            self.retailer_skus[stored.id] = stored
            saved.append(replace(stored))
        return saved

    async def get_retailer_skus(self, ids: Iterable[str]) -> list[RetailerSku]:
        return [
            replace(self.retailer_skus[sku_id])
            for sku_id in sorted(set(ids), key=int)
            if sku_id in self.retailer_skus
        ]

    async def list_active_retailer_skus(self, retailer_id: str, feed_id: str) -> list[RetailerSku]:
        return [
            replace(sku) for sku in self.retailer_skus.values()
            if sku.retailer_id == retailer_id and sku.feed_id == feed_id and sku.is_active
        ]

    async def list_active_skus_by_canonicals(self, canonical_ids: Iterable[str]) -> list[RetailerSku]:
        wanted = set(canonical_ids)
        return [
            replace(sku) for sku in self.retailer_skus.values()
            if sku.is_active and sku.canonical_sku_id in wanted
        ]

    async def deactivate_missing(self, retailer_id: str, feed_id: str, run_id: str) -> list[str]:
        deactivated = []
        for sku in self.retailer_skus.values():
            if (
                sku.retailer_id == retailer_id
                and sku.feed_id == feed_id
                and sku.feed_run_id != run_id
                and sku.is_active
            ):
                sku.is_active = False
                deactivated.append(sku.id)
        return deactivated

    async def assign_canonicals(self, assignments: dict[str, str]) -> None:
        missing = [sku_id for sku_id in assignments if sku_id not in self.retailer_skus]
        if missing:
            raise CatalogStoreError(f"Unknown retailer SKUs: {missing[:5]}")
        for sku_id, canonical_id in assignments.items():
            self.retailer_skus[sku_id].canonical_sku_id = canonical_id

    # Quarantine

    async def upsert_quarantined(self, records: list[QuarantinedRecord]) -> list[QuarantinedRecord]:
        saved = []
        for record in records:
            key = (record.feed_id, record.match_key)
            existing_id = self._quarantine_by_key.get(key)
            if existing_id:
                current = self.quarantined[existing_id]
                stored = replace(
                    record,
                    id=existing_id,
                    status=current.status,
                    resolved_upc=current.resolved_upc,
                    retailer_sku_id=current.retailer_sku_id,
                )
            else:
                stored = replace(record, id=self._next_id(), status=QuarantineStatus.QUARANTINED)
                self._quarantine_by_key[key] = stored.id
            self.quarantined[stored.id] = stored
            saved.append(copy.deepcopy(stored))
        return saved

    async def get_quarantined(self, record_id: str) -> Optional[QuarantinedRecord]:
        record = self.quarantined.get(record_id)
        return copy.deepcopy(record) if record else None

    async def list_quarantined(self, feed_id: Optional[str] = None) -> list[QuarantinedRecord]:
        return [
            copy.deepcopy(record) for record in self.quarantined.values()
            if feed_id is None or record.feed_id == feed_id
        ]

    async def find_resolved_upcs(self, feed_id: str, match_keys: Iterable[str]) -> dict[str, str]:
        found = {}
        for match_key in set(match_keys):
            record_id = self._quarantine_by_key.get((feed_id, match_key))
            if not record_id:
                continue
            record = self.quarantined[record_id]
            if record.status == QuarantineStatus.RESOLVED and record.resolved_upc:
                found[match_key] = record.resolved_upc
        return found

    async def resolve_quarantined(
        self, record_id: str, upc: str, retailer_sku_id: str
    ) -> QuarantinedRecord:
        record = self.quarantined.get(record_id)
        if record is None:
            raise CatalogStoreError(f"Quarantined record {record_id} not found")
        record.status = QuarantineStatus.RESOLVED
        record.resolved_upc = upc
        record.retailer_sku_id = retailer_sku_id
        return copy.deepcopy(record)

    # Benchmarks and insights

    async def list_active_prices(self) -> list[PriceObservation]:
        return [
            PriceObservation(
                canonical_sku_id=sku.canonical_sku_id,
                retailer_id=sku.retailer_id,
                retailer_sku_id=sku.id,
                price=sku.raw_price,
                in_stock=sku.raw_in_stock,
            )
            for sku in self.retailer_skus.values()
            if sku.is_active and sku.canonical_sku_id is not None
        ]

    async def upsert_benchmark(self, canonical_id: str, benchmark: Benchmark) -> None:
        self.benchmarks[canonical_id] = replace(benchmark, canonical_sku_id=canonical_id)

    async def delete_benchmarks(self, canonical_ids: Iterable[str]) -> int:
        deleted = 0
        for canonical_id in set(canonical_ids):
            if self.benchmarks.pop(canonical_id, None) is not None:
                deleted += 1
        return deleted

    async def get_benchmarks(self, canonical_ids: Optional[Iterable[str]] = None) -> dict[str, Benchmark]:
        if canonical_ids is None:
            return dict(self.benchmarks)
        return {
            canonical_id: self.benchmarks[canonical_id]
            for canonical_id in set(canonical_ids)
            if canonical_id in self.benchmarks
        }

    async def clear_insights(self, retailer_sku_ids: Iterable[str]) -> int:
        ids = set(retailer_sku_ids)
        stale = [key for key in self.insights if key[0] in ids]
        for key in stale:
            del self.insights[key]
        return len(stale)

    async def upsert_insight(self, insight: Insight) -> None:
        key = (insight.retailer_sku_id, insight.canonical_sku_id, insight.type.value)
        self.insights[key] = replace(insight)

    async def list_insights(self, retailer_sku_ids: Optional[Iterable[str]] = None) -> list[Insight]:
        if retailer_sku_ids is None:
            return list(self.insights.values())
        ids = set(retailer_sku_ids)
        return [insight for key, insight in self.insights.items() if key[0] in ids]

    # Feed runs

    async def save_run(self, result: FeedRunResult) -> None:
        self.runs.pop(result.run_id, None)
        self.runs[result.run_id] = copy.deepcopy(result)

    async def get_run(self, run_id: str) -> Optional[FeedRunResult]:
        result = self.runs.get(run_id)
        return copy.deepcopy(result) if result else None

    async def reusable_content_hash(self, feed_id: str) -> Optional[str]:
        # Runs are saved as they finish, so the last one saved is the latest
        latest = None
        for run in self.runs.values():
            if run.feed_id == feed_id:
                latest = run
        if latest is None or latest.status != RunStatus.SUCCESS:
            return None
        return latest.content_hash
