"""Canonical matching: assign retailer SKUs to canonical products.

Two phases per run:

1. Attribute extraction for every record (pure, no lookups).
2. Matching against a ``MatchIndex`` built once per run from two bulk store
   reads. A UPC hit wins; otherwise the first-registered ``caliber|brand``
   candidate; otherwise a new canonical SKU is created and registered in the
   index immediately so later records can match it.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore, CatalogStoreError
from reconciler.domain import CanonicalAttributes, CanonicalSku, Provenance, RetailerSku
from reconciler.match.attribute_extractor import AttributeExtractor, attribute_extractor
from reconciler.metrics import canonical_auto_created_total, match_batch_retries_total, record_match

logger = logging.getLogger(__name__)


class BatchCommitError(Exception):
    """Raised when a matching batch still fails after all retries."""

    def __init__(
        self,
        batch_index: int,
        last_committed_batch: Optional[int],
        cause: Exception,
        committed_count: int = 0,
    ):
        self.batch_index = batch_index
        self.last_committed_batch = last_committed_batch
        self.cause = cause
        self.committed_count = committed_count
        super().__init__(
            f"Matching batch {batch_index} failed after retries "
            f"(last committed batch: {last_committed_batch}): {cause}"
        )


def choose_candidate(candidates: list[CanonicalSku], attributes: CanonicalAttributes) -> CanonicalSku:
    """Pick one canonical among several ``caliber|brand`` candidates.

    Candidates arrive in registration order; the first one wins.
    """
    return candidates[0]


def batch_count(record_count: int, batch_size: int) -> int:
    if batch_size <= 0:
        return 0
    return math.ceil(record_count / batch_size)


@dataclass
class MatchIndex:
    """Run-scoped lookup tables. Never shared between runs."""

    by_upc: dict[str, CanonicalSku] = field(default_factory=dict)
    by_attributes: dict[str, list[CanonicalSku]] = field(default_factory=dict)

    def register(self, canonical: CanonicalSku) -> None:
        """Add a canonical to both indices, keeping registration order."""
        if canonical.upc and canonical.upc not in self.by_upc:
            self.by_upc[canonical.upc] = canonical
        candidates = self.by_attributes.setdefault(canonical.attribute_key, [])
        if all(c.id != canonical.id for c in candidates):
            candidates.append(canonical)

    def lookup_upc(self, upc: Optional[str]) -> Optional[CanonicalSku]:
        if not upc:
            return None
        return self.by_upc.get(upc)

    def lookup_attributes(self, attribute_key: str) -> list[CanonicalSku]:
        return self.by_attributes.get(attribute_key, [])


@dataclass
class MatchResult:
    """Outcome of matching one run's records."""

    total: int = 0
    batch_size: int = 100
    batches: int = 0
    committed_batches: int = 0
    last_committed_batch: Optional[int] = None
    assignments: dict[str, str] = field(default_factory=dict)
    upc_matches: int = 0
    attribute_matches: int = 0
    created_ids: set[str] = field(default_factory=set)

    @property
    def matched_count(self) -> int:
        return len(self.assignments)

    @property
    def auto_created_count(self) -> int:
        return len(self.created_ids)


class CanonicalMatcher:
    """Assigns canonical SKU IDs to retailer SKUs in fixed-size batches."""

    def __init__(
        self,
        store: CatalogStore,
        extractor: Optional[AttributeExtractor] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self.store = store
        self.extractor = extractor or attribute_extractor
        self.batch_size = batch_size or settings.match_batch_size
        self.max_retries = max_retries if max_retries is not None else settings.match_batch_max_retries
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.match_retry_backoff_seconds
        )

    def extract_all(self, skus: list[RetailerSku]) -> dict[str, CanonicalAttributes]:
        """Phase 1: attribute extraction, keyed by retailer SKU ID."""
        return {sku.id: self.extractor.extract_sku(sku) for sku in skus}

    async def build_index(
        self,
        skus: list[RetailerSku],
        attributes: dict[str, CanonicalAttributes],
    ) -> MatchIndex:
        """Build the run's index from two bulk reads."""
        upcs = {sku.raw_upc for sku in skus if sku.raw_upc}
        keys = {attrs.attribute_key for attrs in attributes.values()}

        index = MatchIndex()
        by_upc = await self.store.find_canonicals_by_upcs(upcs)
        by_attributes = await self.store.find_canonicals_by_attribute_keys(keys)

        index.by_upc.update(by_upc)
        for key, candidates in by_attributes.items():
            index.by_attributes[key] = list(candidates)

        logger.debug(
            f"Built match index: {len(index.by_upc)} UPCs, {len(index.by_attributes)} attribute keys"
        )
        return index

    async def _match_one(
        self,
        sku: RetailerSku,
        attrs: CanonicalAttributes,
        index: MatchIndex,
        result: MatchResult,
        methods: dict[str, str],
    ) -> str:
        canonical = index.lookup_upc(sku.raw_upc)
        if canonical:
            methods[sku.id] = "upc"
            return canonical.id

        candidates = index.lookup_attributes(attrs.attribute_key)
        if candidates:
            methods[sku.id] = "attributes"
            return choose_candidate(candidates, attrs).id

        canonical = await self.store.create_canonical(
            attrs, provenance=Provenance.AUTO_CREATED, upc=sku.raw_upc
        )
        index.register(canonical)
        if canonical.provenance == Provenance.AUTO_CREATED and canonical.id not in result.created_ids:
            result.created_ids.add(canonical.id)
            canonical_auto_created_total.inc()
            logger.debug(f"Auto-created canonical {canonical.id} for {attrs.attribute_key}")
        methods[sku.id] = "created"
        return canonical.id

    async def _process_batch(
        self,
        batch: list[RetailerSku],
        attributes: dict[str, CanonicalAttributes],
        index: MatchIndex,
        result: MatchResult,
    ) -> dict[str, str]:
        assignments: dict[str, str] = {}
        methods: dict[str, str] = {}
        for sku in batch:
            assignments[sku.id] = await self._match_one(sku, attributes[sku.id], index, result, methods)

        await self.store.assign_canonicals(assignments)

        # Counted only once the batch is committed
        for method in ("upc", "attributes", "created"):
            count = sum(1 for m in methods.values() if m == method)
            if count:
                record_match(method, count)
        result.upc_matches += sum(1 for m in methods.values() if m == "upc")
        result.attribute_matches += sum(1 for m in methods.values() if m == "attributes")
        return assignments

    async def match(
        self,
        skus: list[RetailerSku],
        index: Optional[MatchIndex] = None,
    ) -> MatchResult:
        """
        Assign every retailer SKU a canonical SKU.

        Args:
            skus: Persisted, indexable retailer SKUs of one run
            index: Pre-built index; a fresh one is built when omitted

        Returns:
            MatchResult with assignments and counters

        Raises:
            BatchCommitError: A batch kept failing after retries
            CatalogStoreError: The index could not be built
        """
        # Identity-hash order keeps results independent of feed row order
        ordered = sorted(skus, key=lambda s: (s.sku_hash, s.id))
        attributes = self.extract_all(ordered)

        if index is None:
            index = await self.build_index(ordered, attributes)

        result = MatchResult(
            total=len(ordered),
            batch_size=self.batch_size,
            batches=batch_count(len(ordered), self.batch_size),
        )

        for batch_index in range(result.batches):
            start = batch_index * self.batch_size
            batch = ordered[start:start + self.batch_size]

            attempt = 0
            while True:
                try:
                    assignments = await self._process_batch(batch, attributes, index, result)
                    break
                except CatalogStoreError as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        logger.error(
                            f"Matching batch {batch_index} failed after {self.max_retries} retries: {e}"
                        )
                        raise BatchCommitError(
                            batch_index, result.last_committed_batch, e, len(result.assignments)
                        ) from e

                    backoff = self.retry_backoff * (2 ** (attempt - 1))
                    match_batch_retries_total.inc()
                    logger.warning(
                        f"Matching batch {batch_index} failed (attempt {attempt}), "
                        f"retrying in {backoff:.2f}s: {e}"
                    )
                    await asyncio.sleep(backoff)

            result.assignments.update(assignments)
            result.committed_batches += 1
            result.last_committed_batch = batch_index

        logger.info(
            f"Matched {result.matched_count} SKUs in {result.batches} batches: "
            f"{result.upc_matches} by UPC, {result.attribute_matches} by attributes, "
            f"{result.auto_created_count} canonicals created"
        )
        return result
