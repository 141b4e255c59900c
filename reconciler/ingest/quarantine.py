"""Resubmit quarantined records once an operator supplies a UPC."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from reconciler.db.repository import CatalogStore
from reconciler.domain import ParsedRecord, QuarantinedRecord, QuarantineStatus, RetailerSku
from reconciler.ingest.record_classifier import build_retailer_sku
from reconciler.match.canonical_matcher import CanonicalMatcher
from reconciler.normalize.processor import RecordCoercer, record_coercer

logger = logging.getLogger(__name__)


class QuarantineResolutionError(Exception):
    """Raised when a quarantined record cannot be resolved."""

    pass


@dataclass
class ResolutionResult:
    record: QuarantinedRecord
    retailer_sku: RetailerSku
    canonical_sku_id: Optional[str]
    auto_created: bool = False


def record_from_fields(fields: dict, upc: str) -> ParsedRecord:
    """Rebuild a ParsedRecord from a quarantined record's stored fields."""
    price = fields.get("price")
    return ParsedRecord(
        row_index=-1,
        title=fields.get("title"),
        price=Decimal(price) if price is not None else None,
        in_stock=fields.get("in_stock"),
        upc=upc,
        raw_upc=upc,
        sku=fields.get("sku"),
        brand=fields.get("brand"),
        caliber=fields.get("caliber"),
        grain_weight=fields.get("grain_weight"),
        round_count=fields.get("round_count"),
        url=fields.get("url"),
    )


class QuarantineResolver:
    """Moves a quarantined record into the catalog with a supplied identifier."""

    def __init__(
        self,
        store: CatalogStore,
        matcher: Optional[CanonicalMatcher] = None,
        coercer: Optional[RecordCoercer] = None,
    ):
        self.store = store
        self.matcher = matcher or CanonicalMatcher(store)
        self.coercer = coercer or record_coercer

    async def resolve(self, record_id: str, upc: str, run_id: str) -> ResolutionResult:
        """
        Resolve one quarantined record.

        Args:
            record_id: Quarantined record ID
            upc: Operator-supplied UPC
            run_id: Run ID to tag the new retailer SKU with

        Returns:
            ResolutionResult with the persisted SKU and its canonical assignment

        Raises:
            QuarantineResolutionError: Unknown record, already resolved, or bad UPC
            BatchCommitError: Matching kept failing; the record is left unresolved
        """
        record = await self.store.get_quarantined(record_id)
        if record is None:
            raise QuarantineResolutionError(f"Quarantined record {record_id} not found")
        if record.status == QuarantineStatus.RESOLVED:
            raise QuarantineResolutionError(f"Quarantined record {record_id} is already resolved")
        if not self.coercer.is_valid_upc(upc):
            raise QuarantineResolutionError(f"'{upc}' is not a valid UPC")

        clean_upc = self.coercer.clean_upc(upc)
        parsed = record_from_fields(record.parsed_fields, clean_upc)
        sku = build_retailer_sku(parsed, record.retailer_id, record.feed_id, run_id)
        saved = (await self.store.upsert_retailer_skus([sku]))[0]

        # Fresh index: the resolution is its own unit of work. The record stays
        # QUARANTINED until matching has committed, so a failure can be retried.
        match_result = await self.matcher.match([saved])
        canonical_id = match_result.assignments.get(saved.id)
        saved.canonical_sku_id = canonical_id

        resolved = await self.store.resolve_quarantined(record_id, clean_upc, saved.id)

        logger.info(
            f"Resolved quarantined record {record_id} with UPC {clean_upc} "
            f"-> retailer SKU {saved.id}, canonical {canonical_id}"
        )
        return ResolutionResult(
            record=resolved,
            retailer_sku=saved,
            canonical_sku_id=canonical_id,
            auto_created=match_result.auto_created_count > 0,
        )
