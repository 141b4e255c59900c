"""Classify feed rows into indexable, quarantined and rejected buckets."""

import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore
from reconciler.domain import (
    FieldIssue,
    IssueCode,
    ParsedRecord,
    QuarantinedRecord,
    RecordBucket,
    RetailerSku,
)
from reconciler.match.attribute_extractor import attribute_extractor
from reconciler.metrics import record_classification
from reconciler.normalize.processor import RecordCoercer, record_coercer

logger = logging.getLogger(__name__)

# Issue codes that send a retained row to quarantine
IDENTITY_CODES = {IssueCode.MISSING_UPC, IssueCode.INVALID_UPC}

# Issue codes that reject a row outright
REJECT_CODES = {IssueCode.MISSING_TITLE, IssueCode.MISSING_PRICE, IssueCode.INVALID_PRICE}


def normalize_title(title: str) -> str:
    return " ".join(title.lower().split())


def compute_sku_hash(title: str, upc: Optional[str], sku: Optional[str]) -> str:
    """Identity of a retailer listing: normalized title, UPC and retailer SKU."""
    components = [normalize_title(title), upc or "", sku or ""]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()[:32]


def compute_content_hash(record: ParsedRecord) -> str:
    """Fingerprint of the mutable fields, used for change detection."""
    payload = {
        "price": str(record.price) if record.price is not None else None,
        "in_stock": record.in_stock,
        "brand": record.brand,
        "caliber": record.caliber,
        "grain": record.grain_weight,
        "rounds": record.round_count,
        "url": record.url,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def compute_match_key(record: ParsedRecord) -> str:
    """Key used to auto-resolve a quarantined row once a UPC is supplied."""
    attributes = attribute_extractor.extract(
        record.title or "",
        caliber=record.caliber,
        brand=record.brand,
        grain_weight=record.grain_weight,
        pack_size=record.round_count,
    )
    components = [
        normalize_title(record.title or ""),
        attributes.caliber.lower(),
        attributes.brand.lower(),
        str(attributes.grain_weight or ""),
        record.sku or "",
    ]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()[:32]


def classify_record(record: ParsedRecord) -> RecordBucket:
    """
    Apply the classification rule to one coerced record.

    Order matters: a row without a title or a positive price is rejected
    before its identifier is looked at.
    """
    if not record.title or record.price is None or record.price <= 0:
        return RecordBucket.REJECTED
    if record.upc:
        return RecordBucket.INDEXABLE
    return RecordBucket.QUARANTINED


def parsed_fields(record: ParsedRecord) -> dict:
    """JSON-safe view of a record's coerced fields."""
    return {
        "title": record.title,
        "price": str(record.price) if record.price is not None else None,
        "in_stock": record.in_stock,
        "upc": record.upc,
        "raw_upc": record.raw_upc,
        "sku": record.sku,
        "brand": record.brand,
        "caliber": record.caliber,
        "grain_weight": record.grain_weight,
        "round_count": record.round_count,
        "url": record.url,
    }


def _issue_dict(issue: FieldIssue) -> dict:
    raw = issue.raw_value
    if raw is not None and not isinstance(raw, (str, int, float, bool)):
        raw = str(raw)
    return {
        "field": issue.field,
        "code": issue.code.value,
        "message": issue.message,
        "raw_value": raw,
    }


def build_retailer_sku(
    record: ParsedRecord,
    retailer_id: str,
    feed_id: str,
    run_id: str,
) -> RetailerSku:
    """Build an unsaved RetailerSku from an indexable record."""
    return RetailerSku(
        id="",
        retailer_id=retailer_id,
        feed_id=feed_id,
        feed_run_id=run_id,
        sku_hash=compute_sku_hash(record.title, record.upc, record.sku),
        content_hash=compute_content_hash(record),
        raw_title=record.title,
        raw_price=record.price,
        raw_upc=record.upc,
        raw_sku=record.sku,
        raw_brand=record.brand,
        raw_caliber=record.caliber,
        raw_grain=record.grain_weight,
        raw_pack_size=record.round_count,
        raw_in_stock=record.in_stock,
        raw_url=record.url,
    )


@dataclass
class ClassificationResult:
    """Outcome of classifying and persisting one feed."""

    total_rows: int = 0
    indexable: list[RetailerSku] = field(default_factory=list)
    quarantined: list[QuarantinedRecord] = field(default_factory=list)
    rejected_count: int = 0
    deactivated_ids: list[str] = field(default_factory=list)
    cleared_insights: int = 0
    auto_resolved_count: int = 0
    error_codes: Counter = field(default_factory=Counter)
    row_errors: list[dict] = field(default_factory=list)

    @property
    def indexable_count(self) -> int:
        return len(self.indexable)

    @property
    def quarantined_count(self) -> int:
        return len(self.quarantined)

    @property
    def deactivated_count(self) -> int:
        return len(self.deactivated_ids)


class RecordClassifier:
    """
    Turns a feed's raw rows into persisted RetailerSku and QuarantinedRecord rows.

    Row defects never raise: they become REJECTED (counted) or QUARANTINED.
    Only store failures propagate.
    """

    def __init__(self, store: CatalogStore, coercer: Optional[RecordCoercer] = None):
        self.store = store
        self.coercer = coercer or record_coercer

    def _record_error(self, result: ClassificationResult, row_index: int, codes: list[str], message: str):
        for code in codes:
            result.error_codes[code] += 1
        if len(result.row_errors) < settings.max_reported_row_errors:
            result.row_errors.append({
                "row_index": row_index,
                "codes": codes,
                "message": message,
            })

    async def classify_feed(
        self,
        rows: list[dict],
        retailer_id: str,
        feed_id: str,
        run_id: str,
    ) -> ClassificationResult:
        """
        Classify every row of one feed run and persist the survivors.

        Args:
            rows: Raw rows from the feed parser
            retailer_id: Owning retailer
            feed_id: Feed being ingested
            run_id: Current feed run

        Returns:
            ClassificationResult with persisted rows and reject counts
        """
        result = ClassificationResult(total_rows=len(rows))
        indexable_records: list[ParsedRecord] = []
        quarantine_records: list[tuple[ParsedRecord, str]] = []

        for row_index, row in enumerate(rows):
            try:
                record = self.coercer.coerce(row, row_index)
                bucket = classify_record(record)
                match_key = compute_match_key(record) if bucket == RecordBucket.QUARANTINED else None
            except Exception as e:
                logger.debug(f"Row {row_index} could not be processed: {e}")
                result.rejected_count += 1
                self._record_error(result, row_index, [IssueCode.PARSE_ERROR.value], str(e))
                continue

            if bucket == RecordBucket.REJECTED:
                result.rejected_count += 1
                codes = [i.code.value for i in record.issues if i.code in REJECT_CODES]
                if not codes:
                    codes = [IssueCode.INVALID_PRICE.value]
                self._record_error(result, row_index, codes, "Row rejected")
            elif bucket == RecordBucket.INDEXABLE:
                indexable_records.append(record)
            else:
                quarantine_records.append((record, match_key))

        # Rows whose identity an operator already supplied go straight to indexable
        resolved = await self.store.find_resolved_upcs(feed_id, [key for _, key in quarantine_records])
        still_quarantined = []
        for record, match_key in quarantine_records:
            upc = resolved.get(match_key)
            if upc:
                record.upc = upc
                indexable_records.append(record)
                result.auto_resolved_count += 1
            else:
                still_quarantined.append((record, match_key))
                codes = [i.code.value for i in record.issues if i.code in IDENTITY_CODES]
                for code in codes:
                    result.error_codes[code] += 1

        # Duplicate listings within one feed collapse onto one row, last wins
        skus: dict[str, RetailerSku] = {}
        for record in indexable_records:
            sku = build_retailer_sku(record, retailer_id, feed_id, run_id)
            skus[sku.sku_hash] = sku
        if len(skus) < len(indexable_records):
            logger.info(f"Collapsed {len(indexable_records) - len(skus)} duplicate rows in feed {feed_id}")

        quarantined: dict[str, QuarantinedRecord] = {}
        for record, match_key in still_quarantined:
            quarantined[match_key] = QuarantinedRecord(
                id="",
                retailer_id=retailer_id,
                feed_id=feed_id,
                run_id=run_id,
                match_key=match_key,
                raw_data={k: (v if isinstance(v, (str, int, float, bool)) or v is None else str(v))
                          for k, v in record.raw_row.items()},
                parsed_fields=parsed_fields(record),
                blocking_issues=[_issue_dict(i) for i in record.issues if i.code in IDENTITY_CODES],
            )

        result.indexable = await self.store.upsert_retailer_skus(list(skus.values()))
        result.quarantined = await self.store.upsert_quarantined(list(quarantined.values()))
        result.deactivated_ids = await self.store.deactivate_missing(retailer_id, feed_id, run_id)
        # A listing that left the feed keeps no insights
        if result.deactivated_ids:
            result.cleared_insights = await self.store.clear_insights(result.deactivated_ids)

        record_classification(result.indexable_count, result.quarantined_count, result.rejected_count)
        logger.info(
            f"Classified feed {feed_id} run {run_id}: {result.indexable_count} indexable, "
            f"{result.quarantined_count} quarantined, {result.rejected_count} rejected, "
            f"{result.deactivated_count} deactivated"
        )
        return result
