"""Tests for feed row classification."""

from decimal import Decimal

import pytest

from factories import build_rows, make_upc
from reconciler.domain import IssueCode, ParsedRecord, QuarantineStatus, RecordBucket
from reconciler.ingest.record_classifier import (
    RecordClassifier,
    classify_record,
    compute_match_key,
    compute_sku_hash,
)
from reconciler.normalize.processor import RecordCoercer


def _record(title="Federal 9mm", price="12.99", upc="012345678905") -> ParsedRecord:
    return ParsedRecord(
        row_index=0,
        title=title,
        price=Decimal(price) if price is not None else None,
        in_stock=True,
        upc=upc,
    )


@pytest.mark.parametrize(
    "record,bucket",
    [
        (_record(), RecordBucket.INDEXABLE),
        (_record(upc=None), RecordBucket.QUARANTINED),
        (_record(title=None), RecordBucket.REJECTED),
        (_record(title=None, upc=None), RecordBucket.REJECTED),
        (_record(price=None), RecordBucket.REJECTED),
        (_record(price="0"), RecordBucket.REJECTED),
        (_record(price="-4.99"), RecordBucket.REJECTED),
    ],
)
def test_classify_record(record, bucket):
    """Test each record lands in exactly one bucket."""
    assert classify_record(record) == bucket


def test_sku_hash_is_stable_across_formatting():
    """Test case and whitespace differences in titles do not change identity."""
    first = compute_sku_hash("Federal  9MM 115gr", "012345678905", "F9")
    second = compute_sku_hash("federal 9mm 115gr ", "012345678905", "F9")

    assert first == second
    assert len(first) == 32
    assert compute_sku_hash("Federal 9mm 115gr", "012345678905", "F10") != first


def test_match_key_ignores_price():
    cheap = _record(price="10.00", upc=None)
    pricey = _record(price="99.00", upc=None)

    assert compute_match_key(cheap) == compute_match_key(pricey)


@pytest.mark.asyncio
async def test_classify_feed_buckets(store):
    """Test mixed rows are counted and only survivors are persisted."""
    rows = [
        {"title": "Federal 9mm 115gr 50 Rounds", "price": "12.99", "upc": make_upc(1), "sku": "a"},
        {"title": "Hornady .308 Win 168gr 20rd", "price": "$31.50", "upc": "", "sku": "b"},
        {"title": "", "price": "9.99", "upc": make_upc(2), "sku": "c"},
        {"title": "CCI .22 LR 40gr", "price": "0", "upc": make_upc(3), "sku": "d"},
        {"title": "Speer .40 S&W", "price": "call", "upc": make_upc(4), "sku": "e"},
        {"title": "Blazer 9mm", "price": "8.99", "upc": "12345", "sku": "f"},
    ]

    classifier = RecordClassifier(store)
    result = await classifier.classify_feed(rows, "retailer-a", "feed-a", "run-1")

    assert result.total_rows == 6
    assert result.indexable_count == 1
    assert result.quarantined_count == 2
    assert result.rejected_count == 3
    assert result.indexable_count + result.quarantined_count + result.rejected_count == 6

    assert result.error_codes[IssueCode.MISSING_TITLE.value] == 1
    assert result.error_codes[IssueCode.INVALID_PRICE.value] == 2
    assert result.error_codes[IssueCode.MISSING_UPC.value] == 1
    assert result.error_codes[IssueCode.INVALID_UPC.value] == 1
    assert [e["row_index"] for e in result.row_errors] == [2, 3, 4]

    # Rejected rows are never persisted
    assert len(store.retailer_skus) == 1
    assert len(store.quarantined) == 2
    quarantined = await store.list_quarantined("feed-a")
    assert {r.parsed_fields["title"] for r in quarantined} == {
        "Hornady .308 Win 168gr 20rd",
        "Blazer 9mm",
    }
    assert all(r.status == QuarantineStatus.QUARANTINED for r in quarantined)
    assert all(r.blocking_issues for r in quarantined)


@pytest.mark.asyncio
async def test_classify_feed_is_deterministic(store):
    """Test the same rows always produce the same identities."""
    rows = build_rows(30, missing_upc_every=5)
    classifier = RecordClassifier(store)

    first = await classifier.classify_feed(rows, "retailer-a", "feed-a", "run-1")
    second = await classifier.classify_feed(list(reversed(rows)), "retailer-a", "feed-a", "run-2")

    assert {s.sku_hash for s in first.indexable} == {s.sku_hash for s in second.indexable}
    assert {s.id for s in first.indexable} == {s.id for s in second.indexable}
    assert {q.match_key for q in first.quarantined} == {q.match_key for q in second.quarantined}
    assert len(store.retailer_skus) == 24
    assert len(store.quarantined) == 6
    assert second.deactivated_count == 0


@pytest.mark.asyncio
async def test_duplicate_rows_collapse(store):
    """Test repeated listings within a feed keep the last row's values."""
    rows = [
        {"title": "Federal 9mm 115gr", "price": "12.99", "upc": make_upc(1), "sku": "a"},
        {"title": "Federal 9mm 115gr", "price": "11.49", "upc": make_upc(1), "sku": "a"},
    ]

    result = await RecordClassifier(store).classify_feed(rows, "retailer-a", "feed-a", "run-1")

    assert result.indexable_count == 1
    assert result.indexable[0].raw_price == Decimal("11.49")


@pytest.mark.asyncio
async def test_missing_listings_are_deactivated(store):
    """Test SKUs absent from a later snapshot of the same feed go inactive."""
    rows = build_rows(3)
    classifier = RecordClassifier(store)

    first = await classifier.classify_feed(rows, "retailer-a", "feed-a", "run-1")
    second = await classifier.classify_feed(rows[:2], "retailer-a", "feed-a", "run-2")

    assert second.deactivated_count == 1
    dropped = [s for s in first.indexable if s.raw_sku == "SKU-2"][0]
    assert store.retailer_skus[dropped.id].is_active is False
    active = await store.list_active_retailer_skus("retailer-a", "feed-a")
    assert len(active) == 2


@pytest.mark.asyncio
async def test_row_level_exception_is_rejected(store):
    """Test an unexpected per-row failure rejects the row instead of the feed."""

    class ExplodingCoercer(RecordCoercer):
        def coerce(self, row, row_index):
            if row_index == 1:
                raise ValueError("corrupt row")
            return super().coerce(row, row_index)

    rows = build_rows(3)
    result = await RecordClassifier(store, coercer=ExplodingCoercer()).classify_feed(
        rows, "retailer-a", "feed-a", "run-1"
    )

    assert result.indexable_count == 2
    assert result.rejected_count == 1
    assert result.error_codes[IssueCode.PARSE_ERROR.value] == 1
    assert result.row_errors[0]["message"] == "corrupt row"


@pytest.mark.asyncio
async def test_resolved_quarantine_is_promoted_on_next_run(store):
    """Test a row an operator already resolved skips quarantine next time."""
    rows = [{"title": "Hornady .308 Win 168gr 20rd", "price": "31.50", "upc": "", "sku": "b"}]
    classifier = RecordClassifier(store)

    first = await classifier.classify_feed(rows, "retailer-a", "feed-a", "run-1")
    record = first.quarantined[0]
    await store.resolve_quarantined(record.id, make_upc(77), "999")

    second = await classifier.classify_feed(rows, "retailer-a", "feed-a", "run-2")

    assert second.auto_resolved_count == 1
    assert second.quarantined_count == 0
    assert second.indexable_count == 1
    assert second.indexable[0].raw_upc == make_upc(77)
    # Still resolved after the re-run
    assert (await store.get_quarantined(record.id)).status == QuarantineStatus.RESOLVED
