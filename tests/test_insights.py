"""Tests for pricing insight generation."""

from decimal import Decimal

import pytest

from factories import make_sku, make_upc
from reconciler.detect.insights import InsightGenerator, relative_deviation
from reconciler.domain import Benchmark, ConfidenceTier, InsightType, Severity


def _benchmark(median="100.00", confidence=ConfidenceTier.HIGH, canonical_id="c1"):
    value = Decimal(median)
    return Benchmark(
        canonical_sku_id=canonical_id,
        min_price=value,
        median_price=value,
        max_price=value,
        avg_price=value,
        seller_count=5,
        data_points=5,
        confidence=confidence,
    )


def _priced(price):
    sku = make_sku(1, "Federal 9mm 115gr", price=price, upc=make_upc(1))
    sku.id = "1"
    sku.canonical_sku_id = "c1"
    return sku


@pytest.mark.parametrize(
    "price,expected",
    [
        ("100.00", None),
        ("115.00", None),
        ("115.01", (InsightType.OVERPRICED, Severity.MEDIUM)),
        ("125.00", (InsightType.OVERPRICED, Severity.MEDIUM)),
        ("125.01", (InsightType.OVERPRICED, Severity.HIGH)),
        ("85.00", None),
        ("84.99", (InsightType.UNDERPRICED, Severity.MEDIUM)),
        ("75.00", (InsightType.UNDERPRICED, Severity.MEDIUM)),
        ("74.99", (InsightType.UNDERPRICED, Severity.HIGH)),
    ],
)
def test_threshold_boundaries(store, price, expected):
    """Test thresholds are strict: exactly 15% or 25% stays in the lower band."""
    insight = InsightGenerator(store).evaluate(_priced(price), _benchmark())

    if expected is None:
        assert insight is None
    else:
        assert (insight.type, insight.severity) == expected
        assert insight.market_median == Decimal("100.00")
        assert insight.deviation == relative_deviation(Decimal(price), Decimal("100.00"))


def test_unusable_benchmark_gives_no_insight(store):
    generator = InsightGenerator(store)

    assert generator.evaluate(_priced("500.00"), _benchmark(confidence=ConfidenceTier.NONE)) is None
    assert generator.evaluate(_priced("500.00"), None) is None


def test_custom_thresholds(store):
    generator = InsightGenerator(store, medium_threshold=0.05, high_threshold=0.10)

    insight = generator.evaluate(_priced("106.00"), _benchmark())

    assert insight.severity == Severity.MEDIUM


def test_insight_message(store):
    insight = InsightGenerator(store).evaluate(_priced("130.00"), _benchmark())

    assert insight.message == "$130.00 is 30.0% above the market median of $100.00"


@pytest.mark.asyncio
async def test_generate_replaces_previous_insights(store):
    """Test a run's insights replace that SKU's earlier ones."""
    canonical_id = "c1"
    saved = await store.upsert_retailer_skus([
        make_sku(1, "Federal 9mm 115gr", price="130.00", upc=make_upc(1)),
    ])
    sku = saved[0]
    sku.canonical_sku_id = canonical_id
    await store.upsert_benchmark(canonical_id, _benchmark(canonical_id=canonical_id))
    generator = InsightGenerator(store)

    first = await generator.generate([sku], "run-1")
    assert first.count == 1
    assert len(await store.list_insights([sku.id])) == 1

    sku.raw_price = Decimal("101.00")
    second = await generator.generate([sku], "run-2")

    assert second.count == 0
    assert second.cleared == 1
    assert await store.list_insights([sku.id]) == []


@pytest.mark.asyncio
async def test_generate_skips_skus_without_benchmark(store):
    sku = _priced("999.00")
    sku.canonical_sku_id = None

    result = await InsightGenerator(store).generate([sku])

    assert result.count == 0
    assert result.skipped_no_benchmark == 1
