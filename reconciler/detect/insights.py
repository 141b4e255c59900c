"""Pricing insights: compare each retailer price with its benchmark median."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore
from reconciler.domain import Benchmark, Insight, InsightType, RetailerSku, Severity
from reconciler.metrics import record_insight

logger = logging.getLogger(__name__)


def relative_deviation(price: Decimal, median: Decimal) -> Decimal:
    return (price - median) / median


@dataclass
class InsightRunResult:
    insights: list[Insight] = field(default_factory=list)
    analysed: int = 0
    skipped_no_benchmark: int = 0
    cleared: int = 0

    @property
    def count(self) -> int:
        return len(self.insights)


class InsightGenerator:
    """Flags retailer SKUs priced well above or below the market median."""

    def __init__(
        self,
        store: CatalogStore,
        medium_threshold: Optional[float] = None,
        high_threshold: Optional[float] = None,
    ):
        self.store = store
        # str() keeps 0.15 exact instead of its binary float expansion
        self.medium_threshold = Decimal(str(
            medium_threshold if medium_threshold is not None else settings.insight_medium_threshold
        ))
        self.high_threshold = Decimal(str(
            high_threshold if high_threshold is not None else settings.insight_high_threshold
        ))

    def classify(self, deviation: Decimal) -> Optional[tuple[InsightType, Severity]]:
        """Map a relative deviation onto an insight type and severity."""
        if deviation > self.high_threshold:
            return InsightType.OVERPRICED, Severity.HIGH
        if deviation > self.medium_threshold:
            return InsightType.OVERPRICED, Severity.MEDIUM
        if deviation < -self.high_threshold:
            return InsightType.UNDERPRICED, Severity.HIGH
        if deviation < -self.medium_threshold:
            return InsightType.UNDERPRICED, Severity.MEDIUM
        return None

    def evaluate(
        self,
        sku: RetailerSku,
        benchmark: Optional[Benchmark],
        run_id: Optional[str] = None,
    ) -> Optional[Insight]:
        """
        Evaluate one retailer SKU against its benchmark.

        Returns None when there is no usable benchmark or the price is
        within the normal band.
        """
        if benchmark is None or not benchmark.is_usable or benchmark.median_price <= 0:
            return None

        deviation = relative_deviation(sku.raw_price, benchmark.median_price)
        outcome = self.classify(deviation)
        if outcome is None:
            return None

        insight_type, severity = outcome
        direction = "above" if insight_type == InsightType.OVERPRICED else "below"
        return Insight(
            retailer_sku_id=sku.id,
            retailer_id=sku.retailer_id,
            canonical_sku_id=benchmark.canonical_sku_id,
            type=insight_type,
            severity=severity,
            retailer_price=sku.raw_price,
            market_median=benchmark.median_price,
            deviation=deviation,
            message=(
                f"${sku.raw_price} is {abs(deviation) * 100:.1f}% {direction} "
                f"the market median of ${benchmark.median_price}"
            ),
            run_id=run_id,
        )

    async def generate(self, skus: list[RetailerSku], run_id: Optional[str] = None) -> InsightRunResult:
        """
        Replace the insights of the given retailer SKUs.

        Args:
            skus: Retailer SKUs to analyse (their canonical assignment must be set)
            run_id: Current run

        Returns:
            InsightRunResult with the insights written
        """
        result = InsightRunResult(analysed=len(skus))

        canonical_ids = {sku.canonical_sku_id for sku in skus if sku.canonical_sku_id}
        benchmarks = await self.store.get_benchmarks(canonical_ids)

        for sku in skus:
            benchmark = benchmarks.get(sku.canonical_sku_id) if sku.canonical_sku_id else None
            if benchmark is None or not benchmark.is_usable:
                result.skipped_no_benchmark += 1
                continue
            insight = self.evaluate(sku, benchmark, run_id)
            if insight:
                result.insights.append(insight)

        result.cleared = await self.store.clear_insights([sku.id for sku in skus])
        await self.store.upsert_insights(result.insights)

        for insight in result.insights:
            record_insight(insight.type.value, insight.severity.value)

        logger.info(
            f"Generated {result.count} insights for {result.analysed} SKUs "
            f"({result.skipped_no_benchmark} without a usable benchmark)"
        )
        return result
