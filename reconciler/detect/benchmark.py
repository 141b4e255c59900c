"""Cross-retailer price benchmarks per canonical SKU.

Benchmarks are recomputed from scratch on every run from the store's current
active prices; nothing is updated incrementally.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from reconciler.config import settings
from reconciler.db.repository import CatalogStore
from reconciler.domain import Benchmark, ConfidenceTier, PriceObservation
from reconciler.metrics import record_benchmark

logger = logging.getLogger(__name__)


def lower_median(prices: list[Decimal]) -> Decimal:
    """Middle element of the sorted list; lower-middle for even lengths."""
    ordered = sorted(prices)
    return ordered[(len(ordered) - 1) // 2]


def remove_outliers(prices: list[Decimal]) -> list[Decimal]:
    """Drop prices outside the 1.5 x IQR fence. Needs at least 4 prices."""
    if len(prices) < 4:
        return prices
    ordered = sorted(prices)
    q1 = ordered[int(len(ordered) * 0.25)]
    q3 = ordered[int(len(ordered) * 0.75)]
    iqr = q3 - q1
    lower = q1 - Decimal("1.5") * iqr
    upper = q3 + Decimal("1.5") * iqr
    return [p for p in ordered if lower <= p <= upper]


def confidence_for(count: int) -> ConfidenceTier:
    if count >= settings.benchmark_high_min_prices:
        return ConfidenceTier.HIGH
    if count >= settings.benchmark_medium_min_prices:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.NONE


def insight_inputs_changed(old: Optional[Benchmark], new: Benchmark) -> bool:
    """True when insights built on ``old`` may no longer hold under ``new``."""
    if old is None:
        return True
    return old.median_price != new.median_price or old.is_usable != new.is_usable


@dataclass
class BenchmarkRunResult:
    """Benchmarks written by one recomputation pass."""

    benchmarks: dict[str, Benchmark] = field(default_factory=dict)
    skipped: int = 0
    removed: int = 0
    changed_ids: set[str] = field(default_factory=set)

    @property
    def count(self) -> int:
        return len(self.benchmarks)


class BenchmarkCalculator:
    """
    Aggregates active retailer prices into per-canonical benchmarks.

    A canonical with fewer than ``benchmark_min_prices`` prices gets no row.
    """

    def __init__(
        self,
        store: CatalogStore,
        in_stock_only: Optional[bool] = None,
        outlier_removal: Optional[bool] = None,
    ):
        self.store = store
        self.in_stock_only = (
            in_stock_only if in_stock_only is not None else settings.benchmark_in_stock_only
        )
        self.outlier_removal = (
            outlier_removal if outlier_removal is not None else settings.benchmark_remove_outliers
        )

    def compute(
        self,
        canonical_id: str,
        observations: list[PriceObservation],
        run_id: Optional[str] = None,
    ) -> Optional[Benchmark]:
        """
        Compute one canonical's benchmark.

        Args:
            canonical_id: Canonical SKU ID
            observations: Active prices attached to it
            run_id: Run that triggered the computation

        Returns:
            Benchmark, or None when there are too few prices
        """
        if self.in_stock_only:
            # Unknown stock counts as in stock
            observations = [o for o in observations if o.in_stock is not False]

        prices = [o.price for o in observations]
        if self.outlier_removal:
            prices = remove_outliers(prices)

        if len(prices) < settings.benchmark_min_prices:
            return None

        sellers = {o.retailer_id for o in observations if o.price in prices}

        return Benchmark(
            canonical_sku_id=canonical_id,
            min_price=min(prices),
            median_price=lower_median(prices),
            max_price=max(prices),
            avg_price=sum(prices, Decimal("0")) / len(prices),
            seller_count=len(sellers),
            data_points=len(prices),
            confidence=confidence_for(len(prices)),
            run_id=run_id,
            seller_display_cap=settings.benchmark_seller_display_cap,
        )

    async def recompute_all(self, run_id: Optional[str] = None) -> BenchmarkRunResult:
        """
        Recompute every canonical SKU's benchmark from current state.

        Benchmarks whose canonical no longer has enough active prices are
        deleted. ``changed_ids`` lists the canonicals whose insight inputs
        (median or usability) differ from what was stored before.
        """
        previous = await self.store.get_benchmarks()
        observations = await self.store.list_active_prices()

        grouped: dict[str, list[PriceObservation]] = defaultdict(list)
        for observation in observations:
            grouped[observation.canonical_sku_id].append(observation)

        result = BenchmarkRunResult()
        for canonical_id, group in grouped.items():
            benchmark = self.compute(canonical_id, group, run_id)
            if benchmark is None:
                result.skipped += 1
                continue
            result.benchmarks[canonical_id] = benchmark
            if insight_inputs_changed(previous.get(canonical_id), benchmark):
                result.changed_ids.add(canonical_id)

        await self.store.upsert_benchmarks(list(result.benchmarks.values()))

        stale = sorted(set(previous) - set(result.benchmarks))
        if stale:
            result.removed = await self.store.delete_benchmarks(stale)
            result.changed_ids.update(stale)

        for benchmark in result.benchmarks.values():
            record_benchmark(benchmark.confidence.value)

        logger.info(
            f"Computed {result.count} benchmarks from {len(observations)} prices "
            f"({result.skipped} canonicals below {settings.benchmark_min_prices} prices, "
            f"{result.removed} removed, {len(result.changed_ids)} changed)"
        )
        return result
