"""Comparison Engine.

Runs the Segment Aggregator or the Evolution Engine over a current and a
comparison period with identical filters, then computes period-over-period
deltas:

    evolution_percentage = (current - previous) / previous x 100

rounded to one decimal and defined as 0 when the previous value is zero
or negative (no baseline is not an error).

The two periods are computed concurrently. If either fails or the caller
cancels, the sibling task is cancelled too and nothing is returned.

`compare_to_group` reuses the same ingredients to benchmark one pharmacy
against the average pharmacy of the network.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import date
from typing import TypeVar

from .data_source import DataSource
from .errors import InvalidArgument
from .evolution import evolution
from .filters import (
    AnalyticsQuery,
    build_query,
    parse_dimension,
    parse_interval,
    parse_metric,
)
from .models import CatalogedProduct, Interval, MetricSource, SegmentDimension
from .numeric import evolution_percentage, percentage, round_half_up, ttc_cost
from .results import (
    EvolutionBand,
    EvolutionComparison,
    EvolutionComparisonPoint,
    GlobalComparison,
    GroupComparison,
    PharmacyKpis,
    ProductComparison,
    ProductEvolution,
    SegmentComparison,
    SegmentComparisonRow,
    SegmentRow,
)
from .segments import aggregate_segments, sell_in_lines, stock_lines
from .snapshots import resolve_snapshots

logger = logging.getLogger("pharma_analytics.comparison")

T = TypeVar("T")
U = TypeVar("U")


async def run_pair(first: Awaitable[T], second: Awaitable[U]) -> tuple[T, U]:
    """Await two independent computations concurrently.

    If one raises (or the caller is cancelled) the other is cancelled and
    awaited before the exception propagates.
    """
    tasks = [asyncio.ensure_future(first), asyncio.ensure_future(second)]
    try:
        a, b = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return a, b


def comparison_query(
    query: AnalyticsQuery,
    comparison_start: date | str | None,
    comparison_end: date | str | None,
) -> AnalyticsQuery:
    """The comparison period: same filters, another range, no overlap.

    Raises:
        InvalidArgument: The comparison range is missing, malformed or
            overlaps the current range.
    """
    previous = query.with_range(comparison_start, comparison_end)
    if previous.overlaps(query):
        raise InvalidArgument(
            "comparison_start",
            f"comparison period {previous.start}..{previous.end} overlaps "
            f"current period {query.start}..{query.end}",
        )
    return previous


def classify_evolution(percentage: float) -> EvolutionBand:
    """Band an evolution rate: <-15, [-15,-5), [-5,5], (5,15], >15."""
    if percentage < -15:
        return EvolutionBand.STRONG_DECREASE
    if percentage < -5:
        return EvolutionBand.SLIGHT_DECREASE
    if percentage <= 5:
        return EvolutionBand.STABLE
    if percentage <= 15:
        return EvolutionBand.SLIGHT_INCREASE
    return EvolutionBand.STRONG_INCREASE


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


def _join_segment_rows(
    current: list[SegmentRow],
    previous: list[SegmentRow],
) -> list[SegmentComparisonRow]:
    cur = {r.segment: r for r in current}
    prev = {r.segment: r for r in previous}

    rows: list[SegmentComparisonRow] = []
    for segment in cur.keys() | prev.keys():
        c = cur.get(segment)
        p = prev.get(segment)
        current_revenue = c.total_revenue if c else 0.0
        previous_revenue = p.total_revenue if p else 0.0
        current_margin = c.total_margin if c else 0.0
        previous_margin = p.total_margin if p else 0.0
        rows.append(
            SegmentComparisonRow(
                segment=segment,
                current_revenue=current_revenue,
                previous_revenue=previous_revenue,
                evolution_percentage=evolution_percentage(
                    current_revenue, previous_revenue
                ),
                current_margin=current_margin,
                previous_margin=previous_margin,
                margin_evolution_percentage=evolution_percentage(
                    current_margin, previous_margin
                ),
                current_quantity=c.total_quantity if c else 0.0,
                previous_quantity=p.total_quantity if p else 0.0,
                current_revenue_percentage=c.revenue_percentage if c else 0.0,
                previous_revenue_percentage=p.revenue_percentage if p else 0.0,
            )
        )

    rows.sort(key=lambda r: (-r.current_revenue, -r.previous_revenue, r.segment))
    return rows


async def compare_segments(
    source: DataSource,
    query: AnalyticsQuery,
    comparison_start: date | str | None,
    comparison_end: date | str | None,
    dimension: SegmentDimension | str,
    metric: MetricSource | str = MetricSource.SALES,
) -> SegmentComparison:
    """Segment roll-ups of both periods, outer-joined by segment.

    A segment present in only one period appears with zeros on the other
    side.
    """
    dimension = parse_dimension(dimension)
    metric = parse_metric(metric)
    previous_query = comparison_query(query, comparison_start, comparison_end)

    current, previous = await run_pair(
        aggregate_segments(source, query, dimension, metric),
        aggregate_segments(source, previous_query, dimension, metric),
    )

    rows = _join_segment_rows(current.rows, previous.rows)
    logger.info(
        "Compared %s by %s: %d segments (%d current, %d previous)",
        metric.value,
        dimension.value,
        len(rows),
        len(current.rows),
        len(previous.rows),
    )
    return SegmentComparison(
        metric=metric,
        dimension=dimension,
        current=current,
        previous=previous,
        rows=rows,
        evolution_percentage=evolution_percentage(
            current.total_revenue, previous.total_revenue
        ),
        margin_evolution_percentage=evolution_percentage(
            current.total_margin, previous.total_margin
        ),
    )


# ---------------------------------------------------------------------------
# Time series
# ---------------------------------------------------------------------------


async def compare_evolution(
    source: DataSource,
    query: AnalyticsQuery,
    comparison_start: date | str | None,
    comparison_end: date | str | None,
    metric: MetricSource | str = MetricSource.SALES,
    interval: Interval | str = Interval.DAY,
) -> EvolutionComparison:
    """Evolution series of both periods aligned by bucket position.

    Bucket i of the current period is compared with bucket i of the
    comparison period; the shorter series is padded with zeros.
    """
    metric = parse_metric(metric)
    interval = parse_interval(interval)
    previous_query = comparison_query(query, comparison_start, comparison_end)

    current, previous = await run_pair(
        evolution(source, query, metric, interval),
        evolution(source, previous_query, metric, interval),
    )

    points: list[EvolutionComparisonPoint] = []
    for i in range(max(len(current.points), len(previous.points))):
        c = current.points[i] if i < len(current.points) else None
        p = previous.points[i] if i < len(previous.points) else None
        current_value = c.value if c else 0.0
        previous_value = p.value if p else 0.0
        points.append(
            EvolutionComparisonPoint(
                index=i,
                current_period=c.period if c else None,
                previous_period=p.period if p else None,
                current_value=current_value,
                previous_value=previous_value,
                evolution_percentage=evolution_percentage(
                    current_value, previous_value
                ),
                current_is_rupture=c.is_rupture if c else False,
                previous_is_rupture=p.is_rupture if p else False,
            )
        )

    return EvolutionComparison(
        metric=metric,
        interval=interval,
        current=current,
        previous=previous,
        points=points,
        evolution_percentage=evolution_percentage(
            current.total_value, previous.total_value
        ),
    )


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


async def _sell_out_by_product(
    source: DataSource,
    query: AnalyticsQuery,
    items: dict[str, CatalogedProduct],
) -> dict[str, tuple[float, float]]:
    """(revenue, margin) of every product with sales in the period."""
    totals: dict[str, list[float]] = defaultdict(lambda: [0.0, 0.0])
    for row in await source.fetch_sales(query.filters, query.start, query.end):
        item = items.get(row.snapshot.product_id)
        if item is None:
            continue
        snap = row.snapshot
        qty = row.sale.quantity
        acc = totals[item.id]
        acc[0] += qty * snap.price_with_tax
        acc[1] += qty * (
            snap.price_with_tax
            - ttc_cost(snap.weighted_average_price, item.product.vat_rate)
        )
    return {k: (v[0], v[1]) for k, v in totals.items()}


async def compare_products(
    source: DataSource,
    query: AnalyticsQuery,
    comparison_start: date | str | None,
    comparison_end: date | str | None,
) -> ProductComparison:
    """Per-product sell-out evolution, banded, with a global summary.

    Products with no revenue in either period are left out.
    """
    previous_query = comparison_query(query, comparison_start, comparison_end)
    items = {i.id: i for i in await source.fetch_products(query.filters)}

    (current, previous), stock = await run_pair(
        run_pair(
            _sell_out_by_product(source, query, items),
            _sell_out_by_product(source, previous_query, items),
        ),
        resolve_snapshots(source, list(items), query.end),
    )

    products: list[ProductEvolution] = []
    for product_id in current.keys() | previous.keys():
        cur_rev, cur_margin = current.get(product_id, (0.0, 0.0))
        prev_rev, prev_margin = previous.get(product_id, (0.0, 0.0))
        if cur_rev <= 0 and prev_rev <= 0:
            continue
        item = items[product_id]
        evo = evolution_percentage(cur_rev, prev_rev)
        snap = stock.get(product_id)
        products.append(
            ProductEvolution(
                product_id=product_id,
                code_13_ref=item.code_13_ref,
                display_name=item.display_name,
                category=item.catalog.category if item.catalog else None,
                brand_lab=item.catalog.brand_lab if item.catalog else None,
                current_stock=snap.stock if snap else 0.0,
                current_revenue=round_half_up(cur_rev, 2),
                previous_revenue=round_half_up(prev_rev, 2),
                current_margin=round_half_up(cur_margin, 2),
                previous_margin=round_half_up(prev_margin, 2),
                evolution_percentage=evo,
                margin_evolution_percentage=evolution_percentage(
                    cur_margin, prev_margin
                ),
                band=classify_evolution(evo),
            )
        )
    products.sort(key=lambda p: (p.evolution_percentage, p.product_id))

    cur_total = sum(v[0] for v in current.values())
    prev_total = sum(v[0] for v in previous.values())
    cur_margin_total = sum(v[1] for v in current.values())
    prev_margin_total = sum(v[1] for v in previous.values())

    return ProductComparison(
        products=products,
        global_comparison=GlobalComparison(
            current_period_revenue=round_half_up(cur_total, 2),
            previous_period_revenue=round_half_up(prev_total, 2),
            evolution_percentage=evolution_percentage(cur_total, prev_total),
            current_period_margin=round_half_up(cur_margin_total, 2),
            previous_period_margin=round_half_up(prev_margin_total, 2),
            margin_evolution_percentage=evolution_percentage(
                cur_margin_total, prev_margin_total
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Pharmacy against the network
# ---------------------------------------------------------------------------


@dataclass
class _Totals:
    sell_out: float = 0.0
    margin: float = 0.0
    sell_in: float = 0.0
    stock_value: float = 0.0
    previous_sell_out: float = 0.0
    codes: set[str] = field(default_factory=set)


def _kpis(totals: _Totals, pharmacy_count: int = 1) -> PharmacyKpis:
    """Figures of ``totals`` divided evenly over ``pharmacy_count`` pharmacies."""
    n = pharmacy_count or 1
    return PharmacyKpis(
        sell_out=round_half_up(totals.sell_out / n, 2),
        margin=round_half_up(totals.margin / n, 2),
        margin_percentage=percentage(totals.margin, totals.sell_out),
        references_count=round_half_up(len(totals.codes) / n, 2),
        sell_in=round_half_up(totals.sell_in / n, 2),
        stock_value=round_half_up(totals.stock_value / n, 2),
        previous_sell_out=round_half_up(totals.previous_sell_out / n, 2),
        evolution_percentage=evolution_percentage(
            totals.sell_out, totals.previous_sell_out
        ),
    )


async def compare_to_group(
    source: DataSource,
    query: AnalyticsQuery,
    comparison_start: date | str | None,
    comparison_end: date | str | None,
) -> GroupComparison:
    """Benchmark one pharmacy against the average pharmacy of the network.

    ``query`` must select exactly one pharmacy. The network is every
    pharmacy under the same product codes. Its figures are network totals
    divided by the number of pharmacies with sell-out in the current
    period, except the rates, which are taken on the totals.

    Raises:
        InvalidArgument: Not exactly one pharmacy, or a bad comparison range.
        DataSourceUnavailable: The data source failed.
    """
    if len(query.pharmacy_ids) != 1:
        raise InvalidArgument(
            "pharmacy_ids",
            f"exactly one pharmacy is required, got {len(query.pharmacy_ids)}",
        )
    (pharmacy_id,) = query.pharmacy_ids
    network = build_query(query.start, query.end, product_codes=query.product_codes)
    previous_network = comparison_query(network, comparison_start, comparison_end)

    items = {i.id: i for i in await source.fetch_products(network.filters)}
    (current, previous), (sell_in, stock) = await run_pair(
        run_pair(
            _sell_out_by_product(source, network, items),
            _sell_out_by_product(source, previous_network, items),
        ),
        # Segment labels are unused here; only values per product matter
        run_pair(
            sell_in_lines(source, network, SegmentDimension.UNIVERSE),
            stock_lines(source, network, SegmentDimension.UNIVERSE),
        ),
    )

    by_pharmacy: dict[str, _Totals] = defaultdict(_Totals)
    for product_id, (revenue, margin) in current.items():
        item = items[product_id]
        totals = by_pharmacy[item.product.pharmacy_id]
        totals.sell_out += revenue
        totals.margin += margin
        if item.code_13_ref:
            totals.codes.add(item.code_13_ref)
    selling = set(by_pharmacy)
    for product_id, (revenue, _) in previous.items():
        by_pharmacy[items[product_id].product.pharmacy_id].previous_sell_out += revenue
    for line in sell_in:
        by_pharmacy[items[line.product_id].product.pharmacy_id].sell_in += line.revenue
    for line in stock:
        by_pharmacy[items[line.product_id].product.pharmacy_id].stock_value += line.revenue

    group = _Totals()
    for totals in by_pharmacy.values():
        group.sell_out += totals.sell_out
        group.margin += totals.margin
        group.sell_in += totals.sell_in
        group.stock_value += totals.stock_value
        group.previous_sell_out += totals.previous_sell_out
        group.codes |= totals.codes

    logger.info(
        "Compared pharmacy %s with %d selling pharmacies (%s..%s)",
        pharmacy_id,
        len(selling),
        query.start,
        query.end,
    )
    return GroupComparison(
        pharmacy_id=pharmacy_id,
        start=query.start,
        end=query.end,
        comparison_start=previous_network.start,
        comparison_end=previous_network.end,
        product_codes=sorted(query.product_codes),
        pharmacy_count=len(selling),
        pharmacy=_kpis(by_pharmacy.get(pharmacy_id, _Totals())),
        group=_kpis(group, len(selling)),
    )
