"""Segment Aggregator.

Groups sell-out, stock or sell-in records by one taxonomy dimension and
rolls up revenue, margin and quantity per segment value.

The three sources share one roll-up. Each source only decides which
quantity and unit price are summed:

    sell-out  units sold      x snapshot price_with_tax (sale-linked snapshot)
    stock     units on hand   x weighted_average_price  (latest snapshot at end)
    sell-in   units ordered   x weighted_average_price  (latest snapshot at sent date)

The margin is always quantity x (price_with_tax - wap x (1 + VAT/100)),
i.e. the retail margin carried by those units. Products without a catalog
value for the dimension land in the "Uncategorized" segment.

Usage:
    query = build_query("2024-01-01", "2024-03-31", pharmacy_ids=["ph-1"])
    result = await aggregate_segments(source, query, "universe")
    for row in result.rows:
        print(row.segment, row.total_revenue, row.revenue_percentage)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from .data_source import DataSource
from .filters import AnalyticsQuery, parse_dimension, parse_metric
from .models import (
    UNCATEGORIZED,
    CatalogedProduct,
    InventorySnapshot,
    MetricSource,
    SegmentDimension,
)
from .numeric import percentage, round_half_up, ttc_cost
from .results import SegmentAggregation, SegmentRow
from .snapshots import load_index, resolve_snapshots

logger = logging.getLogger("pharma_analytics.segments")


@dataclass(frozen=True)
class ValuedLine:
    """One record valued for aggregation."""

    product_id: str
    segment: str
    quantity: float
    revenue: float
    margin: float


@dataclass
class _Bucket:
    revenue: float = 0.0
    margin: float = 0.0
    quantity: float = 0.0
    product_ids: set[str] = field(default_factory=set)


def value_line(
    item: CatalogedProduct,
    snapshot: InventorySnapshot | None,
    quantity: float,
    unit_price: float,
    dimension: SegmentDimension,
    uncategorized: str = UNCATEGORIZED,
) -> ValuedLine:
    """Value ``quantity`` units of ``item`` at ``unit_price``."""
    if snapshot is None:
        margin = 0.0
    else:
        unit_margin = snapshot.price_with_tax - ttc_cost(
            snapshot.weighted_average_price, item.product.vat_rate
        )
        margin = quantity * unit_margin
    return ValuedLine(
        product_id=item.id,
        segment=item.segment(dimension, uncategorized),
        quantity=quantity,
        revenue=quantity * unit_price,
        margin=margin,
    )


def rollup(
    lines: list[ValuedLine],
    *,
    metric: MetricSource,
    dimension: SegmentDimension,
    query: AnalyticsQuery,
) -> SegmentAggregation:
    """Group valued lines by segment.

    Rows are sorted by revenue descending (segment name breaks ties).
    Revenue shares are computed against the unrounded grand total so they
    add up to 100 within rounding error.
    """
    buckets: dict[str, _Bucket] = defaultdict(_Bucket)
    for line in lines:
        bucket = buckets[line.segment]
        bucket.revenue += line.revenue
        bucket.margin += line.margin
        bucket.quantity += line.quantity
        bucket.product_ids.add(line.product_id)

    grand_revenue = sum(b.revenue for b in buckets.values())
    grand_margin = sum(b.margin for b in buckets.values())

    rows = [
        SegmentRow(
            segment=segment,
            total_revenue=round_half_up(b.revenue, 2),
            total_margin=round_half_up(b.margin, 2),
            margin_percentage=percentage(b.margin, b.revenue),
            total_quantity=round_half_up(b.quantity, 2),
            product_count=len(b.product_ids),
            revenue_percentage=percentage(b.revenue, grand_revenue),
        )
        for segment, b in buckets.items()
    ]
    rows.sort(key=lambda r: (-r.total_revenue, r.segment))

    return SegmentAggregation(
        metric=metric,
        dimension=dimension,
        start=query.start,
        end=query.end,
        pharmacy_ids=sorted(query.pharmacy_ids),
        product_codes=sorted(query.product_codes),
        rows=rows,
        total_revenue=round_half_up(grand_revenue, 2),
        total_margin=round_half_up(grand_margin, 2),
        margin_percentage=percentage(grand_margin, grand_revenue),
        total_quantity=round_half_up(sum(b.quantity for b in buckets.values()), 2),
        product_count=len({line.product_id for line in lines}),
    )


# ---------------------------------------------------------------------------
# Per-source valuation
# ---------------------------------------------------------------------------


async def sell_out_lines(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension,
    uncategorized: str = UNCATEGORIZED,
) -> list[ValuedLine]:
    items = {i.id: i for i in await source.fetch_products(query.filters)}
    sales = await source.fetch_sales(query.filters, query.start, query.end)

    lines: list[ValuedLine] = []
    for row in sales:
        item = items.get(row.snapshot.product_id)
        if item is None:
            continue
        lines.append(
            value_line(
                item,
                row.snapshot,
                row.sale.quantity,
                row.snapshot.price_with_tax,
                dimension,
                uncategorized,
            )
        )
    return lines


async def stock_lines(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension,
    uncategorized: str = UNCATEGORIZED,
) -> list[ValuedLine]:
    items = {i.id: i for i in await source.fetch_products(query.filters)}
    snapshots = await resolve_snapshots(source, list(items), query.end)

    return [
        value_line(
            items[product_id],
            snap,
            snap.stock,
            snap.weighted_average_price,
            dimension,
            uncategorized,
        )
        for product_id, snap in snapshots.items()
        if snap.stock > 0
    ]


async def sell_in_lines(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension,
    uncategorized: str = UNCATEGORIZED,
) -> list[ValuedLine]:
    items = {i.id: i for i in await source.fetch_products(query.filters)}
    order_lines = await source.fetch_order_lines(query.filters, query.start, query.end)
    product_ids = {row.line.product_id for row in order_lines}
    index = await load_index(source, product_ids, end=query.end)

    lines: list[ValuedLine] = []
    for row in order_lines:
        item = items.get(row.line.product_id)
        if item is None:
            continue
        snap = index.latest(row.line.product_id, row.order.sent_date)
        unit_cost = snap.weighted_average_price if snap else 0.0
        lines.append(
            value_line(
                item,
                snap,
                row.line.ordered_quantity,
                unit_cost,
                dimension,
                uncategorized,
            )
        )
    return lines


_LINE_BUILDERS = {
    MetricSource.SALES: sell_out_lines,
    MetricSource.STOCK: stock_lines,
    MetricSource.SELL_IN: sell_in_lines,
}


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def aggregate_segments(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension | str,
    metric: MetricSource | str = MetricSource.SALES,
    *,
    uncategorized: str = UNCATEGORIZED,
) -> SegmentAggregation:
    """Aggregate ``metric`` by ``dimension`` over ``query``.

    Stock is valued at ``query.end``; sales and sell-in cover the whole range.

    Raises:
        UnknownSegment: ``dimension`` is not a supported dimension.
        InvalidArgument: ``metric`` is not a supported source.
        DataSourceUnavailable: The data source failed.
    """
    dimension = parse_dimension(dimension)
    metric = parse_metric(metric)

    lines = await _LINE_BUILDERS[metric](source, query, dimension, uncategorized)
    result = rollup(lines, metric=metric, dimension=dimension, query=query)
    logger.info(
        "Aggregated %s by %s (%s..%s): %d segments, revenue %.2f",
        metric.value,
        dimension.value,
        query.start,
        query.end,
        len(result.rows),
        result.total_revenue,
    )
    return result


async def aggregate_sell_out(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension | str,
    **kwargs,
) -> SegmentAggregation:
    return await aggregate_segments(source, query, dimension, MetricSource.SALES, **kwargs)


async def aggregate_stock(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension | str,
    **kwargs,
) -> SegmentAggregation:
    return await aggregate_segments(source, query, dimension, MetricSource.STOCK, **kwargs)


async def aggregate_sell_in(
    source: DataSource,
    query: AnalyticsQuery,
    dimension: SegmentDimension | str,
    **kwargs,
) -> SegmentAggregation:
    return await aggregate_segments(
        source, query, dimension, MetricSource.SELL_IN, **kwargs
    )
