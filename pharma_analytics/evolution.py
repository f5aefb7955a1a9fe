"""Evolution Engine.

Buckets a metric series by calendar interval and annotates each bucket
with purchase-order shortfalls ("ruptures").

Metric per bucket:
    sales    sum of quantity x price_with_tax of sales dated in the bucket,
             with the retail margin quantity x (price_with_tax - wap x (1 + VAT/100))
    sell_in  sum of ordered quantity x weighted_average_price of orders sent
             in the bucket (cost from the latest snapshot at the sent date)
    stock    sum of stock x weighted_average_price over every snapshot dated
             in the bucket

Shortfalls are bucketed with the same truncation and left-joined on equal
bucket keys: they only annotate buckets the metric produced, never create
their own.

Bucket labels: day "2024-01-05", week "2024-W01" (ISO), month "2024-01".
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta

from .data_source import DataSource
from .filters import AnalyticsQuery, parse_interval, parse_metric
from .models import Interval, MetricSource
from .numeric import percentage, round_half_up, ttc_cost
from .results import EvolutionPoint, EvolutionSeries
from .snapshots import load_index

logger = logging.getLogger("pharma_analytics.evolution")


def bucket_start(d: date, interval: Interval) -> date:
    """Truncate ``d`` to the first day of its bucket (weeks start on Monday)."""
    if interval == Interval.DAY:
        return d
    if interval == Interval.WEEK:
        return d - timedelta(days=d.weekday())
    return d.replace(day=1)


def bucket_label(d: date, interval: Interval) -> str:
    """Display label of the bucket containing ``d``."""
    start = bucket_start(d, interval)
    if interval == Interval.DAY:
        return start.isoformat()
    if interval == Interval.WEEK:
        iso_year, iso_week, _ = start.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return f"{start.year:04d}-{start.month:02d}"


@dataclass
class _Acc:
    value: float = 0.0
    quantity: float = 0.0
    margin: float = 0.0


# ---------------------------------------------------------------------------
# Metric series
# ---------------------------------------------------------------------------


async def _sales_buckets(
    source: DataSource,
    query: AnalyticsQuery,
    interval: Interval,
) -> dict[date, _Acc]:
    vat_rates = {
        i.id: i.product.vat_rate for i in await source.fetch_products(query.filters)
    }

    buckets: dict[date, _Acc] = defaultdict(_Acc)
    for row in await source.fetch_sales(query.filters, query.start, query.end):
        snap = row.snapshot
        qty = row.sale.quantity
        acc = buckets[bucket_start(row.sale.date, interval)]
        acc.value += qty * snap.price_with_tax
        acc.quantity += qty
        acc.margin += qty * (
            snap.price_with_tax
            - ttc_cost(snap.weighted_average_price, vat_rates.get(snap.product_id, 0.0))
        )
    return buckets


async def _sell_in_buckets(
    source: DataSource,
    query: AnalyticsQuery,
    interval: Interval,
) -> dict[date, _Acc]:
    rows = await source.fetch_order_lines(query.filters, query.start, query.end)
    index = await load_index(source, {r.line.product_id for r in rows}, end=query.end)

    buckets: dict[date, _Acc] = defaultdict(_Acc)
    for row in rows:
        snap = index.latest(row.line.product_id, row.order.sent_date)
        unit_cost = snap.weighted_average_price if snap else 0.0
        acc = buckets[bucket_start(row.order.sent_date, interval)]
        acc.value += row.line.ordered_quantity * unit_cost
        acc.quantity += row.line.ordered_quantity
    return buckets


async def _stock_buckets(
    source: DataSource,
    query: AnalyticsQuery,
    interval: Interval,
) -> dict[date, _Acc]:
    items = await source.fetch_products(query.filters)
    index = await load_index(
        source, [i.id for i in items], start=query.start, end=query.end
    )

    buckets: dict[date, _Acc] = defaultdict(_Acc)
    for product_id in index.product_ids:
        for snap in index.within(product_id, query.start, query.end):
            acc = buckets[bucket_start(snap.date, interval)]
            acc.value += snap.stock * snap.weighted_average_price
            acc.quantity += snap.stock
    return buckets


_METRIC_BUCKETS = {
    MetricSource.SALES: _sales_buckets,
    MetricSource.SELL_IN: _sell_in_buckets,
    MetricSource.STOCK: _stock_buckets,
}


async def shortfall_buckets(
    source: DataSource,
    query: AnalyticsQuery,
    interval: Interval,
) -> dict[date, float]:
    """Shortfall quantity per bucket, only for buckets with a shortfall."""
    buckets: dict[date, float] = defaultdict(float)
    for row in await source.fetch_order_lines(query.filters, query.start, query.end):
        if row.line.is_shortfall:
            buckets[bucket_start(row.order.sent_date, interval)] += row.line.shortfall
    return dict(buckets)


def annotate(
    metric_buckets: dict[date, _Acc],
    ruptures: dict[date, float],
    interval: Interval,
) -> list[EvolutionPoint]:
    """Left-join shortfalls onto metric buckets, ascending by bucket start."""
    points: list[EvolutionPoint] = []
    for key in sorted(metric_buckets):
        acc = metric_buckets[key]
        rupture_quantity = ruptures.get(key, 0.0)
        points.append(
            EvolutionPoint(
                period=bucket_label(key, interval),
                period_start=key,
                value=round_half_up(acc.value, 2),
                quantity=round_half_up(acc.quantity, 2),
                margin=round_half_up(acc.margin, 2),
                margin_percentage=percentage(acc.margin, acc.value),
                rupture_quantity=round_half_up(rupture_quantity, 2),
                is_rupture=rupture_quantity > 0,
            )
        )
    return points


async def evolution(
    source: DataSource,
    query: AnalyticsQuery,
    metric: MetricSource | str = MetricSource.SALES,
    interval: Interval | str = Interval.DAY,
) -> EvolutionSeries:
    """Time series of ``metric`` over ``query`` bucketed by ``interval``.

    Raises:
        InvalidArgument: Unknown metric source or interval.
        DataSourceUnavailable: The data source failed.
    """
    metric = parse_metric(metric)
    interval = parse_interval(interval)

    metric_buckets = await _METRIC_BUCKETS[metric](source, query, interval)
    ruptures = await shortfall_buckets(source, query, interval)
    points = annotate(metric_buckets, ruptures, interval)

    logger.info(
        "Evolution of %s by %s (%s..%s): %d buckets, %d with ruptures",
        metric.value,
        interval.value,
        query.start,
        query.end,
        len(points),
        sum(1 for p in points if p.is_rupture),
    )
    return EvolutionSeries(
        metric=metric,
        interval=interval,
        start=query.start,
        end=query.end,
        points=points,
    )
