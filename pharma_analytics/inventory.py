"""Inventory state reports.

- valuation: stock value ex-VAT (stock x weighted_average_price) at a date
- stock_months: months of stock left at the recent sales pace
- shortfall_summary: units ordered but not delivered over a range

Every report resolves each product to its own latest snapshot on or before
the end of the query range.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta

from .data_source import DataSource
from .filters import AnalyticsQuery
from .models import CatalogedProduct
from .numeric import round_half_up, safe_ratio
from .results import InventoryValuation, ShortfallSummary, StockCoverage
from .snapshots import resolve_snapshots

logger = logging.getLogger("pharma_analytics.inventory")

# Coverage reported for products in stock with no recent sales
OVERSTOCK_MONTHS = 99.0
DEFAULT_LOOKBACK_MONTHS = 3


def months_before(d: date, months: int) -> date:
    """Same day ``months`` calendar months earlier, clamped to month end."""
    month_index = d.year * 12 + d.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    next_month = date(year + (month == 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(d.day, last_day))


async def valuation(
    source: DataSource,
    query: AnalyticsQuery,
) -> InventoryValuation:
    """Value of the stock on hand at ``query.end``."""
    items = await source.fetch_products(query.filters)
    snapshots = await resolve_snapshots(source, [i.id for i in items], query.end)

    value = 0.0
    units = 0.0
    count = 0
    for snap in snapshots.values():
        if snap.stock <= 0:
            continue
        value += snap.stock * snap.weighted_average_price
        units += snap.stock
        count += 1

    logger.info(
        "Inventory valuation as of %s: %d products, %.2f",
        query.end,
        count,
        value,
    )
    return InventoryValuation(
        as_of=query.end,
        total_stock_value=round_half_up(value, 2),
        total_units=round_half_up(units, 2),
        product_count=count,
    )


async def stock_months(
    source: DataSource,
    query: AnalyticsQuery,
    *,
    lookback_months: int = DEFAULT_LOOKBACK_MONTHS,
    overstock_months: float = OVERSTOCK_MONTHS,
    aggregate_by_code: bool = False,
) -> list[StockCoverage]:
    """Months of stock per product at ``query.end``.

    The sales pace is the average monthly quantity sold over the
    ``lookback_months`` ending at ``query.end``. A product in stock that
    did not sell in that window is reported at ``overstock_months``.
    Products with no stock are left out.

    With ``aggregate_by_code`` stock and sales of all instances sharing an
    EAN13 are summed into one row keyed by the code.

    Returns:
        Rows sorted by coverage, shortest first.
    """
    lookback_months = max(lookback_months, 1)
    window_start = months_before(query.end, lookback_months) + timedelta(days=1)

    items = {i.id: i for i in await source.fetch_products(query.filters)}
    snapshots = await resolve_snapshots(source, list(items), query.end)
    sales = await source.fetch_sales(query.filters, window_start, query.end)

    sold: dict[str, float] = defaultdict(float)
    for row in sales:
        sold[row.snapshot.product_id] += row.sale.quantity

    groups: dict[str, list[CatalogedProduct]] = defaultdict(list)
    for product_id, item in items.items():
        key = (item.code_13_ref or product_id) if aggregate_by_code else product_id
        groups[key].append(item)

    rows: list[StockCoverage] = []
    for key, members in groups.items():
        stock = sum(
            snapshots[m.id].stock for m in members if m.id in snapshots
        )
        if stock <= 0:
            continue
        avg_monthly = sum(sold.get(m.id, 0.0) for m in members) / lookback_months
        coverage = (
            round_half_up(safe_ratio(stock, avg_monthly), 1)
            if avg_monthly > 0
            else overstock_months
        )
        first = members[0]
        rows.append(
            StockCoverage(
                id=key,
                code_13_ref=first.code_13_ref,
                display_name=first.display_name,
                category=first.catalog.category if first.catalog else None,
                brand_lab=first.catalog.brand_lab if first.catalog else None,
                current_stock=round_half_up(stock, 2),
                avg_monthly_sales=round_half_up(avg_monthly, 2),
                stock_months=coverage,
            )
        )

    rows.sort(key=lambda r: (r.stock_months, r.id))
    logger.info(
        "Stock coverage as of %s over %d months: %d rows",
        query.end,
        lookback_months,
        len(rows),
    )
    return rows


async def shortfall_summary(
    source: DataSource,
    query: AnalyticsQuery,
) -> ShortfallSummary:
    """Total shortfall of orders sent within the range.

    Shortfall units are valued at the product's latest price with tax at
    ``query.end``; products without a snapshot contribute units only.
    """
    rows = [
        r
        for r in await source.fetch_order_lines(query.filters, query.start, query.end)
        if r.line.is_shortfall
    ]
    prices = await resolve_snapshots(
        source, {r.line.product_id for r in rows}, query.end
    )

    quantity = 0.0
    value = 0.0
    for row in rows:
        quantity += row.line.shortfall
        snap = prices.get(row.line.product_id)
        if snap is not None:
            value += row.line.shortfall * snap.price_with_tax

    return ShortfallSummary(
        start=query.start,
        end=query.end,
        total_quantity=round_half_up(quantity, 2),
        total_value=round_half_up(value, 2),
        line_count=len(rows),
    )
