"""Margin Calculator.

Derives the ex-VAT price, unit margin and margin rate of a product from
its inventory snapshot, and classifies margin rates into bands.

    price_ex_vat      = price_with_tax / (1 + VAT/100)
    margin_amount     = price_ex_vat - weighted_average_price
    margin_percentage = margin_amount / weighted_average_price x 100

The rate is defined as 0 (never computed) when the weighted average price
is zero or negative, so incomplete cost data cannot raise.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from .data_source import DataSource
from .filters import AnalyticsQuery
from .models import CatalogedProduct, InventorySnapshot
from .numeric import round_half_up
from .results import MarginBand, MarginBreakdown, MarginSummary, ProductMargin
from .snapshots import resolve_snapshots

logger = logging.getLogger("pharma_analytics.margins")


def classify_margin(margin_percentage: float) -> MarginBand:
    """Band a margin rate: <0, [0,10), [10,20), [20,35], >35."""
    if margin_percentage < 0:
        return MarginBand.NEGATIVE
    if margin_percentage < 10:
        return MarginBand.LOW
    if margin_percentage < 20:
        return MarginBand.MEDIUM
    if margin_percentage <= 35:
        return MarginBand.GOOD
    return MarginBand.EXCELLENT


def compute_margin(
    price_with_tax: float | None,
    vat_rate: float | None,
    weighted_average_price: float | None,
) -> MarginBreakdown:
    """Margin of one unit sold at ``price_with_tax``.

    Missing inputs count as 0.
    """
    price_with_tax = price_with_tax or 0.0
    vat_rate = vat_rate or 0.0
    wap = weighted_average_price or 0.0

    divisor = 1 + vat_rate / 100
    price_ex_vat = price_with_tax / divisor if divisor > 0 else 0.0
    margin_amount = round_half_up(price_ex_vat - wap, 2)
    margin_percentage = (
        round_half_up(margin_amount / wap * 100, 2) if wap > 0 else 0.0
    )

    return MarginBreakdown(
        price_ex_vat=round_half_up(price_ex_vat, 2),
        margin_amount=margin_amount,
        margin_percentage=margin_percentage,
        band=classify_margin(margin_percentage),
    )


def margin_for_snapshot(
    item: CatalogedProduct,
    snapshot: InventorySnapshot,
) -> MarginBreakdown:
    return compute_margin(
        snapshot.price_with_tax,
        item.product.vat_rate,
        snapshot.weighted_average_price,
    )


async def product_margins(
    source: DataSource,
    query: AnalyticsQuery,
) -> list[ProductMargin]:
    """Margin of every selected product at the end of ``query``.

    Each product is valued at its latest snapshot on or before
    ``query.end``; products with no snapshot yet are skipped. Without any
    pharmacy or product filter only products in stock are reported.
    ``total_sales`` counts units sold within the query range.

    Returns:
        ProductMargin rows, lowest margin rate first.
    """
    items = await source.fetch_products(query.filters)
    by_id = {item.id: item for item in items}
    snapshots = await resolve_snapshots(source, list(by_id), query.end)
    sales = await source.fetch_sales(query.filters, query.start, query.end)

    units_sold: dict[str, float] = defaultdict(float)
    for row in sales:
        units_sold[row.snapshot.product_id] += row.sale.quantity

    in_stock_only = query.filters.is_unfiltered
    margins: list[ProductMargin] = []
    for product_id, snap in snapshots.items():
        if in_stock_only and snap.stock <= 0:
            continue
        item = by_id[product_id]
        breakdown = margin_for_snapshot(item, snap)
        catalog = item.catalog
        margins.append(
            ProductMargin(
                product_id=product_id,
                code_13_ref=item.code_13_ref,
                display_name=item.display_name,
                category=catalog.category if catalog else None,
                brand_lab=catalog.brand_lab if catalog else None,
                current_stock=snap.stock,
                price_with_tax=snap.price_with_tax,
                weighted_average_price=snap.weighted_average_price,
                vat_rate=item.product.vat_rate,
                price_ex_vat=breakdown.price_ex_vat,
                margin_amount=breakdown.margin_amount,
                margin_percentage=breakdown.margin_percentage,
                band=breakdown.band,
                total_sales=units_sold.get(product_id, 0.0),
            )
        )

    margins.sort(key=lambda m: (m.margin_percentage, m.product_id))
    logger.info(
        "Computed margins for %d products as of %s", len(margins), query.end
    )
    return margins


def summarize_margins(margins: list[ProductMargin]) -> MarginSummary:
    """Count products per margin band."""
    counts = {band: 0 for band in MarginBand}
    for m in margins:
        counts[m.band] += 1
    average = (
        round_half_up(sum(m.margin_percentage for m in margins) / len(margins), 2)
        if margins
        else 0.0
    )
    return MarginSummary(
        product_count=len(margins),
        band_counts=counts,
        average_margin_percentage=average,
    )
