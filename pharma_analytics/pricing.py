"""Price Positioning Classifier.

Compares each selected product's selling price with the population of all
instances sharing its EAN13 code, across every pharmacy:

    price_difference_percentage = (price - avg_price) / avg_price x 100

The population is never filtered: a pharmacy filter selects which
instances are reported, not which prices they are compared against.
Prices come from each product's latest snapshot on or before the end of
the query range.

Bands, asymmetric at the boundaries:
    veryLow   diff < -15
    low       -15 <= diff < -5
    average   -5 <= diff <= 5
    high      5 < diff <= 15
    veryHigh  diff > 15
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from .data_source import DataSource
from .filters import AnalyticsQuery, RecordFilter
from .models import CatalogedProduct
from .numeric import round_half_up
from .results import PriceBand, PricePosition, PricePositioning
from .snapshots import resolve_snapshots

logger = logging.getLogger("pharma_analytics.pricing")

VERY_LOW_BELOW = -15.0
LOW_BELOW = -5.0
AVERAGE_UP_TO = 5.0
HIGH_UP_TO = 15.0


def classify_price(difference_percentage: float) -> PriceBand:
    if difference_percentage < VERY_LOW_BELOW:
        return PriceBand.VERY_LOW
    if difference_percentage < LOW_BELOW:
        return PriceBand.LOW
    if difference_percentage <= AVERAGE_UP_TO:
        return PriceBand.AVERAGE
    if difference_percentage <= HIGH_UP_TO:
        return PriceBand.HIGH
    return PriceBand.VERY_HIGH


def price_difference(price: float, avg_price: float) -> float:
    """Signed deviation from the average in percent; 0 when there is no average.

    Unrounded: bands are decided on this value, only the reported
    percentage is rounded.
    """
    if avg_price == 0:
        return 0.0
    return (price - avg_price) / avg_price * 100


@dataclass(frozen=True)
class PriceStats:
    """Population statistics of one EAN13 code."""

    avg_price: float
    min_price: float
    max_price: float
    count: int

    @classmethod
    def of(cls, prices: list[float]) -> PriceStats:
        return cls(
            avg_price=sum(prices) / len(prices),
            min_price=min(prices),
            max_price=max(prices),
            count=len(prices),
        )


def _position(
    *,
    key: str,
    code: str,
    price: float,
    stats: PriceStats,
    display_name: str,
    brand_lab: str | None,
    category: str | None,
    pharmacy_id: str | None,
) -> PricePosition:
    diff = price_difference(price, stats.avg_price)
    return PricePosition(
        id=key,
        code_13_ref=code,
        display_name=display_name,
        brand_lab=brand_lab,
        category=category,
        pharmacy_id=pharmacy_id,
        price=round_half_up(price, 2),
        avg_price=round_half_up(stats.avg_price, 2),
        min_price=round_half_up(stats.min_price, 2),
        max_price=round_half_up(stats.max_price, 2),
        price_difference_percentage=round_half_up(diff, 2),
        band=classify_price(diff),
    )


async def price_positioning(
    source: DataSource,
    query: AnalyticsQuery,
    *,
    aggregate_by_code: bool = False,
) -> PricePositioning:
    """Band every selected product against its population price.

    With ``aggregate_by_code`` the selected instances sharing an EAN13 are
    averaged into a single row (keyed by the code) before banding.

    Every selected instance with a price lands in exactly one band.
    """
    population = [
        item
        for item in await source.fetch_products(RecordFilter())
        if item.catalog is not None and item.code_13_ref
    ]
    snapshots = await resolve_snapshots(
        source, [item.id for item in population], query.end
    )

    prices_by_code: dict[str, list[float]] = defaultdict(list)
    priced: list[tuple[CatalogedProduct, float]] = []
    for item in population:
        snap = snapshots.get(item.id)
        if snap is None:
            continue
        prices_by_code[item.code_13_ref].append(snap.price_with_tax)
        priced.append((item, snap.price_with_tax))
    stats = {code: PriceStats.of(p) for code, p in prices_by_code.items()}

    filters = query.filters
    selected = [
        (item, price)
        for item, price in priced
        if filters.matches(item.product.pharmacy_id, item.code_13_ref)
    ]

    if aggregate_by_code:
        positions = await _positions_by_code(source, selected, stats)
    else:
        positions = [
            _position(
                key=item.id,
                code=item.code_13_ref,
                price=price,
                stats=stats[item.code_13_ref],
                display_name=item.display_name,
                brand_lab=item.catalog.brand_lab,
                category=item.catalog.category,
                pharmacy_id=item.product.pharmacy_id,
            )
            for item, price in selected
        ]

    positions.sort(key=lambda p: (p.price_difference_percentage, p.id))
    result = PricePositioning(positions=positions)
    logger.info(
        "Positioned %d prices against %d codes as of %s: %s",
        len(positions),
        len(stats),
        query.end,
        {band.value: n for band, n in result.band_counts.items()},
    )
    return result


async def _positions_by_code(
    source: DataSource,
    selected: list[tuple[CatalogedProduct, float]],
    stats: dict[str, PriceStats],
) -> list[PricePosition]:
    grouped: dict[str, list[float]] = defaultdict(list)
    for item, price in selected:
        grouped[item.code_13_ref].append(price)
    catalog = {c.code_13_ref: c for c in await source.fetch_catalog(list(grouped))}

    positions: list[PricePosition] = []
    for code, prices in grouped.items():
        entry = catalog.get(code)
        positions.append(
            _position(
                key=code,
                code=code,
                price=sum(prices) / len(prices),
                stats=stats[code],
                display_name=entry.name if entry else "",
                brand_lab=entry.brand_lab if entry else None,
                category=entry.category if entry else None,
                pharmacy_id=None,
            )
        )
    return positions
