"""Pydantic result models returned by the analytics engines.

All monetary and percentage fields are already rounded when a result is
built; callers can serialize them with ``model_dump()`` as-is.
"""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel, Field

from .models import Interval, MetricSource, SegmentDimension

# ---------------------------------------------------------------------------
# Classification bands
# ---------------------------------------------------------------------------


class MarginBand(str, Enum):
    """Margin percentage bands."""

    NEGATIVE = "negative"  # < 0
    LOW = "low"  # [0, 10)
    MEDIUM = "medium"  # [10, 20)
    GOOD = "good"  # [20, 35]
    EXCELLENT = "excellent"  # > 35


class PriceBand(str, Enum):
    """Deviation from the population average price.

    The bands are asymmetric: -15 and -5 fall on the lower side's
    upper band, while 5 and 15 fall on the upper side's lower band.
    """

    VERY_LOW = "veryLow"  # (-inf, -15)
    LOW = "low"  # [-15, -5)
    AVERAGE = "average"  # [-5, 5]
    HIGH = "high"  # (5, 15]
    VERY_HIGH = "veryHigh"  # (15, +inf)


class EvolutionBand(str, Enum):
    """Period-over-period revenue evolution bands."""

    STRONG_DECREASE = "strongDecrease"  # < -15
    SLIGHT_DECREASE = "slightDecrease"  # [-15, -5)
    STABLE = "stable"  # [-5, 5]
    SLIGHT_INCREASE = "slightIncrease"  # (5, 15]
    STRONG_INCREASE = "strongIncrease"  # > 15


# ---------------------------------------------------------------------------
# Segment aggregation
# ---------------------------------------------------------------------------


class SegmentRow(BaseModel):
    """Roll-up of one segment value."""

    segment: str
    total_revenue: float
    total_margin: float
    margin_percentage: float
    total_quantity: float
    product_count: int
    revenue_percentage: float


class SegmentAggregation(BaseModel):
    """One row per segment, descending by revenue."""

    metric: MetricSource
    dimension: SegmentDimension
    start: date
    end: date
    pharmacy_ids: list[str] = Field(default_factory=list)
    product_codes: list[str] = Field(default_factory=list)
    rows: list[SegmentRow] = Field(default_factory=list)
    total_revenue: float = 0.0
    total_margin: float = 0.0
    margin_percentage: float = 0.0
    total_quantity: float = 0.0
    product_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def get(self, segment: str) -> SegmentRow | None:
        return next((r for r in self.rows if r.segment == segment), None)


# ---------------------------------------------------------------------------
# Evolution
# ---------------------------------------------------------------------------


class EvolutionPoint(BaseModel):
    """Metric value of one time bucket."""

    period: str
    period_start: date
    value: float
    quantity: float = 0.0
    # Sales only; 0 for the stock and sell-in metrics
    margin: float = 0.0
    margin_percentage: float = 0.0
    rupture_quantity: float = 0.0
    is_rupture: bool = False


class EvolutionSeries(BaseModel):
    """Buckets ascending chronologically."""

    metric: MetricSource
    interval: Interval
    start: date
    end: date
    points: list[EvolutionPoint] = Field(default_factory=list)

    @property
    def total_value(self) -> float:
        return sum(p.value for p in self.points)

    @property
    def rupture_periods(self) -> list[str]:
        return [p.period for p in self.points if p.is_rupture]


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


class SegmentComparisonRow(BaseModel):
    """One segment across the current and comparison periods."""

    segment: str
    current_revenue: float = 0.0
    previous_revenue: float = 0.0
    evolution_percentage: float = 0.0
    current_margin: float = 0.0
    previous_margin: float = 0.0
    margin_evolution_percentage: float = 0.0
    current_quantity: float = 0.0
    previous_quantity: float = 0.0
    current_revenue_percentage: float = 0.0
    previous_revenue_percentage: float = 0.0


class SegmentComparison(BaseModel):
    metric: MetricSource
    dimension: SegmentDimension
    current: SegmentAggregation
    previous: SegmentAggregation
    rows: list[SegmentComparisonRow] = Field(default_factory=list)
    evolution_percentage: float = 0.0
    margin_evolution_percentage: float = 0.0


class EvolutionComparisonPoint(BaseModel):
    """Bucket i of the current period against bucket i of the comparison period."""

    index: int
    current_period: str | None = None
    previous_period: str | None = None
    current_value: float = 0.0
    previous_value: float = 0.0
    evolution_percentage: float = 0.0
    current_is_rupture: bool = False
    previous_is_rupture: bool = False


class EvolutionComparison(BaseModel):
    metric: MetricSource
    interval: Interval
    current: EvolutionSeries
    previous: EvolutionSeries
    points: list[EvolutionComparisonPoint] = Field(default_factory=list)
    evolution_percentage: float = 0.0


class ProductEvolution(BaseModel):
    """Sell-out of one product across both periods."""

    product_id: str
    code_13_ref: str | None = None
    display_name: str = ""
    category: str | None = None
    brand_lab: str | None = None
    current_stock: float = 0.0
    current_revenue: float = 0.0
    previous_revenue: float = 0.0
    current_margin: float = 0.0
    previous_margin: float = 0.0
    evolution_percentage: float = 0.0
    margin_evolution_percentage: float = 0.0
    band: EvolutionBand = EvolutionBand.STABLE


class GlobalComparison(BaseModel):
    current_period_revenue: float = 0.0
    previous_period_revenue: float = 0.0
    evolution_percentage: float = 0.0
    current_period_margin: float = 0.0
    previous_period_margin: float = 0.0
    margin_evolution_percentage: float = 0.0


class ProductComparison(BaseModel):
    products: list[ProductEvolution] = Field(default_factory=list)
    global_comparison: GlobalComparison = Field(default_factory=GlobalComparison)

    def in_band(self, band: EvolutionBand) -> list[ProductEvolution]:
        return [p for p in self.products if p.band == band]

    @property
    def band_counts(self) -> dict[EvolutionBand, int]:
        return {band: len(self.in_band(band)) for band in EvolutionBand}


class PharmacyKpis(BaseModel):
    """Headline figures of one pharmacy, or the per-pharmacy network average."""

    sell_out: float = 0.0
    margin: float = 0.0
    margin_percentage: float = 0.0
    references_count: float = 0.0
    sell_in: float = 0.0
    stock_value: float = 0.0
    previous_sell_out: float = 0.0
    evolution_percentage: float = 0.0


class GroupComparison(BaseModel):
    """One pharmacy against the average pharmacy of the network."""

    pharmacy_id: str
    start: date
    end: date
    comparison_start: date
    comparison_end: date
    product_codes: list[str] = Field(default_factory=list)
    pharmacy_count: int = 0
    pharmacy: PharmacyKpis = Field(default_factory=PharmacyKpis)
    group: PharmacyKpis = Field(default_factory=PharmacyKpis)


# ---------------------------------------------------------------------------
# Margins
# ---------------------------------------------------------------------------


class MarginBreakdown(BaseModel):
    price_ex_vat: float
    margin_amount: float
    margin_percentage: float
    band: MarginBand


class ProductMargin(BaseModel):
    product_id: str
    code_13_ref: str | None = None
    display_name: str = ""
    category: str | None = None
    brand_lab: str | None = None
    current_stock: float = 0.0
    price_with_tax: float = 0.0
    weighted_average_price: float = 0.0
    vat_rate: float = 0.0
    price_ex_vat: float = 0.0
    margin_amount: float = 0.0
    margin_percentage: float = 0.0
    band: MarginBand = MarginBand.LOW
    total_sales: float = 0.0


class MarginSummary(BaseModel):
    product_count: int = 0
    band_counts: dict[MarginBand, int] = Field(default_factory=dict)
    average_margin_percentage: float = 0.0


# ---------------------------------------------------------------------------
# Price positioning
# ---------------------------------------------------------------------------


class PricePosition(BaseModel):
    """A selected instance (or EAN group) against the population price."""

    id: str
    code_13_ref: str
    display_name: str = ""
    brand_lab: str | None = None
    category: str | None = None
    pharmacy_id: str | None = None
    price: float
    avg_price: float
    min_price: float
    max_price: float
    price_difference_percentage: float
    band: PriceBand


class PricePositioning(BaseModel):
    positions: list[PricePosition] = Field(default_factory=list)

    def in_band(self, band: PriceBand) -> list[PricePosition]:
        return [p for p in self.positions if p.band == band]

    @property
    def very_low(self) -> list[PricePosition]:
        return self.in_band(PriceBand.VERY_LOW)

    @property
    def low(self) -> list[PricePosition]:
        return self.in_band(PriceBand.LOW)

    @property
    def average(self) -> list[PricePosition]:
        return self.in_band(PriceBand.AVERAGE)

    @property
    def high(self) -> list[PricePosition]:
        return self.in_band(PriceBand.HIGH)

    @property
    def very_high(self) -> list[PricePosition]:
        return self.in_band(PriceBand.VERY_HIGH)

    @property
    def band_counts(self) -> dict[PriceBand, int]:
        return {band: len(self.in_band(band)) for band in PriceBand}


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class InventoryValuation(BaseModel):
    as_of: date
    total_stock_value: float = 0.0
    total_units: float = 0.0
    product_count: int = 0


class StockCoverage(BaseModel):
    """Months of stock at the current sales pace."""

    id: str
    code_13_ref: str | None = None
    display_name: str = ""
    category: str | None = None
    brand_lab: str | None = None
    current_stock: float
    avg_monthly_sales: float
    stock_months: float


class ShortfallSummary(BaseModel):
    start: date
    end: date
    total_quantity: float = 0.0
    total_value: float = 0.0
    line_count: int = 0
