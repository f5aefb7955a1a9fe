"""Pharmacy Retail Analytics Core.

Read-only analytics over a network of pharmacies: sell-out, stock and
sell-in aggregated by product taxonomy, time series with supply
ruptures, period-over-period comparisons, margins, price positioning
and inventory reports.

Every engine is a coroutine that takes an explicit ``DataSource`` and a
validated ``AnalyticsQuery``.

Usage:
    from pharma_analytics import (
        InMemoryDataSource, build_query, aggregate_segments,
    )

    source = InMemoryDataSource.from_json("dataset.json")
    query = build_query("2024-01-01", "2024-03-31", pharmacy_ids=["ph-1"])
    result = await aggregate_segments(source, query, "universe", "sales")
    for row in result.rows:
        print(row.segment, row.total_revenue, row.revenue_percentage)
"""

from .comparison import (
    classify_evolution,
    compare_evolution,
    compare_products,
    compare_segments,
    compare_to_group,
)
from .config import AnalyticsSettings, get_settings
from .data_source import DataSource, InMemoryDataSource, create_data_source
from .errors import (
    AnalyticsError,
    DataSourceUnavailable,
    InvalidArgument,
    UnknownSegment,
)
from .evolution import bucket_label, bucket_start, evolution
from .filters import AnalyticsQuery, RecordFilter, build_query
from .inventory import shortfall_summary, stock_months, valuation
from .margins import classify_margin, compute_margin, product_margins, summarize_margins
from .models import (
    UNCATEGORIZED,
    CatalogedProduct,
    CatalogEntry,
    Interval,
    InventorySnapshot,
    MetricSource,
    OrderLine,
    Product,
    PurchaseOrder,
    SaleEvent,
    SegmentDimension,
)
from .pricing import classify_price, price_positioning
from .results import (
    EvolutionBand,
    EvolutionComparison,
    EvolutionPoint,
    EvolutionSeries,
    GroupComparison,
    InventoryValuation,
    MarginBand,
    PriceBand,
    PricePosition,
    PricePositioning,
    ProductComparison,
    ProductMargin,
    SegmentAggregation,
    SegmentComparison,
    SegmentRow,
    ShortfallSummary,
    StockCoverage,
)
from .segments import (
    aggregate_segments,
    aggregate_sell_in,
    aggregate_sell_out,
    aggregate_stock,
)
from .snapshots import SnapshotIndex, resolve_snapshot, resolve_snapshots

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "AnalyticsSettings",
    "get_settings",
    # Data access
    "DataSource",
    "InMemoryDataSource",
    "create_data_source",
    # Errors
    "AnalyticsError",
    "DataSourceUnavailable",
    "InvalidArgument",
    "UnknownSegment",
    # Records
    "UNCATEGORIZED",
    "CatalogedProduct",
    "CatalogEntry",
    "Interval",
    "InventorySnapshot",
    "MetricSource",
    "OrderLine",
    "Product",
    "PurchaseOrder",
    "SaleEvent",
    "SegmentDimension",
    # Queries
    "AnalyticsQuery",
    "RecordFilter",
    "build_query",
    # Snapshot resolution
    "SnapshotIndex",
    "resolve_snapshot",
    "resolve_snapshots",
    # Segments
    "aggregate_segments",
    "aggregate_sell_in",
    "aggregate_sell_out",
    "aggregate_stock",
    "SegmentAggregation",
    "SegmentRow",
    # Evolution
    "bucket_label",
    "bucket_start",
    "evolution",
    "EvolutionPoint",
    "EvolutionSeries",
    # Comparison
    "classify_evolution",
    "compare_evolution",
    "compare_products",
    "compare_segments",
    "compare_to_group",
    "EvolutionBand",
    "EvolutionComparison",
    "GroupComparison",
    "ProductComparison",
    "SegmentComparison",
    # Margins
    "classify_margin",
    "compute_margin",
    "product_margins",
    "summarize_margins",
    "MarginBand",
    "ProductMargin",
    # Prices
    "classify_price",
    "price_positioning",
    "PriceBand",
    "PricePosition",
    "PricePositioning",
    # Inventory
    "shortfall_summary",
    "stock_months",
    "valuation",
    "InventoryValuation",
    "ShortfallSummary",
    "StockCoverage",
]
