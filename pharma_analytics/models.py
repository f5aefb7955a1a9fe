"""Pydantic models for the read-only source records.

These mirror the pharmacy data store: pharmacy-local products, the global
catalog that carries the taxonomy, append-only inventory snapshots, sales
linked to the snapshot they were valued at, and purchase orders.

The core never mutates any of them; every model is frozen.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

UNCATEGORIZED = "Uncategorized"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SegmentDimension(str, Enum):
    """Taxonomy dimensions a segment aggregation can group by."""

    UNIVERSE = "universe"
    CATEGORY = "category"
    SUB_CATEGORY = "sub_category"
    BRAND_LAB = "brand_lab"
    LAB_DISTRIBUTOR = "lab_distributor"
    FAMILY = "family"
    SUB_FAMILY = "sub_family"
    RANGE_NAME = "range_name"
    SPECIFICITY = "specificity"

    @property
    def accessor(self) -> Callable[[CatalogEntry], str | None]:
        """Typed accessor reading this dimension from a catalog entry."""
        return _DIMENSION_ACCESSORS[self]


class MetricSource(str, Enum):
    """Record stream a metric is computed from."""

    SALES = "sales"
    STOCK = "stock"
    SELL_IN = "sell_in"


class Interval(str, Enum):
    """Calendar bucket size for time series."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# ---------------------------------------------------------------------------
# Source records
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Product(_Record):
    """A pharmacy-local product instance."""

    id: str
    pharmacy_id: str
    code_13_ref: str | None = None
    vat_rate: float = 0.0
    name: str = ""

    @field_validator("vat_rate", mode="before")
    @classmethod
    def _null_vat(cls, v):
        return 0.0 if v is None else v


class CatalogEntry(_Record):
    """Global product keyed by EAN13, carrying the taxonomy."""

    code_13_ref: str
    name: str = ""
    universe: str | None = None
    category: str | None = None
    sub_category: str | None = None
    family: str | None = None
    sub_family: str | None = None
    brand_lab: str | None = None
    lab_distributor: str | None = None
    range_name: str | None = None
    specificity: str | None = None


_DIMENSION_ACCESSORS: dict[SegmentDimension, Callable[[CatalogEntry], str | None]] = {
    SegmentDimension.UNIVERSE: lambda c: c.universe,
    SegmentDimension.CATEGORY: lambda c: c.category,
    SegmentDimension.SUB_CATEGORY: lambda c: c.sub_category,
    SegmentDimension.BRAND_LAB: lambda c: c.brand_lab,
    SegmentDimension.LAB_DISTRIBUTOR: lambda c: c.lab_distributor,
    SegmentDimension.FAMILY: lambda c: c.family,
    SegmentDimension.SUB_FAMILY: lambda c: c.sub_family,
    SegmentDimension.RANGE_NAME: lambda c: c.range_name,
    SegmentDimension.SPECIFICITY: lambda c: c.specificity,
}


class CatalogedProduct(_Record):
    """A product joined (left) to its catalog entry."""

    product: Product
    catalog: CatalogEntry | None = None

    @property
    def id(self) -> str:
        return self.product.id

    @property
    def code_13_ref(self) -> str | None:
        return self.product.code_13_ref

    @property
    def display_name(self) -> str:
        """Catalog name unless it is missing or the placeholder default."""
        if self.catalog and self.catalog.name and self.catalog.name != "Default Name":
            return self.catalog.name
        return self.product.name

    def segment(
        self,
        dimension: SegmentDimension,
        uncategorized: str = UNCATEGORIZED,
    ) -> str:
        """Segment key for ``dimension``; never empty."""
        if self.catalog is None:
            return uncategorized
        return dimension.accessor(self.catalog) or uncategorized


class InventorySnapshot(_Record):
    """Observed inventory state of one product on one date."""

    id: int
    product_id: str
    date: dt.date
    stock: float = 0.0
    weighted_average_price: float = 0.0
    price_with_tax: float = 0.0

    @field_validator("stock", "weighted_average_price", "price_with_tax", mode="before")
    @classmethod
    def _null_to_zero(cls, v):
        return 0.0 if v is None else v


class SaleEvent(_Record):
    """Units sold, linked to the snapshot row that valued the sale."""

    id: int
    snapshot_id: int
    date: dt.date
    quantity: float = 0.0


class PurchaseOrder(_Record):
    id: str
    pharmacy_id: str
    sent_date: dt.date


class OrderLine(_Record):
    id: int
    order_id: str
    product_id: str
    ordered_quantity: float = 0.0
    received_quantity: float = 0.0

    @field_validator("ordered_quantity", "received_quantity", mode="before")
    @classmethod
    def _null_to_zero(cls, v):
        return 0.0 if v is None else v

    @property
    def shortfall(self) -> float:
        """Units ordered but not delivered; only counted once delivery started."""
        if self.received_quantity > 0 and self.ordered_quantity > self.received_quantity:
            return self.ordered_quantity - self.received_quantity
        return 0.0

    @property
    def is_shortfall(self) -> bool:
        return self.shortfall > 0


# ---------------------------------------------------------------------------
# Joined rows returned by data sources
# ---------------------------------------------------------------------------


class SaleRow(_Record):
    """A sale with the snapshot it is valued at."""

    sale: SaleEvent
    snapshot: InventorySnapshot


class OrderLineRow(_Record):
    """An order line with its order header."""

    order: PurchaseOrder
    line: OrderLine
