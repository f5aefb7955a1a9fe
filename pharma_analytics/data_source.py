"""Data-access collaborator for the analytics core.

The core never opens connections itself: every engine receives a
``DataSource`` handle and pulls filtered, read-only record streams
through it.

Two implementations:
    - InMemoryDataSource   for tests, the CLI and embedding callers
    - PostgrestDataSource  for the production store (see postgrest_source.py)

Usage:
    source = create_data_source(get_settings())
    rows = await aggregate_sell_out(source, query, SegmentDimension.UNIVERSE)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Collection
from datetime import date
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import AnalyticsSettings
from .errors import DataSourceUnavailable
from .filters import RecordFilter
from .models import (
    CatalogedProduct,
    CatalogEntry,
    InventorySnapshot,
    OrderLine,
    OrderLineRow,
    Product,
    PurchaseOrder,
    SaleEvent,
    SaleRow,
)

logger = logging.getLogger("pharma_analytics.data_source")


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class DataSource(ABC):
    """Abstract read-only interface over the pharmacy data store.

    Every method is a coroutine so callers can cancel in-flight reads.
    Implementations raise ``DataSourceUnavailable`` when the store
    cannot answer; they never return partial data.
    """

    name: str = "data-source"

    @abstractmethod
    async def fetch_products(self, filters: RecordFilter) -> list[CatalogedProduct]:
        """Products matching the filters, left-joined to the catalog."""
        ...

    @abstractmethod
    async def fetch_catalog(self, codes: Collection[str]) -> list[CatalogEntry]:
        """Catalog entries for the given EAN13 codes; unknown codes are absent."""
        ...

    @abstractmethod
    async def fetch_snapshots(
        self,
        product_ids: Collection[str] | None = None,
        *,
        start: date | None = None,
        end: date | None = None,
    ) -> list[InventorySnapshot]:
        """Snapshots of the given products (None = all) within [start, end]."""
        ...

    @abstractmethod
    async def fetch_sales(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[SaleRow]:
        """Sales dated within [start, end] joined to their snapshot."""
        ...

    @abstractmethod
    async def fetch_order_lines(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[OrderLineRow]:
        """Lines of orders sent within [start, end]."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _in_range(d: date, start: date | None, end: date | None) -> bool:
    if start is not None and d < start:
        return False
    if end is not None and d > end:
        return False
    return True


class InMemoryDataSource(DataSource):
    """Data source over plain record lists."""

    name = "in-memory"

    def __init__(
        self,
        *,
        products: list[Product] | None = None,
        catalog: list[CatalogEntry] | None = None,
        snapshots: list[InventorySnapshot] | None = None,
        sales: list[SaleEvent] | None = None,
        orders: list[PurchaseOrder] | None = None,
        order_lines: list[OrderLine] | None = None,
    ) -> None:
        self._products: dict[str, Product] = {p.id: p for p in products or []}
        self._catalog: dict[str, CatalogEntry] = {
            c.code_13_ref: c for c in catalog or []
        }
        self._snapshots: list[InventorySnapshot] = list(snapshots or [])
        self._snapshots_by_id: dict[int, InventorySnapshot] = {
            s.id: s for s in self._snapshots
        }
        self._sales: list[SaleEvent] = list(sales or [])
        self._orders: dict[str, PurchaseOrder] = {o.id: o for o in orders or []}
        self._order_lines: list[OrderLine] = list(order_lines or [])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryDataSource:
        """Build from a dict of record lists (keys as in the JSON dataset)."""
        return cls(
            products=[Product.model_validate(r) for r in data.get("products", [])],
            catalog=[CatalogEntry.model_validate(r) for r in data.get("catalog", [])],
            snapshots=[
                InventorySnapshot.model_validate(r) for r in data.get("snapshots", [])
            ],
            sales=[SaleEvent.model_validate(r) for r in data.get("sales", [])],
            orders=[PurchaseOrder.model_validate(r) for r in data.get("orders", [])],
            order_lines=[
                OrderLine.model_validate(r) for r in data.get("order_lines", [])
            ],
        )

    @classmethod
    def from_json(cls, path: str | Path) -> InMemoryDataSource:
        """Load a JSON dataset file.

        Raises:
            DataSourceUnavailable: The file is missing, unreadable, or holds
                records that do not validate.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            source = cls.from_dict(data)
        except (OSError, ValueError, AttributeError, ValidationError) as exc:
            logger.error("InMemoryDataSource: cannot load %s: %s", path, exc)
            raise DataSourceUnavailable(
                cls.name, f"cannot load dataset {path}: {exc}"
            ) from exc
        logger.info(
            "InMemoryDataSource: loaded %d products, %d snapshots, %d sales from %s",
            len(source._products),
            len(source._snapshots),
            len(source._sales),
            path,
        )
        return source

    def _catalogued(self, product: Product) -> CatalogedProduct:
        catalog = (
            self._catalog.get(product.code_13_ref) if product.code_13_ref else None
        )
        return CatalogedProduct(product=product, catalog=catalog)

    def _matching_product_ids(self, filters: RecordFilter) -> set[str]:
        return {
            p.id
            for p in self._products.values()
            if filters.matches(p.pharmacy_id, p.code_13_ref)
        }

    async def fetch_products(self, filters: RecordFilter) -> list[CatalogedProduct]:
        return [
            self._catalogued(p)
            for p in self._products.values()
            if filters.matches(p.pharmacy_id, p.code_13_ref)
        ]

    async def fetch_catalog(self, codes: Collection[str]) -> list[CatalogEntry]:
        return [self._catalog[c] for c in sorted(set(codes)) if c in self._catalog]

    async def fetch_snapshots(
        self,
        product_ids: Collection[str] | None = None,
        *,
        start: date | None = None,
        end: date | None = None,
    ) -> list[InventorySnapshot]:
        wanted = set(product_ids) if product_ids is not None else None
        return [
            s
            for s in self._snapshots
            if (wanted is None or s.product_id in wanted)
            and _in_range(s.date, start, end)
        ]

    async def fetch_sales(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[SaleRow]:
        product_ids = self._matching_product_ids(filters)
        rows: list[SaleRow] = []
        for sale in self._sales:
            if not _in_range(sale.date, start, end):
                continue
            snapshot = self._snapshots_by_id.get(sale.snapshot_id)
            if snapshot is None:
                logger.debug(
                    "Sale %s references unknown snapshot %s, skipped",
                    sale.id,
                    sale.snapshot_id,
                )
                continue
            if snapshot.product_id in product_ids:
                rows.append(SaleRow(sale=sale, snapshot=snapshot))
        return rows

    async def fetch_order_lines(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[OrderLineRow]:
        product_ids = self._matching_product_ids(filters)
        rows: list[OrderLineRow] = []
        for line in self._order_lines:
            order = self._orders.get(line.order_id)
            if order is None or not _in_range(order.sent_date, start, end):
                continue
            if line.product_id in product_ids:
                rows.append(OrderLineRow(order=order, line=line))
        return rows


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_data_source(settings: AnalyticsSettings) -> DataSource:
    """Create a data source from settings.

    Returns PostgrestDataSource if URL and key are configured,
    InMemoryDataSource otherwise (loaded from ``dataset_path`` if set).
    """
    if settings.postgrest_url and settings.postgrest_service_key:
        from .postgrest_source import PostgrestDataSource

        logger.info("Using PostgREST data source at %s", settings.postgrest_url)
        return PostgrestDataSource(
            settings.postgrest_url,
            settings.postgrest_service_key,
            timeout=settings.request_timeout_seconds,
        )

    if settings.dataset_path:
        return InMemoryDataSource.from_json(settings.dataset_path)

    logger.info("Using empty in-memory data source")
    return InMemoryDataSource()
