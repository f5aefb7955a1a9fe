"""PostgREST-backed data source (production).

Reads the pharmacy tables through the Supabase PostgREST API with the
service role key. Requests are async (``httpx.AsyncClient``) so the
calling task can be cancelled mid-flight.

Tables:
    data_internalproduct   pharmacy-local products (FK code_13_ref_id)
    data_globalproduct     catalog / taxonomy
    data_inventorysnapshot stock and prices per product per date
    data_sales             sales, product_id references a snapshot row
    data_order             order headers
    data_productorder      order lines (qte ordered, qte_r received)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from datetime import date
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from .data_source import DataSource
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

logger = logging.getLogger("pharma_analytics.postgrest")

T = TypeVar("T")

_SNAPSHOT_COLUMNS = "id,product_id,date,stock,weighted_average_price,price_with_tax"

# Keep "in.(...)" filters well under common URL length limits
_IN_CHUNK = 200


def _in_filter(values: Iterable[str]) -> str:
    quoted = ",".join(f'"{v}"' for v in values)
    return f"in.({quoted})"


def _chunks(values: list[str], size: int = _IN_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def _snapshot_from_row(row: dict[str, Any]) -> InventorySnapshot:
    return InventorySnapshot(
        id=row["id"],
        product_id=str(row["product_id"]),
        date=str(row["date"])[:10],
        stock=row.get("stock"),
        weighted_average_price=row.get("weighted_average_price"),
        price_with_tax=row.get("price_with_tax"),
    )


def _product_from_row(row: dict[str, Any]) -> CatalogedProduct:
    product = Product(
        id=str(row["id"]),
        pharmacy_id=str(row["pharmacy_id"]),
        code_13_ref=row.get("code_13_ref_id"),
        vat_rate=row.get("TVA"),
        name=row.get("name") or "",
    )
    catalog_row = row.get("catalog")
    catalog = CatalogEntry.model_validate(catalog_row) if catalog_row else None
    return CatalogedProduct(product=product, catalog=catalog)


def _product_id(row: dict[str, Any]) -> str:
    return str(row["id"])


def _sale_from_row(row: dict[str, Any]) -> SaleRow:
    return SaleRow(
        sale=SaleEvent(
            id=row["id"],
            snapshot_id=row["product_id"],
            date=str(row["date"])[:10],
            quantity=row.get("quantity") or 0,
        ),
        snapshot=_snapshot_from_row(row["snapshot"]),
    )


def _order_line_from_row(row: dict[str, Any]) -> OrderLineRow:
    order = row["order"]
    return OrderLineRow(
        order=PurchaseOrder(
            id=str(order["id"]),
            pharmacy_id=str(order["pharmacy_id"]),
            sent_date=str(order["sent_date"])[:10],
        ),
        line=OrderLine(
            id=row["id"],
            order_id=str(row["order_id"]),
            product_id=str(row["product_id"]),
            ordered_quantity=row.get("qte"),
            received_quantity=row.get("qte_r"),
        ),
    )


class PostgrestDataSource(DataSource):
    """Read-only data source over the Supabase PostgREST API."""

    name = "postgrest"

    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        timeout: float = 15.0,
        page_size: int = 1000,
    ) -> None:
        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Accept": "application/json",
        }
        self._timeout = timeout
        self._page_size = page_size
        logger.info("PostgrestDataSource: initialized with %s", url)

    async def _select(
        self,
        client: httpx.AsyncClient,
        table: str,
        params: list[tuple[str, str]],
    ) -> list[dict[str, Any]]:
        """GET every page of ``table`` matching ``params``."""
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            page_params = params + [
                ("limit", str(self._page_size)),
                ("offset", str(offset)),
            ]
            try:
                resp = await client.get(f"{self._base_url}/{table}", params=page_params)
            except httpx.HTTPError as exc:
                logger.error("PostgrestDataSource: %s request failed: %s", table, exc)
                raise DataSourceUnavailable(
                    self.name, f"{table}: request failed: {exc}"
                ) from exc

            if resp.status_code != 200:
                logger.error(
                    "PostgrestDataSource: %s query failed (%s): %s",
                    table,
                    resp.status_code,
                    resp.text,
                )
                raise DataSourceUnavailable(
                    self.name, f"{table}: query failed ({resp.status_code})"
                )

            try:
                page = resp.json()
            except ValueError as exc:
                logger.error("PostgrestDataSource: %s returned invalid JSON: %s", table, exc)
                raise DataSourceUnavailable(
                    self.name, f"{table}: invalid response body"
                ) from exc
            if not isinstance(page, list):
                logger.error(
                    "PostgrestDataSource: %s returned %s, expected rows",
                    table,
                    type(page).__name__,
                )
                raise DataSourceUnavailable(
                    self.name, f"{table}: unexpected response shape"
                )
            rows.extend(page)
            if len(page) < self._page_size:
                return rows
            offset += self._page_size

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    def _decode(
        self,
        table: str,
        rows: list[dict[str, Any]],
        mapper: Callable[[dict[str, Any]], T],
    ) -> list[T]:
        """Map raw rows to records; a malformed row fails the whole read."""
        try:
            return [mapper(r) for r in rows]
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.error("PostgrestDataSource: malformed %s row: %s", table, exc)
            raise DataSourceUnavailable(
                self.name, f"{table}: malformed row"
            ) from exc

    async def _product_rows(
        self,
        client: httpx.AsyncClient,
        filters: RecordFilter,
    ) -> list[dict[str, Any]]:
        params = [
            ("select", "id,pharmacy_id,code_13_ref_id,TVA,name,catalog:data_globalproduct(*)"),
        ]
        if filters.pharmacy_ids:
            params.append(("pharmacy_id", _in_filter(sorted(filters.pharmacy_ids))))
        if filters.product_codes:
            params.append(("code_13_ref_id", _in_filter(sorted(filters.product_codes))))
        return await self._select(client, "data_internalproduct", params)

    async def fetch_products(self, filters: RecordFilter) -> list[CatalogedProduct]:
        async with self._client() as client:
            rows = await self._product_rows(client, filters)
        return self._decode("data_internalproduct", rows, _product_from_row)

    async def fetch_catalog(self, codes: Collection[str]) -> list[CatalogEntry]:
        rows: list[dict[str, Any]] = []
        async with self._client() as client:
            for chunk in _chunks(sorted(set(codes))):
                rows.extend(
                    await self._select(
                        client,
                        "data_globalproduct",
                        [("select", "*"), ("code_13_ref", _in_filter(chunk))],
                    )
                )
        return self._decode("data_globalproduct", rows, CatalogEntry.model_validate)

    async def fetch_snapshots(
        self,
        product_ids: Collection[str] | None = None,
        *,
        start: date | None = None,
        end: date | None = None,
    ) -> list[InventorySnapshot]:
        base: list[tuple[str, str]] = [("select", _SNAPSHOT_COLUMNS)]
        if start is not None:
            base.append(("date", f"gte.{start.isoformat()}"))
        if end is not None:
            base.append(("date", f"lte.{end.isoformat()}"))

        async with self._client() as client:
            if product_ids is None:
                rows = await self._select(client, "data_inventorysnapshot", base)
            else:
                rows = []
                for chunk in _chunks(sorted(product_ids)):
                    rows.extend(
                        await self._select(
                            client,
                            "data_inventorysnapshot",
                            base + [("product_id", _in_filter(chunk))],
                        )
                    )
        return self._decode("data_inventorysnapshot", rows, _snapshot_from_row)

    async def fetch_sales(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[SaleRow]:
        base = [
            (
                "select",
                f"id,product_id,date,quantity,"
                f"snapshot:data_inventorysnapshot!inner({_SNAPSHOT_COLUMNS})",
            ),
            ("date", f"gte.{start.isoformat()}"),
            ("date", f"lte.{end.isoformat()}"),
        ]
        async with self._client() as client:
            if filters.is_unfiltered:
                rows = await self._select(client, "data_sales", base)
            else:
                product_ids = self._decode(
                    "data_internalproduct",
                    await self._product_rows(client, filters),
                    _product_id,
                )
                rows = []
                for chunk in _chunks(sorted(product_ids)):
                    rows.extend(
                        await self._select(
                            client,
                            "data_sales",
                            base + [("snapshot.product_id", _in_filter(chunk))],
                        )
                    )

        return self._decode("data_sales", rows, _sale_from_row)

    async def fetch_order_lines(
        self,
        filters: RecordFilter,
        start: date,
        end: date,
    ) -> list[OrderLineRow]:
        base = [
            (
                "select",
                "id,order_id,product_id,qte,qte_r,"
                "order:data_order!inner(id,pharmacy_id,sent_date)",
            ),
            ("order.sent_date", f"gte.{start.isoformat()}"),
            ("order.sent_date", f"lte.{end.isoformat()}"),
        ]
        async with self._client() as client:
            if filters.is_unfiltered:
                rows = await self._select(client, "data_productorder", base)
            else:
                product_ids = self._decode(
                    "data_internalproduct",
                    await self._product_rows(client, filters),
                    _product_id,
                )
                rows = []
                for chunk in _chunks(sorted(product_ids)):
                    rows.extend(
                        await self._select(
                            client,
                            "data_productorder",
                            base + [("product_id", _in_filter(chunk))],
                        )
                    )

        return self._decode("data_productorder", rows, _order_line_from_row)
