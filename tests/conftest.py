"""Shared record builders and fixtures for the analytics tests."""

from datetime import date

import pytest
from pharma_analytics.data_source import DataSource, InMemoryDataSource
from pharma_analytics.models import (
    CatalogEntry,
    InventorySnapshot,
    OrderLine,
    Product,
    PurchaseOrder,
    SaleEvent,
)

CODE_A = "3400930000011"
CODE_B = "3400930000028"
CODE_C = "3400930000035"


# =============================================================================
# RECORD BUILDERS
# =============================================================================


def make_product(
    id: str,
    pharmacy_id: str = "ph-1",
    code: str | None = CODE_A,
    vat_rate: float = 0.0,
    name: str = "",
) -> Product:
    return Product(
        id=id,
        pharmacy_id=pharmacy_id,
        code_13_ref=code,
        vat_rate=vat_rate,
        name=name,
    )


def make_catalog(code: str, name: str = "", **taxonomy) -> CatalogEntry:
    return CatalogEntry(code_13_ref=code, name=name, **taxonomy)


def make_snapshot(
    id: int,
    product_id: str,
    day: str,
    stock: float = 0.0,
    wap: float = 0.0,
    pwt: float = 0.0,
) -> InventorySnapshot:
    return InventorySnapshot(
        id=id,
        product_id=product_id,
        date=date.fromisoformat(day),
        stock=stock,
        weighted_average_price=wap,
        price_with_tax=pwt,
    )


def make_sale(id: int, snapshot_id: int, day: str, quantity: float) -> SaleEvent:
    return SaleEvent(
        id=id,
        snapshot_id=snapshot_id,
        date=date.fromisoformat(day),
        quantity=quantity,
    )


def make_order(id: str, day: str, pharmacy_id: str = "ph-1") -> PurchaseOrder:
    return PurchaseOrder(id=id, pharmacy_id=pharmacy_id, sent_date=date.fromisoformat(day))


def make_line(
    id: int,
    order_id: str,
    product_id: str,
    ordered: float,
    received: float,
) -> OrderLine:
    return OrderLine(
        id=id,
        order_id=order_id,
        product_id=product_id,
        ordered_quantity=ordered,
        received_quantity=received,
    )


class ExplodingSource(DataSource):
    """Fails the test if any data access happens."""

    name = "exploding"

    async def fetch_products(self, filters):
        raise AssertionError("fetch_products must not be called")

    async def fetch_catalog(self, codes):
        raise AssertionError("fetch_catalog must not be called")

    async def fetch_snapshots(self, product_ids=None, *, start=None, end=None):
        raise AssertionError("fetch_snapshots must not be called")

    async def fetch_sales(self, filters, start, end):
        raise AssertionError("fetch_sales must not be called")

    async def fetch_order_lines(self, filters, start, end):
        raise AssertionError("fetch_order_lines must not be called")


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def exploding_source() -> ExplodingSource:
    return ExplodingSource()


@pytest.fixture
def otc_source() -> InMemoryDataSource:
    """Two OTC products sold at ph-1, plus one product at ph-2.

    At ph-1 in January 2024:
        A: 10 units at 10.00 (wap 8.00) -> revenue 100, margin 20
        B: 10 units at 5.00  (wap 4.00) -> revenue 50,  margin 10
    """
    return InMemoryDataSource(
        products=[
            make_product("p-a", "ph-1", CODE_A, name="Paracetamol 1g"),
            make_product("p-b", "ph-1", CODE_B, name="Ibuprofen 400"),
            make_product("p-c", "ph-2", CODE_A, name="Paracetamol 1g"),
        ],
        catalog=[
            make_catalog(
                CODE_A,
                "Paracetamol 1000mg",
                universe="OTC",
                category="Pain",
                brand_lab="LabOne",
            ),
            make_catalog(
                CODE_B,
                "Default Name",
                universe="OTC",
                category="Pain",
                brand_lab="LabTwo",
            ),
        ],
        snapshots=[
            make_snapshot(1, "p-a", "2024-01-01", stock=5, wap=8.0, pwt=10.0),
            make_snapshot(2, "p-b", "2024-01-01", stock=3, wap=4.0, pwt=5.0),
            make_snapshot(3, "p-c", "2024-01-01", stock=1, wap=8.0, pwt=12.0),
        ],
        sales=[
            make_sale(1, 1, "2024-01-10", 10),
            make_sale(2, 2, "2024-01-12", 10),
            make_sale(3, 3, "2024-01-10", 4),
        ],
    )
