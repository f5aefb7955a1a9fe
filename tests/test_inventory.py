"""Tests for inventory valuation, stock coverage and shortfall reports."""

from datetime import date

import pytest
from conftest import (
    CODE_A,
    CODE_B,
    make_catalog,
    make_line,
    make_order,
    make_product,
    make_sale,
    make_snapshot,
)
from pharma_analytics.data_source import InMemoryDataSource
from pharma_analytics.filters import build_query
from pharma_analytics.inventory import (
    OVERSTOCK_MONTHS,
    months_before,
    shortfall_summary,
    stock_months,
    valuation,
)


def _stock_source() -> InMemoryDataSource:
    """As of 2024-03-31:

    p-1: 30 in stock, 45 sold Jan-Mar        -> 2.0 months
    p-2: 10 in stock, nothing sold            -> overstock
    p-3: out of stock                         -> not listed
    p-4: 6 in stock, 9 sold (shares p-1 code) -> 2.0 months
    """
    return InMemoryDataSource(
        products=[
            make_product("p-1", "ph-1", CODE_A),
            make_product("p-2", "ph-1", CODE_B),
            make_product("p-3", "ph-1", CODE_B),
            make_product("p-4", "ph-2", CODE_A),
        ],
        catalog=[
            make_catalog(CODE_A, "Paracetamol", category="Pain"),
            make_catalog(CODE_B, "Bandage", category="First aid"),
        ],
        snapshots=[
            make_snapshot(1, "p-1", "2024-01-01", stock=75, wap=2, pwt=3),
            make_snapshot(2, "p-1", "2024-03-30", stock=30, wap=2, pwt=3),
            make_snapshot(3, "p-2", "2024-01-01", stock=10, wap=5, pwt=8),
            make_snapshot(4, "p-3", "2024-01-01", stock=0, wap=5, pwt=8),
            make_snapshot(5, "p-4", "2024-02-01", stock=6, wap=2, pwt=3),
        ],
        sales=[
            # Before the lookback window
            make_sale(1, 1, "2023-12-20", 100),
            make_sale(2, 1, "2024-01-01", 20),
            make_sale(3, 1, "2024-02-15", 25),
            make_sale(4, 5, "2024-03-10", 9),
        ],
        orders=[make_order("o-1", "2024-03-05"), make_order("o-2", "2024-03-06")],
        order_lines=[
            make_line(1, "o-1", "p-1", ordered=10, received=6),
            make_line(2, "o-1", "p-2", ordered=5, received=0),
            make_line(3, "o-2", "p-2", ordered=4, received=3),
            make_line(4, "o-2", "p-1", ordered=2, received=2),
        ],
    )


class TestMonthsBefore:
    def test_plain(self):
        assert months_before(date(2024, 3, 31), 3) == date(2023, 12, 31)
        assert months_before(date(2024, 1, 15), 1) == date(2023, 12, 15)

    def test_clamped_to_month_end(self):
        assert months_before(date(2024, 5, 31), 3) == date(2024, 2, 29)
        assert months_before(date(2023, 3, 31), 1) == date(2023, 2, 28)


class TestValuation:
    @pytest.mark.asyncio
    async def test_latest_snapshot_per_product(self):
        result = await valuation(_stock_source(), build_query("2024-03-31", "2024-03-31"))
        # 30 x 2 + 10 x 5 + 6 x 2
        assert result.total_stock_value == 122.0
        assert result.total_units == 46.0
        assert result.product_count == 3
        assert result.as_of == date(2024, 3, 31)

    @pytest.mark.asyncio
    async def test_earlier_date_and_filter(self):
        query = build_query("2024-01-15", "2024-01-15", pharmacy_ids=["ph-1"])
        result = await valuation(_stock_source(), query)
        # 75 x 2 + 10 x 5
        assert result.total_stock_value == 200.0
        assert result.product_count == 2

    @pytest.mark.asyncio
    async def test_no_data(self):
        result = await valuation(InMemoryDataSource(), build_query("2024-01-01", "2024-01-01"))
        assert result.total_stock_value == 0.0
        assert result.product_count == 0


class TestStockMonths:
    @pytest.mark.asyncio
    async def test_coverage_per_product(self):
        rows = await stock_months(_stock_source(), build_query("2024-03-31", "2024-03-31"))
        by_id = {r.id: r for r in rows}

        assert set(by_id) == {"p-1", "p-2", "p-4"}
        assert by_id["p-1"].avg_monthly_sales == 15.0
        assert by_id["p-1"].stock_months == 2.0
        assert by_id["p-2"].stock_months == OVERSTOCK_MONTHS
        assert by_id["p-4"].stock_months == 2.0
        assert by_id["p-1"].display_name == "Paracetamol"

    @pytest.mark.asyncio
    async def test_sorted_shortest_first(self):
        rows = await stock_months(_stock_source(), build_query("2024-03-31", "2024-03-31"))
        assert [r.id for r in rows] == ["p-1", "p-4", "p-2"]

    @pytest.mark.asyncio
    async def test_custom_lookback_and_overstock(self):
        rows = await stock_months(
            _stock_source(),
            build_query("2024-03-31", "2024-03-31", pharmacy_ids=["ph-1"]),
            lookback_months=1,
            overstock_months=120.0,
        )
        by_id = {r.id: r for r in rows}
        # No p-1 sales in March
        assert by_id["p-1"].stock_months == 120.0
        assert by_id["p-2"].stock_months == 120.0

    @pytest.mark.asyncio
    async def test_aggregate_by_code(self):
        rows = await stock_months(
            _stock_source(),
            build_query("2024-03-31", "2024-03-31"),
            aggregate_by_code=True,
        )
        by_code = {r.id: r for r in rows}
        assert by_code[CODE_A].current_stock == 36.0
        assert by_code[CODE_A].avg_monthly_sales == 18.0
        assert by_code[CODE_A].stock_months == 2.0
        assert by_code[CODE_B].current_stock == 10.0


class TestShortfallSummary:
    @pytest.mark.asyncio
    async def test_totals(self):
        result = await shortfall_summary(
            _stock_source(), build_query("2024-03-01", "2024-03-31")
        )
        # p-1: 4 x 3.00, p-2: 1 x 8.00; undelivered and complete lines ignored
        assert result.line_count == 2
        assert result.total_quantity == 5.0
        assert result.total_value == 20.0

    @pytest.mark.asyncio
    async def test_outside_range(self):
        result = await shortfall_summary(
            _stock_source(), build_query("2024-01-01", "2024-01-31")
        )
        assert result.line_count == 0
        assert result.total_value == 0.0
