"""Tests for the segment aggregator."""

import pytest
from conftest import (
    CODE_A,
    CODE_B,
    CODE_C,
    make_catalog,
    make_line,
    make_order,
    make_product,
    make_sale,
    make_snapshot,
)
from pharma_analytics.data_source import InMemoryDataSource
from pharma_analytics.errors import InvalidArgument, UnknownSegment
from pharma_analytics.filters import build_query
from pharma_analytics.models import MetricSource, SegmentDimension
from pharma_analytics.segments import (
    aggregate_segments,
    aggregate_sell_in,
    aggregate_sell_out,
    aggregate_stock,
)


def _three_universe_source() -> InMemoryDataSource:
    """Revenues 100, 100, 100: each share is 33.33 once rounded."""
    return InMemoryDataSource(
        products=[
            make_product("p-1", code=CODE_A),
            make_product("p-2", code=CODE_B),
            make_product("p-3", code=CODE_C),
        ],
        catalog=[
            make_catalog(CODE_A, universe="OTC"),
            make_catalog(CODE_B, universe="Dermo"),
            make_catalog(CODE_C, universe="Baby"),
        ],
        snapshots=[
            make_snapshot(1, "p-1", "2024-01-01", stock=1, wap=1, pwt=10),
            make_snapshot(2, "p-2", "2024-01-01", stock=1, wap=1, pwt=10),
            make_snapshot(3, "p-3", "2024-01-01", stock=1, wap=1, pwt=10),
        ],
        sales=[
            make_sale(1, 1, "2024-01-05", 10),
            make_sale(2, 2, "2024-01-05", 10),
            make_sale(3, 3, "2024-01-05", 10),
        ],
    )


class TestSellOut:
    @pytest.mark.asyncio
    async def test_otc_scenario(self, otc_source):
        query = build_query("2024-01-01", "2024-01-31", pharmacy_ids=["ph-1"])
        result = await aggregate_segments(otc_source, query, "universe", "sales")

        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.segment == "OTC"
        assert row.total_revenue == 150.0
        assert row.total_margin == 30.0
        assert row.margin_percentage == 20.0
        assert row.revenue_percentage == 100.0
        assert row.total_quantity == 20.0
        assert row.product_count == 2

    @pytest.mark.asyncio
    async def test_all_pharmacies(self, otc_source):
        query = build_query("2024-01-01", "2024-01-31")
        result = await aggregate_sell_out(otc_source, query, SegmentDimension.UNIVERSE)
        assert result.get("OTC").total_revenue == 198.0  # 150 + 4 x 12
        assert result.product_count == 3

    @pytest.mark.asyncio
    async def test_product_code_filter(self, otc_source):
        query = build_query("2024-01-01", "2024-01-31", product_codes=[CODE_B])
        result = await aggregate_sell_out(otc_source, query, "brand_lab")
        assert [r.segment for r in result.rows] == ["LabTwo"]
        assert result.total_revenue == 50.0

    @pytest.mark.asyncio
    async def test_sales_outside_range_excluded(self, otc_source):
        query = build_query("2024-01-11", "2024-01-31", pharmacy_ids=["ph-1"])
        result = await aggregate_sell_out(otc_source, query, "universe")
        assert result.total_revenue == 50.0

    @pytest.mark.asyncio
    async def test_revenue_shares_add_up(self):
        query = build_query("2024-01-01", "2024-01-31")
        result = await aggregate_sell_out(_three_universe_source(), query, "universe")
        shares = [r.revenue_percentage for r in result.rows]
        assert shares == [33.33, 33.33, 33.33]
        assert sum(shares) == pytest.approx(100.0, abs=0.1)

    @pytest.mark.asyncio
    async def test_rows_sorted_by_revenue_then_name(self):
        query = build_query("2024-01-01", "2024-01-31")
        result = await aggregate_sell_out(_three_universe_source(), query, "universe")
        assert [r.segment for r in result.rows] == ["Baby", "Dermo", "OTC"]

    @pytest.mark.asyncio
    async def test_margin_deducts_vat_on_cost(self):
        source = InMemoryDataSource(
            products=[make_product("p-1", vat_rate=10.0)],
            catalog=[make_catalog(CODE_A, category="Vitamins")],
            snapshots=[make_snapshot(1, "p-1", "2024-01-01", stock=1, wap=10, pwt=15)],
            sales=[make_sale(1, 1, "2024-01-02", 2)],
        )
        result = await aggregate_sell_out(
            source, build_query("2024-01-01", "2024-01-31"), "category"
        )
        # 2 x (15 - 10 x 1.1)
        assert result.rows[0].total_margin == 8.0
        assert result.rows[0].margin_percentage == pytest.approx(26.67)


class TestUncategorized:
    @pytest.mark.asyncio
    async def test_missing_catalog_and_missing_value(self):
        source = InMemoryDataSource(
            products=[
                make_product("p-1", code=CODE_A),
                make_product("p-2", code=None, name="Compounded cream"),
                make_product("p-3", code=CODE_B),
            ],
            catalog=[
                make_catalog(CODE_A, category="Pain"),
                make_catalog(CODE_B, category=None),
            ],
            snapshots=[
                make_snapshot(1, "p-1", "2024-01-01", pwt=10),
                make_snapshot(2, "p-2", "2024-01-01", pwt=10),
                make_snapshot(3, "p-3", "2024-01-01", pwt=10),
            ],
            sales=[
                make_sale(1, 1, "2024-01-02", 1),
                make_sale(2, 2, "2024-01-02", 1),
                make_sale(3, 3, "2024-01-02", 1),
            ],
        )
        result = await aggregate_sell_out(
            source, build_query("2024-01-01", "2024-01-31"), "category"
        )
        assert result.get("Uncategorized").product_count == 2
        assert result.get("Pain").product_count == 1
        assert all(r.segment for r in result.rows)

    @pytest.mark.asyncio
    async def test_custom_label(self):
        source = InMemoryDataSource(
            products=[make_product("p-1", code=None)],
            snapshots=[make_snapshot(1, "p-1", "2024-01-01", pwt=10)],
            sales=[make_sale(1, 1, "2024-01-02", 1)],
        )
        result = await aggregate_segments(
            source,
            build_query("2024-01-01", "2024-01-31"),
            "family",
            uncategorized="Other",
        )
        assert [r.segment for r in result.rows] == ["Other"]


class TestStockAndSellIn:
    @pytest.mark.asyncio
    async def test_stock_valued_at_end_date(self):
        source = InMemoryDataSource(
            products=[
                make_product("p-1", code=CODE_A),
                make_product("p-2", code=CODE_B),
            ],
            catalog=[
                make_catalog(CODE_A, universe="OTC"),
                make_catalog(CODE_B, universe="OTC"),
            ],
            snapshots=[
                make_snapshot(1, "p-1", "2024-01-01", stock=5, wap=8, pwt=10),
                make_snapshot(2, "p-1", "2024-02-15", stock=50, wap=8, pwt=10),
                make_snapshot(3, "p-2", "2024-01-01", stock=3, wap=4, pwt=5),
                make_snapshot(4, "p-2", "2024-01-20", stock=0, wap=4, pwt=5),
            ],
        )
        result = await aggregate_stock(
            source, build_query("2024-01-01", "2024-01-31"), "universe"
        )
        row = result.get("OTC")
        assert row.total_quantity == 5
        assert row.total_revenue == 40.0
        assert row.product_count == 1

    @pytest.mark.asyncio
    async def test_sell_in_uses_cost_at_sent_date(self):
        source = InMemoryDataSource(
            products=[make_product("p-1", code=CODE_A)],
            catalog=[make_catalog(CODE_A, brand_lab="LabOne")],
            snapshots=[
                make_snapshot(1, "p-1", "2024-01-01", wap=4, pwt=6),
                make_snapshot(2, "p-1", "2024-01-20", wap=5, pwt=6),
            ],
            orders=[make_order("o-1", "2024-01-10"), make_order("o-2", "2024-01-25")],
            order_lines=[
                make_line(1, "o-1", "p-1", ordered=10, received=10),
                make_line(2, "o-2", "p-1", ordered=2, received=2),
            ],
        )
        result = await aggregate_sell_in(
            source, build_query("2024-01-01", "2024-01-31"), "brand_lab"
        )
        row = result.get("LabOne")
        assert row.total_quantity == 12
        assert row.total_revenue == 50.0  # 10 x 4 + 2 x 5

    @pytest.mark.asyncio
    async def test_metric_aliases(self, otc_source):
        query = build_query("2024-01-01", "2024-01-31")
        result = await aggregate_segments(otc_source, query, "universe", "sell-in")
        assert result.metric == MetricSource.SELL_IN
        assert result.is_empty


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_dimension_rejected_before_data_access(self, exploding_source):
        query = build_query("2024-01-01", "2024-01-31")
        with pytest.raises(UnknownSegment) as exc_info:
            await aggregate_segments(exploding_source, query, "universe; DROP TABLE")
        assert exc_info.value.field == "dimension"
        assert "universe" in exc_info.value.allowed
        assert isinstance(exc_info.value, InvalidArgument)

    @pytest.mark.asyncio
    async def test_unknown_metric_rejected(self, exploding_source):
        query = build_query("2024-01-01", "2024-01-31")
        with pytest.raises(InvalidArgument):
            await aggregate_segments(exploding_source, query, "universe", "returns")

    @pytest.mark.asyncio
    async def test_empty_range_gives_empty_result(self, otc_source):
        query = build_query("2023-01-01", "2023-01-31")
        result = await aggregate_sell_out(otc_source, query, "universe")
        assert result.is_empty
        assert result.total_revenue == 0.0
        assert result.margin_percentage == 0.0
