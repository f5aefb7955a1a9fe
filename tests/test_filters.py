"""Tests for query validation and parameter parsing."""

from datetime import date, datetime

import pytest
from pharma_analytics.errors import InvalidArgument, UnknownSegment
from pharma_analytics.filters import (
    RecordFilter,
    build_query,
    parse_date,
    parse_dimension,
    parse_interval,
    parse_metric,
)
from pharma_analytics.models import Interval, MetricSource, SegmentDimension


class TestBuildQuery:
    def test_valid(self):
        query = build_query(
            "2024-01-01",
            date(2024, 1, 31),
            pharmacy_ids=["ph-1", " ph-2 ", ""],
            product_codes=["3400930000011"],
        )
        assert query.start == date(2024, 1, 1)
        assert query.end == date(2024, 1, 31)
        assert query.pharmacy_ids == frozenset({"ph-1", "ph-2"})
        assert query.filters.product_codes == frozenset({"3400930000011"})

    def test_single_day_range(self):
        query = build_query("2024-01-01", "2024-01-01")
        assert query.start == query.end

    def test_start_after_end(self):
        with pytest.raises(InvalidArgument) as exc_info:
            build_query("2024-02-01", "2024-01-01")
        assert exc_info.value.field == "start"

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing_end(self, value):
        with pytest.raises(InvalidArgument) as exc_info:
            build_query("2024-01-01", value)
        assert exc_info.value.field == "end"
        assert "required" in str(exc_info.value)

    def test_malformed(self):
        with pytest.raises(InvalidArgument):
            build_query("2024-13-01", "2024-12-31")

    def test_invalid_argument_is_value_error(self):
        with pytest.raises(ValueError):
            build_query("yesterday", "2024-12-31")

    def test_with_range_keeps_filters(self):
        query = build_query("2024-01-01", "2024-01-31", pharmacy_ids=["ph-1"])
        other = query.with_range("2023-12-01", "2023-12-31")
        assert other.pharmacy_ids == query.pharmacy_ids
        assert other.start == date(2023, 12, 1)

    def test_overlaps(self):
        jan = build_query("2024-01-01", "2024-01-31")
        assert jan.overlaps(build_query("2024-01-31", "2024-02-28"))
        assert not jan.overlaps(build_query("2024-02-01", "2024-02-28"))


class TestParseDate:
    def test_datetime_and_timestamp_strings(self):
        assert parse_date(datetime(2024, 1, 5, 13, 0), "start") == date(2024, 1, 5)
        assert parse_date("2024-01-05T13:00:00Z", "start") == date(2024, 1, 5)

    def test_unsupported_type(self):
        with pytest.raises(InvalidArgument):
            parse_date(20240105, "start")


class TestRecordFilter:
    def test_empty_matches_everything(self):
        f = RecordFilter()
        assert f.is_unfiltered
        assert f.matches("ph-9", None)

    def test_code_filter_excludes_uncoded_products(self):
        f = RecordFilter(product_codes=frozenset({"3400930000011"}))
        assert not f.matches("ph-1", None)
        assert f.matches("ph-1", "3400930000011")

    def test_both_filters(self):
        f = RecordFilter(
            pharmacy_ids=frozenset({"ph-1"}),
            product_codes=frozenset({"3400930000011"}),
        )
        assert f.matches("ph-1", "3400930000011")
        assert not f.matches("ph-2", "3400930000011")


class TestParseEnums:
    def test_dimension(self):
        assert parse_dimension("brand_lab") == SegmentDimension.BRAND_LAB
        assert parse_dimension(SegmentDimension.FAMILY) == SegmentDimension.FAMILY

    @pytest.mark.parametrize("value", ["universe'--", "Universe", "code_13_ref", None])
    def test_unknown_dimension(self, value):
        with pytest.raises(UnknownSegment) as exc_info:
            parse_dimension(value)
        assert len(exc_info.value.allowed) == len(SegmentDimension)

    def test_interval(self):
        assert parse_interval(None) == Interval.DAY
        assert parse_interval("week") == Interval.WEEK
        with pytest.raises(InvalidArgument):
            parse_interval("year")

    def test_metric(self):
        assert parse_metric("sales") == MetricSource.SALES
        assert parse_metric("sell-in") == MetricSource.SELL_IN
        assert parse_metric(MetricSource.STOCK) == MetricSource.STOCK
        with pytest.raises(InvalidArgument):
            parse_metric(None)
        with pytest.raises(InvalidArgument):
            parse_metric("returns")
