"""Request parameters and their validation.

Every engine takes an ``AnalyticsQuery``. Queries are only built through
``build_query`` (or ``AnalyticsQuery.with_range``), which rejects missing
or malformed parameters with ``InvalidArgument`` / ``UnknownSegment``
before any data source is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from .errors import InvalidArgument, UnknownSegment
from .models import Interval, MetricSource, SegmentDimension

logger = logging.getLogger("pharma_analytics.filters")


class RecordFilter(BaseModel):
    """Filter applied by data sources. Empty sets mean "all"."""

    model_config = ConfigDict(frozen=True)

    pharmacy_ids: frozenset[str] = frozenset()
    product_codes: frozenset[str] = frozenset()

    @property
    def is_unfiltered(self) -> bool:
        return not self.pharmacy_ids and not self.product_codes

    def matches(self, pharmacy_id: str, code_13_ref: str | None) -> bool:
        if self.pharmacy_ids and pharmacy_id not in self.pharmacy_ids:
            return False
        if self.product_codes and code_13_ref not in self.product_codes:
            return False
        return True


class AnalyticsQuery(BaseModel):
    """A validated date range plus pharmacy / product-code filters."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    pharmacy_ids: frozenset[str] = frozenset()
    product_codes: frozenset[str] = frozenset()

    @property
    def filters(self) -> RecordFilter:
        return RecordFilter(
            pharmacy_ids=self.pharmacy_ids,
            product_codes=self.product_codes,
        )

    def with_range(self, start, end) -> AnalyticsQuery:
        """Same filters over another (validated) date range."""
        return build_query(
            start,
            end,
            pharmacy_ids=self.pharmacy_ids,
            product_codes=self.product_codes,
        )

    def overlaps(self, other: AnalyticsQuery) -> bool:
        return self.start <= other.end and other.start <= self.end


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_date(value: date | datetime | str | None, field: str) -> date:
    """Parse an ISO date (``YYYY-MM-DD``), date or datetime."""
    if value is None or value == "":
        raise InvalidArgument(field, "is required")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise InvalidArgument(field, f"malformed date {value!r}") from None
    raise InvalidArgument(field, f"unsupported date value {value!r}")


def _clean_ids(values: Iterable[str] | None) -> frozenset[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v).strip() for v in values if v is not None and str(v).strip())


def build_query(
    start: date | datetime | str | None,
    end: date | datetime | str | None,
    *,
    pharmacy_ids: Iterable[str] | None = None,
    product_codes: Iterable[str] | None = None,
) -> AnalyticsQuery:
    """Validate raw request parameters into an ``AnalyticsQuery``.

    Raises:
        InvalidArgument: A date is missing, malformed, or start > end.
    """
    start_d = parse_date(start, "start")
    end_d = parse_date(end, "end")
    if start_d > end_d:
        raise InvalidArgument("start", f"start {start_d} is after end {end_d}")
    return AnalyticsQuery(
        start=start_d,
        end=end_d,
        pharmacy_ids=_clean_ids(pharmacy_ids),
        product_codes=_clean_ids(product_codes),
    )


def parse_dimension(value: SegmentDimension | str | None) -> SegmentDimension:
    """Map a caller-supplied dimension name onto the closed enumeration.

    Raises:
        UnknownSegment: The name is not one of the supported dimensions.
    """
    if isinstance(value, SegmentDimension):
        return value
    allowed = [d.value for d in SegmentDimension]
    if value is None:
        raise UnknownSegment("None", allowed)
    try:
        return SegmentDimension(str(value).strip())
    except ValueError:
        logger.debug("Rejected segment dimension %r", value)
        raise UnknownSegment(str(value), allowed) from None


def parse_interval(value: Interval | str | None) -> Interval:
    if isinstance(value, Interval):
        return value
    if value is None:
        return Interval.DAY
    try:
        return Interval(str(value).strip())
    except ValueError:
        raise InvalidArgument(
            "interval",
            f"unknown interval {value!r}; expected day, week or month",
        ) from None


def parse_metric(value: MetricSource | str | None) -> MetricSource:
    if isinstance(value, MetricSource):
        return value
    if value is None:
        raise InvalidArgument("metric", "is required")
    normalized = str(value).strip().replace("-", "_")
    try:
        return MetricSource(normalized)
    except ValueError:
        raise InvalidArgument(
            "metric",
            f"unknown metric source {value!r}; expected sales, stock or sell_in",
        ) from None
