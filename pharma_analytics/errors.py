"""Error taxonomy for the analytics core.

Request problems (``InvalidArgument``, ``UnknownSegment``) are raised
while a query is validated, before any data access. Backing store
failures surface as a single ``DataSourceUnavailable`` per invocation.

An empty match is not an error: engines return empty or zeroed results.
"""

from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics core."""


class InvalidArgument(AnalyticsError, ValueError):
    """A required parameter is missing or malformed."""

    def __init__(self, field: str, detail: str):
        self.field = field
        self.detail = detail
        super().__init__(f"{field}: {detail}")


class UnknownSegment(InvalidArgument):
    """The requested segment dimension is not in the fixed enumeration."""

    def __init__(self, value: str, allowed: list[str]):
        self.value = value
        self.allowed = allowed
        super().__init__(
            "dimension",
            f"unknown segment dimension {value!r}; expected one of: "
            f"{', '.join(allowed)}",
        )


class DataSourceUnavailable(AnalyticsError):
    """The backing store could not be reached or a query failed mid-flight."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"{source}: {detail}")
