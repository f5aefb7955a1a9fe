"""Analytics configuration.

Loads from environment variables (prefix ``PHARMA_``) and a ``.env`` file,
following the pydantic-settings pattern.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class AnalyticsSettings(BaseSettings):
    """Configuration for the analytics core and its data sources.

    All values can be set via environment variables or .env file,
    e.g. ``PHARMA_POSTGREST_URL``.
    """

    # ----- Data source (PostgREST / Supabase) -----
    postgrest_url: str = Field(
        default="",
        description="Base URL of the PostgREST endpoint. Empty = in-memory source.",
    )
    postgrest_service_key: str = Field(
        default="",
        description="Service role key sent as apikey / bearer token.",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        description="Per-request timeout for the PostgREST client.",
    )

    # ----- In-memory source -----
    dataset_path: str | None = Field(
        default=None,
        description="JSON dataset loaded by the in-memory source.",
    )

    # ----- Analytics -----
    uncategorized_label: str = Field(
        default="Uncategorized",
        description="Segment key used when a product has no catalog value.",
    )
    stock_months_lookback: int = Field(
        default=3,
        description="Months of sales averaged for stock coverage.",
    )
    overstock_months: float = Field(
        default=99.0,
        description="Coverage reported for products with stock but no sales.",
    )

    # ----- Logging -----
    log_level: str = Field(default="INFO", description="Root log level for the CLI.")

    model_config = {
        "env_prefix": "PHARMA_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> AnalyticsSettings:
    """Get cached settings singleton."""
    return AnalyticsSettings()
