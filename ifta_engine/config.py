"""
Engine constants and environment-driven settings.

Numeric limits used by the calculator live here as module constants.
Runtime settings (file locations, logging level, monitor intervals) are
read from ``IFTA_*`` environment variables.
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_MPG = Decimal("1")
MAX_MPG = Decimal("20")
DEFAULT_MPG = Decimal("6.5")
MAX_MILES = 1_000_000
MAX_GALLONS = 100_000

# Sane per-gallon rate window; anything outside is treated as corrupt
MIN_RATE = Decimal("0")
MAX_RATE = Decimal("2")

RATE_PLACES = 4
GALLON_PLACES = 3
CURRENCY_PLACES = 2

DEFAULT_QUARTER = "Q4 2025"
DEFAULT_FUEL_TYPE = "diesel"
DEFAULT_BASE_JURISDICTION = "TX"

EXPECTED_JURISDICTION_COUNT = 58

SESSION_VERSION = "1.1.0"
MAX_SESSION_BYTES = 5_000_000


class IFTASettings(BaseSettings):
    """Runtime configuration for the engine and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="IFTA_",
        extra="ignore",
    )

    log_level: str = Field(
        default="WARNING",
        description="Log level for the ifta_engine logger",
    )
    session_file: str = Field(
        default="ifta_session.json",
        description="Where saved calculation sessions are written",
    )
    rate_cache_file: str = Field(
        default=".ifta_rates_cache.json",
        description="Cache file for fetched quarterly rates",
    )
    rate_source_url: str = Field(
        default="https://www.iftach.org/taxmatrix/charts/",
        description="Base URL of the IFTACH quarterly XML charts",
    )
    fetch_timeout: float = Field(
        default=15.0,
        description="Timeout for rate downloads in seconds",
    )
    cache_expire_days: int = Field(
        default=7,
        description="Days before the rate cache is considered expired",
    )
    stale_after_days: int = Field(
        default=30,
        description="Days after which static rates should be reviewed",
    )

    default_quarter: str = Field(default=DEFAULT_QUARTER)
    default_fuel_type: str = Field(default=DEFAULT_FUEL_TYPE)
    default_mpg: float = Field(default=float(DEFAULT_MPG))
    base_jurisdiction: str = Field(default=DEFAULT_BASE_JURISDICTION)

    # Monitor schedule, seconds
    health_check_interval: int = Field(default=5 * 60)
    self_test_interval: int = Field(default=30 * 60)
    update_check_interval: int = Field(default=6 * 60 * 60)


@lru_cache
def get_settings() -> IFTASettings:
    """Return the cached settings instance loaded from the environment."""
    return IFTASettings()
