"""
Quarterly IFTA rate updates from the IFTACH tax matrix.

Downloads the per-quarter XML chart, validates it and produces a
replacement :class:`RateTable`. Fetched tables are cached on disk. Any
network or parsing failure leaves the current (cached or built-in) table
in place; calculations never depend on a download succeeding.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Union

import requests

from ifta_engine.config import get_settings
from ifta_engine.exceptions import QuarterFormatError, RateFetchError
from ifta_engine.integrity import validate_new_rates
from ifta_engine.rates import (
    BASE_EXCHANGE_RATE,
    ExchangeRate,
    FuelType,
    RateTable,
    fuel_type_from_name,
    legacy_quarter,
    normalize_quarter,
    quarter_for_date,
    quarter_sort_key,
)

logger = logging.getLogger(__name__)

_EXCHANGE_PATTERNS = (
    re.compile(r"(\d+\.\d+)\s*[-/]\s*(\d+\.\d+)"),
    re.compile(r"US\s*=?\s*(\d+\.\d+).*?CAN\s*=?\s*(\d+\.\d+)", re.IGNORECASE),
)


@dataclass
class FetchedRates:
    """Rates parsed from one quarterly chart."""

    quarter: str
    rates: dict[str, dict[FuelType, Decimal]]
    countries: dict[str, str] = field(default_factory=dict)
    exchange_rate: ExchangeRate = BASE_EXCHANGE_RATE
    source: str = "xml"


@dataclass
class RefreshResult:
    table: RateTable
    updated: bool
    message: str


def _parse_exchange_rate(text: str) -> Optional[ExchangeRate]:
    for pattern in _EXCHANGE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        candidate = ExchangeRate(Decimal(match.group(1)), Decimal(match.group(2)))
        if candidate.is_plausible:
            return candidate
    return None


def parse_rate_xml(
    content: Union[bytes, str], quarter: str
) -> FetchedRates:
    """
    Parse an IFTACH quarterly XML chart.

    Each ``RECORD`` carries a ``JURISDICTION`` code, an optional
    ``COUNTRY`` and pairs of ``RATE`` elements per ``FUEL_TYPE``; the
    first of each pair is the US-dollar rate. Rates outside [0, 2) are
    dropped.
    """
    if not content:
        raise RateFetchError("Empty rate chart")
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise RateFetchError(f"XML parsing failed: {e}") from e

    records = root.findall(".//RECORD")
    if not records:
        raise RateFetchError("No rate records found in XML")

    rates: dict[str, dict[FuelType, Decimal]] = {}
    countries: dict[str, str] = {}

    for record in records:
        code = (record.findtext("JURISDICTION") or "").strip().upper()
        if len(code) != 2:
            continue
        countries[code] = (record.findtext("COUNTRY") or "US").strip()
        fuel_rates = rates.setdefault(code, {})

        rate_elements = record.findall("RATE")
        for index, fuel_el in enumerate(record.findall("FUEL_TYPE")):
            fuel = fuel_type_from_name(fuel_el.text or "")
            if fuel is None or index * 2 >= len(rate_elements):
                continue
            try:
                rate = Decimal((rate_elements[index * 2].text or "0").strip())
            except InvalidOperation:
                continue
            if Decimal("0") <= rate < Decimal("2"):
                fuel_rates[fuel] = rate

    logger.info(f"Parsed {len(rates)} jurisdiction records for {quarter}")

    exchange_rate = BASE_EXCHANGE_RATE
    exchange_text = root.findtext(".//EXCHANGE_RATE")
    if exchange_text:
        exchange_rate = _parse_exchange_rate(exchange_text) or BASE_EXCHANGE_RATE

    return FetchedRates(
        quarter=normalize_quarter(quarter),
        rates=rates,
        countries=countries,
        exchange_rate=exchange_rate,
    )


class RateFetcher:
    """
    Downloads and caches quarterly IFTA rate charts.

    The cache is a JSON file holding the last accepted table; it expires
    after ``cache_expire_days``.
    """

    def __init__(
        self,
        cache_path: Optional[Union[str, Path]] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_expire_days: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        settings = get_settings()
        self.cache_path = Path(cache_path or settings.rate_cache_file)
        self.base_url = base_url or settings.rate_source_url
        self.timeout = timeout if timeout is not None else settings.fetch_timeout
        self.cache_expire_days = (
            cache_expire_days
            if cache_expire_days is not None
            else settings.cache_expire_days
        )
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": "ifta-engine/1.0 (rate update)",
            "Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8",
        })

    def chart_url(self, quarter: str) -> str:
        return f"{self.base_url}{legacy_quarter(quarter)}.xml"

    def fetch_quarter(self, quarter: str) -> FetchedRates:
        """Download and parse the chart for a quarter."""
        url = self.chart_url(quarter)
        logger.info(f"Fetching rates from: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise RateFetchError(f"Rate download failed: {e}") from e
        return parse_rate_xml(response.content, quarter)

    @staticmethod
    def needs_update(table: RateTable, today: Optional[date] = None) -> bool:
        current = quarter_for_date(today or date.today())
        return quarter_sort_key(current) > quarter_sort_key(table.quarter)

    def apply(
        self,
        table: RateTable,
        fetched: FetchedRates,
        today: Optional[date] = None,
    ) -> RateTable:
        """
        Merge fetched rates into a new table.

        Only positive rates replace existing ones. Raises RateFetchError
        when the download fails validation.
        """
        if not validate_new_rates(fetched.rates):
            raise RateFetchError(
                f"Fetched rates for {fetched.quarter} failed validation "
                f"({len(fetched.rates)} jurisdictions)"
            )
        updates = {
            code: {fuel: rate for fuel, rate in fuel_rates.items() if rate > 0}
            for code, fuel_rates in fetched.rates.items()
        }
        return table.with_rates(
            updates,
            quarter=fetched.quarter,
            exchange_rate=fetched.exchange_rate,
            last_updated=today or date.today(),
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def save_cache(self, table: RateTable) -> bool:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(
                json.dumps(table.to_dict(), indent=2), encoding="utf-8"
            )
        except OSError as e:
            logger.warning(f"Could not cache rates to {self.cache_path}: {e}")
            return False
        return True

    @staticmethod
    def _cached_table(data: dict, table: RateTable, cached_on: date) -> RateTable:
        updates: dict[str, dict[FuelType, Decimal]] = {}
        for code, entry in data["jurisdictions"].items():
            fuel_rates = {}
            for name, value in (entry.get("rates") or {}).items():
                fuel = fuel_type_from_name(name)
                if fuel is not None:
                    fuel_rates[fuel] = Decimal(str(value))
            updates[code] = fuel_rates

        exchange = table.exchange_rate
        raw_exchange = data.get("exchangeRate") or {}
        if raw_exchange.get("usToCanada"):
            exchange = ExchangeRate(
                Decimal(str(raw_exchange["usToCanada"])),
                Decimal(str(raw_exchange["canadaToUs"])),
            )

        return table.with_rates(
            updates,
            quarter=normalize_quarter(data.get("quarter") or table.quarter),
            exchange_rate=exchange,
            last_updated=cached_on,
        )

    def load_cached(
        self, table: RateTable, today: Optional[date] = None
    ) -> Optional[RateTable]:
        """
        Cached table merged over ``table``, or None if absent/expired.

        A cache that cannot be read back in full is ignored with a warning.
        """
        if not self.cache_path.exists():
            return None
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            cached_on = date.fromisoformat(data["lastUpdated"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Invalid rate cache {self.cache_path}: {e}")
            return None

        age = ((today or date.today()) - cached_on).days
        if age >= self.cache_expire_days:
            logger.info("Rate cache expired, will fetch fresh rates")
            return None

        try:
            cached = self._cached_table(data, table, cached_on)
        except (
            InvalidOperation,
            QuarterFormatError,
            KeyError,
            TypeError,
            AttributeError,
        ) as e:
            logger.warning(f"Invalid rate cache {self.cache_path}: {e!r}")
            return None

        logger.info(f"Loading rates from cache ({age} days old)")
        return cached

    # ------------------------------------------------------------------
    # Update flow
    # ------------------------------------------------------------------

    def refresh(
        self,
        table: RateTable,
        today: Optional[date] = None,
        quarter: Optional[str] = None,
    ) -> RefreshResult:
        """
        Bring ``table`` up to date.

        Uses the cache first and downloads only when a new quarter has
        begun (or ``quarter`` is requested explicitly). Failures are
        logged and the best available table is returned unchanged.
        """
        today = today or date.today()
        cached = self.load_cached(table, today)
        if cached is not None:
            table = cached

        if quarter is None:
            if not self.needs_update(table, today):
                return RefreshResult(table, False, "Rates are current")
            quarter = quarter_for_date(today)

        try:
            fetched = self.fetch_quarter(quarter)
            new_table = self.apply(table, fetched, today)
        except RateFetchError as e:
            logger.warning(f"Rate update failed, keeping {table.quarter} rates: {e}")
            return RefreshResult(table, False, str(e))

        self.save_cache(new_table)
        return RefreshResult(new_table, True, f"Rates updated to {new_table.quarter}")
