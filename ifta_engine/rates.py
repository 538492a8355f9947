"""
IFTA jurisdiction fuel tax rate table.

Covers the 58 IFTA member jurisdictions (48 contiguous US states and 10
Canadian provinces) with per-gallon rates for every reportable fuel type.
Base rates are the Q4 2025 (October - December 2025) tax matrix; earlier
quarters are derived from a small history of per-jurisdiction changes.

Rates are USD per gallon. Canadian jurisdictions are converted to USD at
the quarter's exchange rate; the native CAD per-litre figures are kept
alongside for reference.

Source: IFTA, Inc. quarterly tax rate matrix (https://www.iftach.org/taxmatrix4/).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Union

from ifta_engine.config import (
    DEFAULT_QUARTER,
    MAX_RATE,
    MIN_RATE,
)
from ifta_engine.exceptions import QuarterFormatError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class FuelType(Enum):
    """Fuel types reported on the IFTA quarterly return."""

    DIESEL = "diesel"
    GASOLINE = "gasoline"
    GASOHOL = "gasohol"
    PROPANE = "propane"
    LNG = "lng"
    CNG = "cng"
    ETHANOL = "ethanol"
    METHANOL = "methanol"
    BIODIESEL = "biodiesel"


# Column order of the rate tuples in _JURISDICTION_DATA
_FUEL_ORDER: tuple[FuelType, ...] = (
    FuelType.DIESEL,
    FuelType.GASOLINE,
    FuelType.GASOHOL,
    FuelType.PROPANE,
    FuelType.LNG,
    FuelType.CNG,
    FuelType.ETHANOL,
    FuelType.METHANOL,
    FuelType.BIODIESEL,
)

# Names used on IFTACH charts and older saved sessions
_FUEL_ALIASES: dict[str, FuelType] = {
    "diesel": FuelType.DIESEL,
    "special diesel": FuelType.DIESEL,
    "gasoline": FuelType.GASOLINE,
    "gasohol": FuelType.GASOHOL,
    "propane": FuelType.PROPANE,
    "lpg": FuelType.PROPANE,
    "lng": FuelType.LNG,
    "cng": FuelType.CNG,
    "ethanol": FuelType.ETHANOL,
    "e-85": FuelType.ETHANOL,
    "e85": FuelType.ETHANOL,
    "a-55": FuelType.ETHANOL,
    "methanol": FuelType.METHANOL,
    "m-85": FuelType.METHANOL,
    "m85": FuelType.METHANOL,
    "biodiesel": FuelType.BIODIESEL,
}


def normalize_fuel_type(fuel_type: Union[FuelType, str, None]) -> FuelType:
    """Map a fuel type or alias to a FuelType; unknown names mean diesel."""
    if isinstance(fuel_type, FuelType):
        return fuel_type
    key = (fuel_type or "diesel").strip().lower()
    return _FUEL_ALIASES.get(key, FuelType.DIESEL)


def fuel_type_from_name(name: str) -> Optional[FuelType]:
    """Strict variant of normalize_fuel_type: returns None for unknown names."""
    return _FUEL_ALIASES.get(name.strip().lower()) if name else None


def validate_rate(rate: Any) -> bool:
    """Check that a per-gallon rate is a finite number within [0, 2]."""
    if isinstance(rate, bool) or rate is None:
        return False
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError):
        return False
    if not value.is_finite():
        return False
    return MIN_RATE <= value <= MAX_RATE


# ---------------------------------------------------------------------------
# Quarter handling
# ---------------------------------------------------------------------------

_QUARTER_RE = re.compile(r"^Q([1-4])\s+(\d{4})$", re.IGNORECASE)
_LEGACY_QUARTER_RE = re.compile(r"^([1-4])Q(\d{4})$", re.IGNORECASE)


def parse_quarter(quarter: str) -> tuple[int, int]:
    """
    Parse a quarter label into ``(year, quarter_number)``.

    Accepts the display form ``"Q4 2025"`` and the legacy chart form
    ``"4Q2025"``.
    """
    text = (quarter or "").strip()
    match = _QUARTER_RE.match(text)
    if match:
        return int(match.group(2)), int(match.group(1))
    match = _LEGACY_QUARTER_RE.match(text)
    if match:
        return int(match.group(2)), int(match.group(1))
    raise QuarterFormatError(f"Unrecognized quarter: {quarter!r}")


def format_quarter(year: int, quarter_number: int) -> str:
    return f"Q{quarter_number} {year}"


def normalize_quarter(quarter: str) -> str:
    """Return the ``"Q4 2025"`` form of a quarter label."""
    return format_quarter(*parse_quarter(quarter))


def legacy_quarter(quarter: str) -> str:
    """Return the ``"4Q2025"`` form used in IFTACH chart file names."""
    year, q = parse_quarter(quarter)
    return f"{q}Q{year}"


def quarter_sort_key(quarter: str) -> int:
    """Comparable integer for a quarter label; 0 when unparseable."""
    try:
        year, q = parse_quarter(quarter)
    except QuarterFormatError:
        return 0
    return year * 10 + q


def quarter_for_date(day: date) -> str:
    return format_quarter(day.year, (day.month - 1) // 3 + 1)


def next_quarter(quarter: str) -> str:
    year, q = parse_quarter(quarter)
    if q == 4:
        return format_quarter(year + 1, 1)
    return format_quarter(year, q + 1)


def quarter_bounds(quarter: str) -> tuple[date, date]:
    """First and last calendar day of a quarter."""
    year, q = parse_quarter(quarter)
    start = date(year, 3 * q - 2, 1)
    end_month = 3 * q
    end_day = 31 if end_month in (3, 12) else 30
    return start, date(year, end_month, end_day)


# ---------------------------------------------------------------------------
# Rate data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExchangeRate:
    """Quarterly US/Canada exchange rate published with the tax matrix."""

    us_to_canada: Decimal
    canada_to_us: Decimal

    @property
    def is_plausible(self) -> bool:
        return (
            Decimal("1.0") <= self.us_to_canada <= Decimal("2.0")
            and Decimal("0.5") <= self.canada_to_us <= Decimal("1.0")
        )


@dataclass(frozen=True)
class Jurisdiction:
    """One IFTA member jurisdiction and its per-gallon rates."""

    code: str
    name: str
    country: str  # "US" or "CAN"
    rates: Mapping[FuelType, Decimal] = field(default_factory=dict)
    rates_cad: Mapping[FuelType, Decimal] = field(default_factory=dict)
    footnote: str = ""

    @property
    def label(self) -> str:
        return f"{self.name} ({self.code})"


def _rates(*values: str) -> dict[FuelType, Decimal]:
    return {fuel: Decimal(v) for fuel, v in zip(_FUEL_ORDER, values)}


BASE_QUARTER = "Q4 2025"
BASE_LAST_UPDATED = date(2025, 11, 29)
BASE_EXCHANGE_RATE = ExchangeRate(Decimal("1.3797"), Decimal("0.7248"))

# Order per fuel: diesel, gasoline, gasohol, propane, lng, cng, ethanol,
# methanol, biodiesel
_JURISDICTION_DATA: dict[str, dict[str, Any]] = {
    # United States
    "AL": {
        "name": "Alabama",
        "country": "US",
        "rates": _rates("0.310", "0.290", "0.290", "0.270", "0.310", "0.290", "0.290", "0.290", "0.310"),
        "footnote": "#35",
    },
    "AZ": {
        "name": "Arizona",
        "country": "US",
        "rates": _rates("0.260", "0.180", "0.180", "0.180", "0.260", "0.180", "0.180", "0.180", "0.260"),
        "footnote": "#7",
    },
    "AR": {
        "name": "Arkansas",
        "country": "US",
        "rates": _rates("0.285", "0.247", "0.247", "0.165", "0.285", "0.050", "0.247", "0.247", "0.285"),
        "footnote": "#29",
    },
    "CA": {
        "name": "California",
        "country": "US",
        "rates": _rates("0.980", "0.596", "0.596", "0.060", "0.980", "0.596", "0.596", "0.596", "0.980"),
        "footnote": "#1",
    },
    "CO": {
        "name": "Colorado",
        "country": "US",
        "rates": _rates("0.2650", "0.2225", "0.2225", "0.2225", "0.2650", "0.2225", "0.2225", "0.2225", "0.2650"),
    },
    "CT": {
        "name": "Connecticut",
        "country": "US",
        "rates": _rates("0.5210", "0.2500", "0.2500", "0.2600", "0.2600", "0.2600", "0.2500", "0.2500", "0.5210"),
        "footnote": "#15",
    },
    "DE": {
        "name": "Delaware",
        "country": "US",
        "rates": _rates("0.2200", "0.2300", "0.2300", "0.2200", "0.2200", "0.2200", "0.2300", "0.2300", "0.2200"),
    },
    "FL": {
        "name": "Florida",
        "country": "US",
        "rates": _rates("0.3610", "0.3660", "0.3660", "0.0000", "0.0000", "0.0000", "0.3660", "0.3660", "0.3610"),
        "footnote": "#18",
    },
    "GA": {
        "name": "Georgia",
        "country": "US",
        "rates": _rates("0.3530", "0.3120", "0.3120", "0.3120", "0.3530", "0.3120", "0.3120", "0.3120", "0.3530"),
        "footnote": "#30",
    },
    "ID": {
        "name": "Idaho",
        "country": "US",
        "rates": _rates("0.3300", "0.3300", "0.3300", "0.2560", "0.3300", "0.3300", "0.3300", "0.3300", "0.3300"),
        "footnote": "#6",
    },
    "IL": {
        "name": "Illinois",
        "country": "US",
        "rates": _rates("0.6305", "0.4320", "0.4320", "0.6305", "0.6305", "0.4320", "0.4320", "0.4320", "0.6305"),
        "footnote": "#26",
    },
    "IN": {
        "name": "Indiana",
        "country": "US",
        "rates": _rates("0.6100", "0.3600", "0.3600", "0.3600", "0.6100", "0.3600", "0.3600", "0.3600", "0.6100"),
        "footnote": "#31",
    },
    "IA": {
        "name": "Iowa",
        "country": "US",
        "rates": _rates("0.3250", "0.3000", "0.2900", "0.3000", "0.3250", "0.3140", "0.1900", "0.0000", "0.3250"),
        "footnote": "#25",
    },
    "KS": {
        "name": "Kansas",
        "country": "US",
        "rates": _rates("0.2600", "0.2400", "0.2400", "0.2300", "0.2600", "0.2400", "0.2400", "0.2400", "0.2600"),
    },
    "KY": {
        "name": "Kentucky",
        "country": "US",
        "rates": _rates("0.2760", "0.2760", "0.2760", "0.2760", "0.2760", "0.2760", "0.2760", "0.2760", "0.2760"),
    },
    "LA": {
        "name": "Louisiana",
        "country": "US",
        "rates": _rates("0.2000", "0.2000", "0.2000", "0.0000", "0.0000", "0.0000", "0.2000", "0.2000", "0.2000"),
        "footnote": "#21",
    },
    "ME": {
        "name": "Maine",
        "country": "US",
        "rates": _rates("0.3120", "0.3000", "0.3000", "0.2180", "0.3120", "0.2070", "0.3000", "0.3000", "0.3120"),
    },
    "MD": {
        "name": "Maryland",
        "country": "US",
        "rates": _rates("0.4155", "0.4705", "0.4705", "0.4705", "0.4155", "0.4705", "0.4705", "0.4705", "0.4155"),
        "footnote": "#23",
    },
    "MA": {
        "name": "Massachusetts",
        "country": "US",
        "rates": _rates("0.2400", "0.2400", "0.2400", "0.1688", "0.2400", "0.1688", "0.2400", "0.2400", "0.2400"),
    },
    "MI": {
        "name": "Michigan",
        "country": "US",
        "rates": _rates("0.2810", "0.2810", "0.2810", "0.2810", "0.2810", "0.2810", "0.2810", "0.2810", "0.2810"),
    },
    "MN": {
        "name": "Minnesota",
        "country": "US",
        "rates": _rates("0.2850", "0.2850", "0.2850", "0.1710", "0.2850", "0.3180", "0.2850", "0.2850", "0.2850"),
        "footnote": "#16",
    },
    "MS": {
        "name": "Mississippi",
        "country": "US",
        "rates": _rates("0.1800", "0.1800", "0.1800", "0.1700", "0.1800", "0.1800", "0.1800", "0.1800", "0.1800"),
        "footnote": "#2",
    },
    "MO": {
        "name": "Missouri",
        "country": "US",
        "rates": _rates("0.2200", "0.2200", "0.2200", "0.0000", "0.1100", "0.0500", "0.2200", "0.2200", "0.2200"),
        "footnote": "#3",
    },
    "MT": {
        "name": "Montana",
        "country": "US",
        "rates": _rates("0.2975", "0.0000", "0.0000", "0.0400", "0.2975", "0.0700", "0.0000", "0.0000", "0.2975"),
        "footnote": "#9",
    },
    "NE": {
        "name": "Nebraska",
        "country": "US",
        "rates": _rates("0.2840", "0.2840", "0.2840", "0.2840", "0.2840", "0.2840", "0.2840", "0.2840", "0.2840"),
    },
    "NV": {
        "name": "Nevada",
        "country": "US",
        "rates": _rates("0.2700", "0.2300", "0.2300", "0.1900", "0.2700", "0.0680", "0.2300", "0.2300", "0.2700"),
    },
    "NH": {
        "name": "New Hampshire",
        "country": "US",
        "rates": _rates("0.2220", "0.2220", "0.2220", "0.0000", "0.0000", "0.0000", "0.2220", "0.2220", "0.2220"),
    },
    "NJ": {
        "name": "New Jersey",
        "country": "US",
        "rates": _rates("0.4900", "0.4250", "0.4250", "0.0525", "0.4900", "0.0857", "0.4250", "0.4250", "0.4900"),
    },
    "NM": {
        "name": "New Mexico",
        "country": "US",
        "rates": _rates("0.2100", "0.1700", "0.1700", "0.1200", "0.2060", "0.1330", "0.1700", "0.1700", "0.2100"),
        "footnote": "#33",
    },
    "NY": {
        "name": "New York",
        "country": "US",
        "rates": _rates("0.1720", "0.0800", "0.0800", "0.0000", "0.0530", "0.0530", "0.0800", "0.0800", "0.1720"),
        "footnote": "#11",
    },
    "NC": {
        "name": "North Carolina",
        "country": "US",
        "rates": _rates("0.4235", "0.4235", "0.4235", "0.4235", "0.4235", "0.4235", "0.4235", "0.4235", "0.4235"),
        "footnote": "#24",
    },
    "ND": {
        "name": "North Dakota",
        "country": "US",
        "rates": _rates("0.2300", "0.2300", "0.2300", "0.2300", "0.2300", "0.2300", "0.2300", "0.2300", "0.2300"),
    },
    "OH": {
        "name": "Ohio",
        "country": "US",
        "rates": _rates("0.4700", "0.3850", "0.3850", "0.3850", "0.4700", "0.4700", "0.3850", "0.3850", "0.4700"),
        "footnote": "#28",
    },
    "OK": {
        "name": "Oklahoma",
        "country": "US",
        "rates": _rates("0.1900", "0.1900", "0.1900", "0.1400", "0.0400", "0.0500", "0.1900", "0.1900", "0.1900"),
    },
    "OR": {
        "name": "Oregon",
        "country": "US",
        "rates": _rates("0.4000", "0.4000", "0.4000", "0.4000", "0.4000", "0.4000", "0.4000", "0.4000", "0.4000"),
    },
    "PA": {
        "name": "Pennsylvania",
        "country": "US",
        "rates": _rates("0.7780", "0.6140", "0.6140", "0.6140", "0.7780", "0.6140", "0.6140", "0.6140", "0.7780"),
        "footnote": "#4",
    },
    "RI": {
        "name": "Rhode Island",
        "country": "US",
        "rates": _rates("0.3800", "0.3700", "0.3700", "0.3700", "0.3800", "0.3700", "0.3700", "0.3700", "0.3800"),
        "footnote": "#34",
    },
    "SC": {
        "name": "South Carolina",
        "country": "US",
        "rates": _rates("0.2875", "0.2875", "0.2875", "0.2875", "0.2875", "0.2875", "0.2875", "0.2875", "0.2875"),
        "footnote": "#22",
    },
    "SD": {
        "name": "South Dakota",
        "country": "US",
        "rates": _rates("0.3000", "0.3000", "0.3000", "0.2000", "0.3000", "0.3000", "0.3000", "0.3000", "0.3000"),
    },
    "TN": {
        "name": "Tennessee",
        "country": "US",
        "rates": _rates("0.2700", "0.2700", "0.2700", "0.1700", "0.2100", "0.1300", "0.2700", "0.2700", "0.2700"),
        "footnote": "#8",
    },
    "TX": {
        "name": "Texas",
        "country": "US",
        "rates": _rates("0.2000", "0.2000", "0.2000", "0.1500", "0.2000", "0.2000", "0.2000", "0.2000", "0.2000"),
        "footnote": "#12",
    },
    "UT": {
        "name": "Utah",
        "country": "US",
        "rates": _rates("0.3250", "0.3250", "0.3250", "0.3250", "0.3250", "0.3250", "0.3250", "0.3250", "0.3250"),
        "footnote": "#20",
    },
    "VT": {
        "name": "Vermont",
        "country": "US",
        "rates": _rates("0.3100", "0.3210", "0.3210", "0.0400", "0.3100", "0.0400", "0.3210", "0.3210", "0.3100"),
    },
    "VA": {
        "name": "Virginia",
        "country": "US",
        "rates": _rates("0.3090", "0.2990", "0.2990", "0.2990", "0.3090", "0.2990", "0.2990", "0.2990", "0.3090"),
        "footnote": "#19",
    },
    "WA": {
        "name": "Washington",
        "country": "US",
        "rates": _rates("0.5840", "0.5840", "0.5840", "0.5840", "0.5840", "0.5840", "0.5840", "0.5840", "0.5840"),
        "footnote": "#10",
    },
    "WV": {
        "name": "West Virginia",
        "country": "US",
        "rates": _rates("0.3570", "0.3570", "0.3570", "0.3570", "0.3570", "0.3570", "0.3570", "0.3570", "0.3570"),
    },
    "WI": {
        "name": "Wisconsin",
        "country": "US",
        "rates": _rates("0.3290", "0.3290", "0.3290", "0.2290", "0.3290", "0.2290", "0.3290", "0.3290", "0.3290"),
    },
    "WY": {
        "name": "Wyoming",
        "country": "US",
        "rates": _rates("0.2400", "0.2400", "0.2400", "0.2400", "0.2400", "0.2400", "0.2400", "0.2400", "0.2400"),
        "footnote": "#32",
    },
    # Canada
    "AB": {
        "name": "Alberta",
        "country": "CAN",
        "rates": _rates("0.0942", "0.0942", "0.0942", "0.0635", "0.0942", "0.0942", "0.0942", "0.0942", "0.0942"),
        "footnote": "#14",
        "rates_cad": {"diesel": "0.1300", "gasoline": "0.1300", "propane": "0.0877"},
    },
    "BC": {
        "name": "British Columbia",
        "country": "CAN",
        "rates": _rates("0.2427", "0.2354", "0.2354", "0.1449", "0.2427", "0.2354", "0.2354", "0.2354", "0.2427"),
        "footnote": "#13",
        "rates_cad": {"diesel": "0.3350", "gasoline": "0.3250"},
    },
    "MB": {
        "name": "Manitoba",
        "country": "CAN",
        "rates": _rates("0.1014", "0.1014", "0.1014", "0.0725", "0.1014", "0.1014", "0.1014", "0.1014", "0.1014"),
        "footnote": "#17",
        "rates_cad": {"diesel": "0.1400", "gasoline": "0.1400"},
    },
    "NB": {
        "name": "New Brunswick",
        "country": "CAN",
        "rates": _rates("0.2129", "0.1739", "0.1739", "0.1159", "0.2129", "0.1739", "0.1739", "0.1739", "0.2129"),
        "rates_cad": {"diesel": "0.2940", "gasoline": "0.2400"},
    },
    "NL": {
        "name": "Newfoundland and Labrador",
        "country": "CAN",
        "rates": _rates("0.1449", "0.1377", "0.1377", "0.0942", "0.1449", "0.1377", "0.1377", "0.1377", "0.1449"),
        "rates_cad": {"diesel": "0.2000", "gasoline": "0.1900"},
    },
    "NS": {
        "name": "Nova Scotia",
        "country": "CAN",
        "rates": _rates("0.1117", "0.1117", "0.1117", "0.0797", "0.1117", "0.1117", "0.1117", "0.1117", "0.1117"),
        "rates_cad": {"diesel": "0.1542", "gasoline": "0.1542"},
    },
    "ON": {
        "name": "Ontario",
        "country": "CAN",
        "rates": _rates("0.1043", "0.0942", "0.0942", "0.0507", "0.1043", "0.0942", "0.0942", "0.0942", "0.1043"),
        "footnote": "#5",
        "rates_cad": {"diesel": "0.1440", "gasoline": "0.1300"},
    },
    "PE": {
        "name": "Prince Edward Island",
        "country": "CAN",
        "rates": _rates("0.1855", "0.1072", "0.1072", "0.0000", "0.1855", "0.1072", "0.1072", "0.1072", "0.1855"),
        "footnote": "#27",
        "rates_cad": {"diesel": "0.2560", "gasoline": "0.1480"},
    },
    "QC": {
        "name": "Quebec",
        "country": "CAN",
        "rates": _rates("0.1464", "0.1406", "0.1406", "0.0797", "0.1464", "0.1406", "0.1406", "0.1406", "0.1464"),
        "rates_cad": {"diesel": "0.2020", "gasoline": "0.1941"},
    },
    "SK": {
        "name": "Saskatchewan",
        "country": "CAN",
        "rates": _rates("0.1087", "0.1087", "0.1087", "0.0652", "0.1087", "0.1087", "0.1087", "0.1087", "0.1087"),
        "rates_cad": {"diesel": "0.1500", "gasoline": "0.1500"},
    },
}

# Rate changes relative to the base quarter, newest first
_QUARTERLY_RATE_HISTORY: dict[str, dict[str, dict[FuelType, Decimal]]] = {
    "Q4 2025": {},
    "Q3 2025": {},
    "Q2 2025": {
        "CA": {FuelType.DIESEL: Decimal("0.970"), FuelType.GASOLINE: Decimal("0.586")},
    },
    "Q1 2025": {
        "CA": {FuelType.DIESEL: Decimal("0.960"), FuelType.GASOLINE: Decimal("0.576")},
    },
    "Q4 2024": {
        "CA": {FuelType.DIESEL: Decimal("0.944"), FuelType.GASOLINE: Decimal("0.564")},
        "PA": {FuelType.DIESEL: Decimal("0.741"), FuelType.GASOLINE: Decimal("0.576")},
    },
    "Q3 2024": {
        "CA": {FuelType.DIESEL: Decimal("0.944"), FuelType.GASOLINE: Decimal("0.564")},
        "PA": {FuelType.DIESEL: Decimal("0.741"), FuelType.GASOLINE: Decimal("0.576")},
    },
    "Q2 2024": {
        "CA": {FuelType.DIESEL: Decimal("0.930"), FuelType.GASOLINE: Decimal("0.550")},
        "PA": {FuelType.DIESEL: Decimal("0.741"), FuelType.GASOLINE: Decimal("0.576")},
    },
    "Q1 2024": {
        "CA": {FuelType.DIESEL: Decimal("0.920"), FuelType.GASOLINE: Decimal("0.540")},
        "PA": {FuelType.DIESEL: Decimal("0.741"), FuelType.GASOLINE: Decimal("0.576")},
    },
}


def available_quarters() -> list[str]:
    """Quarters with known rates, newest first."""
    return sorted(_QUARTERLY_RATE_HISTORY, key=quarter_sort_key, reverse=True)


def _build_base_jurisdictions() -> dict[str, Jurisdiction]:
    jurisdictions: dict[str, Jurisdiction] = {}
    for code, data in _JURISDICTION_DATA.items():
        jurisdictions[code] = Jurisdiction(
            code=code,
            name=data["name"],
            country=data["country"],
            rates=MappingProxyType(dict(data["rates"])),
            rates_cad=MappingProxyType(
                {
                    normalize_fuel_type(k): Decimal(v)
                    for k, v in data.get("rates_cad", {}).items()
                }
            ),
            footnote=data.get("footnote", ""),
        )
    return jurisdictions


class RateTable:
    """
    Per-gallon fuel tax rates for a single quarter.

    A table is never modified in place. Updated rates (for example from a
    downloaded tax matrix) produce a new table via :meth:`with_rates`.
    """

    def __init__(
        self,
        quarter: str,
        jurisdictions: Mapping[str, Jurisdiction],
        exchange_rate: ExchangeRate = BASE_EXCHANGE_RATE,
        last_updated: Optional[date] = None,
    ) -> None:
        self._quarter = normalize_quarter(quarter)
        self._jurisdictions = MappingProxyType(
            {code.upper(): j for code, j in jurisdictions.items()}
        )
        self._exchange_rate = exchange_rate
        self._last_updated = last_updated
        self._effective_date, self._end_date = quarter_bounds(self._quarter)

    @classmethod
    def default(cls) -> "RateTable":
        """The built-in base quarter table."""
        return cls(
            BASE_QUARTER,
            _build_base_jurisdictions(),
            BASE_EXCHANGE_RATE,
            BASE_LAST_UPDATED,
        )

    @classmethod
    def for_quarter(cls, quarter: str = DEFAULT_QUARTER) -> "RateTable":
        """
        Build the table for a quarter from the base rates plus history.

        Quarters without recorded changes use the base rates unchanged.
        """
        label = normalize_quarter(quarter)
        base = cls.default()
        adjustments = _QUARTERLY_RATE_HISTORY.get(label)
        if adjustments is None:
            logger.info(f"No rate history for {label}; using {BASE_QUARTER} rates")
            adjustments = {}
        return base.with_rates(adjustments, quarter=label)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def quarter(self) -> str:
        return self._quarter

    @property
    def exchange_rate(self) -> ExchangeRate:
        return self._exchange_rate

    @property
    def last_updated(self) -> Optional[date]:
        return self._last_updated

    @property
    def effective_date(self) -> date:
        return self._effective_date

    @property
    def end_date(self) -> date:
        return self._end_date

    @property
    def jurisdiction_count(self) -> int:
        return len(self._jurisdictions)

    def __len__(self) -> int:
        return len(self._jurisdictions)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.strip().upper() in self._jurisdictions

    def __iter__(self) -> Iterator[Jurisdiction]:
        return iter(self._jurisdictions.values())

    def get(self, code: str) -> Optional[Jurisdiction]:
        """Look up a jurisdiction by two-letter code (case-insensitive)."""
        if not code:
            return None
        return self._jurisdictions.get(code.strip().upper())

    def codes(self) -> list[str]:
        return sorted(self._jurisdictions)

    def get_rate(
        self, code: str, fuel_type: Union[FuelType, str] = FuelType.DIESEL
    ) -> Decimal:
        return get_rate(self, code, fuel_type)

    def jurisdiction_list(self) -> list[Jurisdiction]:
        """All jurisdictions, US first, then alphabetically by name."""
        return sorted(
            self._jurisdictions.values(),
            key=lambda j: (j.country != "US", j.name),
        )

    def us_jurisdictions(self) -> list[Jurisdiction]:
        return [j for j in self.jurisdiction_list() if j.country == "US"]

    def canadian_jurisdictions(self) -> list[Jurisdiction]:
        return [j for j in self.jurisdiction_list() if j.country == "CAN"]

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    def with_rates(
        self,
        updates: Mapping[str, Mapping[FuelType, Decimal]],
        quarter: Optional[str] = None,
        exchange_rate: Optional[ExchangeRate] = None,
        last_updated: Optional[date] = None,
    ) -> "RateTable":
        """
        Return a new table with per-jurisdiction rate overrides merged in.

        Codes not already in the table are ignored.
        """
        jurisdictions = dict(self._jurisdictions)
        for code, fuel_rates in updates.items():
            current = jurisdictions.get(code.upper())
            if current is None:
                logger.debug(f"Ignoring rates for unknown jurisdiction {code}")
                continue
            merged = dict(current.rates)
            merged.update(fuel_rates)
            jurisdictions[current.code] = Jurisdiction(
                code=current.code,
                name=current.name,
                country=current.country,
                rates=MappingProxyType(merged),
                rates_cad=current.rates_cad,
                footnote=current.footnote,
            )
        return RateTable(
            quarter or self._quarter,
            jurisdictions,
            exchange_rate or self._exchange_rate,
            last_updated or self._last_updated,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form used by the rate cache."""
        return {
            "quarter": self._quarter,
            "lastUpdated": (
                self._last_updated.isoformat() if self._last_updated else None
            ),
            "exchangeRate": {
                "usToCanada": str(self._exchange_rate.us_to_canada),
                "canadaToUs": str(self._exchange_rate.canada_to_us),
            },
            "jurisdictions": {
                code: {
                    "name": j.name,
                    "country": j.country,
                    "rates": {f.value: str(r) for f, r in j.rates.items()},
                }
                for code, j in self._jurisdictions.items()
            },
        }


def get_rate(
    table: Optional[RateTable],
    jurisdiction_code: Optional[str],
    fuel_type: Union[FuelType, str] = FuelType.DIESEL,
) -> Decimal:
    """
    Look up the per-gallon rate for a jurisdiction and fuel type.

    Returns 0 for an empty or unknown jurisdiction. When the jurisdiction
    has no rate for the fuel type its diesel rate is used. Rates outside
    [0, 2] are rejected (logged, 0 returned).
    """
    if table is None or not jurisdiction_code or not jurisdiction_code.strip():
        return ZERO

    code = jurisdiction_code.strip().upper()
    jurisdiction = table.get(code)
    if jurisdiction is None:
        logger.warning(f"Unknown jurisdiction: {code}")
        return ZERO

    fuel = normalize_fuel_type(fuel_type)
    rate = jurisdiction.rates.get(fuel)
    if rate is None:
        rate = jurisdiction.rates.get(FuelType.DIESEL)
        if rate is None:
            logger.warning(f"No rates found for jurisdiction: {code}")
            return ZERO
        logger.debug(f"{code} has no {fuel.value} rate; using diesel rate")

    if not validate_rate(rate):
        logger.warning(f"Rejected out-of-range rate for {code}/{fuel.value}: {rate}")
        return ZERO
    return Decimal(str(rate))
