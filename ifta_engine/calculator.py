"""
IFTA row calculation engine.

Handles:
- Input sanitization (clamping miles and gallons to sane bounds)
- Per-jurisdiction rate resolution
- Taxable gallons from miles and fleet MPG (whole-gallon reporting)
- Net taxable gallons and signed tax due / credit
- Aggregation of row results into quarter totals
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union

from ifta_engine.config import (
    DEFAULT_BASE_JURISDICTION,
    DEFAULT_MPG,
    DEFAULT_QUARTER,
    MAX_GALLONS,
    MAX_MILES,
    MAX_MPG,
    MIN_MPG,
)
from ifta_engine.rates import (
    FuelType,
    RateTable,
    get_rate,
    normalize_fuel_type,
    normalize_quarter,
)

logger = logging.getLogger(__name__)

NO_MPG = "—"


def sanitize_number(
    value: Any,
    minimum: Union[int, Decimal] = 0,
    maximum: Optional[Union[int, Decimal]] = None,
) -> Decimal:
    """
    Coerce arbitrary input to a Decimal within [minimum, maximum].

    Non-numeric input becomes ``minimum``. Never raises.
    """
    low = Decimal(minimum)
    high = Decimal(maximum) if maximum is not None else None

    if isinstance(value, bool) or value is None:
        return low
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return low
    if number.is_nan():
        return low
    if number.is_infinite():
        if number > 0 and high is not None:
            return high
        return low

    if number < low:
        return low
    if high is not None and number > high:
        return high
    return number


def clamp_mpg(value: Any) -> Decimal:
    """Fleet MPG clamped to [1, 20]; unparseable input gives the default."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_MPG
    try:
        mpg = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return DEFAULT_MPG
    if not mpg.is_finite():
        return DEFAULT_MPG
    if mpg < MIN_MPG:
        logger.info(f"Fleet MPG {mpg} below minimum; using {MIN_MPG}")
        return MIN_MPG
    if mpg > MAX_MPG:
        logger.info(f"Fleet MPG {mpg} above maximum; capped at {MAX_MPG}")
        return MAX_MPG
    return mpg


def _round_whole(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def _round_cents(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TripRow:
    """
    Per-jurisdiction trip input as entered by the user.

    ``taxable_miles`` of None means the user has not overridden it and the
    row mirrors ``total_miles``.
    """

    row_id: int
    jurisdiction: str = ""
    total_miles: Any = 0
    taxable_miles: Any = None
    fuel_purchased_gallons: Any = 0

    @property
    def taxable_miles_overridden(self) -> bool:
        return self.taxable_miles is not None

    @property
    def effective_taxable_miles(self) -> Any:
        if self.taxable_miles is None:
            return self.total_miles
        return self.taxable_miles

    @classmethod
    def from_dict(cls, data: dict, row_id: Optional[int] = None) -> "TripRow":
        """Build a row from a saved-session or import record."""
        taxable = data.get("taxableMiles", data.get("taxable_miles"))
        return cls(
            row_id=int(row_id if row_id is not None else data.get("id", 0)),
            jurisdiction=str(data.get("jurisdiction") or "").strip().upper(),
            total_miles=data.get("totalMiles", data.get("total_miles", 0)),
            taxable_miles=taxable if taxable not in ("", None) else None,
            fuel_purchased_gallons=data.get(
                "taxPaidGallons", data.get("fuel_purchased_gallons", 0)
            ),
        )


@dataclass(frozen=True)
class CalculationContext:
    """Quarter-wide settings shared by every row in a recompute pass."""

    fleet_mpg: Decimal = DEFAULT_MPG
    fuel_type: FuelType = FuelType.DIESEL
    quarter: str = DEFAULT_QUARTER
    base_jurisdiction: str = DEFAULT_BASE_JURISDICTION

    def __post_init__(self) -> None:
        object.__setattr__(self, "fleet_mpg", clamp_mpg(self.fleet_mpg))
        object.__setattr__(self, "fuel_type", normalize_fuel_type(self.fuel_type))
        object.__setattr__(self, "quarter", normalize_quarter(self.quarter))
        object.__setattr__(
            self, "base_jurisdiction", (self.base_jurisdiction or "").strip().upper()
        )

    def evolve(self, **changes: Any) -> "CalculationContext":
        return replace(self, **changes)


@dataclass(frozen=True)
class TaxComputation:
    """Gallon and tax figures derived from miles, MPG, purchases and rate."""

    taxable_gallons: Decimal
    net_taxable_gallons: Decimal
    tax_due: Decimal


@dataclass
class RowResult:
    """Sanitized inputs and derived fields for one ledger row."""

    row_id: int
    jurisdiction: str
    total_miles: int
    taxable_miles: int
    fuel_purchased_gallons: int
    tax_rate: Decimal
    taxable_gallons: int
    net_taxable_gallons: int
    tax_due: Decimal
    warnings: list[str] = field(default_factory=list)

    @property
    def is_credit(self) -> bool:
        return self.tax_due < 0

    @property
    def has_jurisdiction(self) -> bool:
        return bool(self.jurisdiction)


@dataclass
class Totals:
    """Quarter totals across every row that has a jurisdiction."""

    miles: int = 0
    taxable_miles: int = 0
    fuel_purchased: int = 0
    taxable_gallons: int = 0
    net_gallons: int = 0
    tax_due: Decimal = Decimal("0.00")
    row_count: int = 0

    @property
    def current_mpg(self) -> Optional[Decimal]:
        """Overall miles per purchased gallon; None when nothing was purchased."""
        if self.fuel_purchased == 0:
            return None
        return Decimal(self.miles) / Decimal(self.fuel_purchased)

    @property
    def current_mpg_display(self) -> str:
        mpg = self.current_mpg
        return NO_MPG if mpg is None else f"{mpg:.2f}"

    @property
    def tax_status(self) -> str:
        return "Tax Due" if self.tax_due >= 0 else "Credit/Refund"


def compute_fields(
    taxable_miles: Any,
    fleet_mpg: Any,
    fuel_purchased: Any,
    tax_rate: Any,
) -> TaxComputation:
    """
    Taxable gallons, net gallons and tax due for already-clean inputs.

    Taxable gallons are rounded to whole gallons before the net and tax
    are computed; tax is rounded half-up to the cent.
    """
    miles = Decimal(str(taxable_miles))
    mpg = max(Decimal(str(fleet_mpg)), MIN_MPG)
    purchased = Decimal(str(fuel_purchased))
    rate = Decimal(str(tax_rate))

    taxable_gallons = _round_whole(miles / mpg)
    net_gallons = taxable_gallons - purchased
    tax_due = _round_cents(net_gallons * rate)
    return TaxComputation(
        taxable_gallons=taxable_gallons,
        net_taxable_gallons=net_gallons,
        tax_due=tax_due,
    )


def calculate(
    row: TripRow,
    context: CalculationContext,
    table: Optional[RateTable],
) -> RowResult:
    """
    Compute the derived fields of one row.

    Pure: the input row is not modified and invalid numbers are coerced
    to safe values instead of raising.
    """
    warnings: list[str] = []

    total_miles = _round_whole(sanitize_number(row.total_miles, 0, MAX_MILES))
    taxable_miles = _round_whole(
        sanitize_number(row.effective_taxable_miles, 0, MAX_MILES)
    )
    purchased = _round_whole(
        sanitize_number(row.fuel_purchased_gallons, 0, MAX_GALLONS)
    )

    if taxable_miles > total_miles:
        warnings.append(
            f"Taxable miles {taxable_miles} exceed total miles {total_miles}; clamped"
        )
        taxable_miles = total_miles

    jurisdiction = (row.jurisdiction or "").strip().upper()
    tax_rate = get_rate(table, jurisdiction, context.fuel_type)
    if jurisdiction and table is not None and jurisdiction not in table:
        warnings.append(f"Unknown jurisdiction code: {jurisdiction}")

    figures = compute_fields(taxable_miles, context.fleet_mpg, purchased, tax_rate)

    return RowResult(
        row_id=row.row_id,
        jurisdiction=jurisdiction,
        total_miles=int(total_miles),
        taxable_miles=int(taxable_miles),
        fuel_purchased_gallons=int(purchased),
        tax_rate=tax_rate,
        taxable_gallons=int(figures.taxable_gallons),
        net_taxable_gallons=int(figures.net_taxable_gallons),
        tax_due=figures.tax_due,
        warnings=warnings,
    )


def aggregate(results: Iterable[RowResult]) -> Totals:
    """Sum row results that have a jurisdiction set."""
    totals = Totals()
    for r in results:
        if not r.has_jurisdiction:
            continue
        totals.miles += r.total_miles
        totals.taxable_miles += r.taxable_miles
        totals.fuel_purchased += r.fuel_purchased_gallons
        totals.taxable_gallons += r.taxable_gallons
        totals.net_gallons += r.net_taxable_gallons
        totals.tax_due += r.tax_due
        totals.row_count += 1
    return totals


class FuelTaxCalculator:
    """
    IFTA fuel tax calculation engine bound to one rate table.

    Resolves jurisdiction rates and computes per-row tax for a single row
    or a whole ledger.
    """

    def __init__(self, table: Optional[RateTable] = None) -> None:
        self.table = table or RateTable.default()

    def calculate(self, row: TripRow, context: CalculationContext) -> RowResult:
        return calculate(row, context, self.table)

    def calculate_all(
        self, rows: Iterable[TripRow], context: CalculationContext
    ) -> list[RowResult]:
        return [calculate(row, context, self.table) for row in rows]

    def totals(
        self, rows: Iterable[TripRow], context: CalculationContext
    ) -> Totals:
        return aggregate(self.calculate_all(rows, context))

    def explain(self, result: RowResult, context: CalculationContext) -> str:
        """Human-readable formula for a row result."""
        return (
            f"({result.taxable_miles} miles ÷ {context.fleet_mpg} mpg) "
            f"= {result.taxable_gallons} gal - {result.fuel_purchased_gallons} gal "
            f"= {result.net_taxable_gallons} net gal × ${result.tax_rate:.4f} "
            f"= ${result.tax_due:.2f}"
        )


