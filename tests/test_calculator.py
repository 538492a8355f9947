"""Tests for the IFTA row calculator and aggregator."""

import itertools
from decimal import Decimal

import pytest

from ifta_engine.calculator import (
    NO_MPG,
    CalculationContext,
    FuelTaxCalculator,
    Totals,
    TripRow,
    aggregate,
    calculate,
    clamp_mpg,
    compute_fields,
    sanitize_number,
)
from ifta_engine.rates import FuelType, RateTable


@pytest.fixture(scope="module")
def table() -> RateTable:
    return RateTable.default()


@pytest.fixture
def ctx() -> CalculationContext:
    return CalculationContext(fleet_mpg="6.5", fuel_type="diesel", quarter="Q4 2025")


def _row(
    jurisdiction: str = "TX",
    miles=1000,
    taxable=None,
    fuel=100,
    row_id: int = 1,
) -> TripRow:
    return TripRow(
        row_id=row_id,
        jurisdiction=jurisdiction,
        total_miles=miles,
        taxable_miles=taxable,
        fuel_purchased_gallons=fuel,
    )


# ── Core formula ─────────────────────────────────────────────────────


def test_basic_tax_due(table, ctx):
    result = calculate(_row("TX", 1000, fuel=100), ctx, table)
    # 1000 / 6.5 = 153.85 -> 154 whole gallons
    assert result.tax_rate == Decimal("0.2000")
    assert result.taxable_gallons == 154
    assert result.net_taxable_gallons == 54
    assert result.tax_due == Decimal("10.80")
    assert not result.is_credit


def test_tax_credit_when_more_fuel_bought(table, ctx):
    result = calculate(_row("TX", 500, fuel=100), ctx, table)
    assert result.taxable_gallons == 77
    assert result.net_taxable_gallons == -23
    assert result.tax_due == Decimal("-4.60")
    assert result.is_credit


def test_high_rate_jurisdiction(table, ctx):
    result = calculate(_row("CA", 1000, fuel=50), ctx, table)
    assert result.net_taxable_gallons == 104
    assert result.tax_due == Decimal("101.92")


def test_exact_break_even(table, ctx):
    result = calculate(_row("TX", 650, fuel=100), ctx, table)
    assert result.net_taxable_gallons == 0
    assert result.tax_due == Decimal("0.00")


def test_zero_miles(table, ctx):
    result = calculate(_row("TX", 0, fuel=50), ctx, table)
    assert result.taxable_gallons == 0
    assert result.net_taxable_gallons == -50
    assert result.tax_due == Decimal("-10.00")


def test_whole_gallons_round_half_up():
    # 13 / 2 = 6.5 -> 7
    assert compute_fields(13, 2, 0, "0.10").taxable_gallons == Decimal("7")
    # 12.9 / 2 = 6.45 -> 6
    assert compute_fields("12.9", 2, 0, "0.10").taxable_gallons == Decimal("6")


def test_tax_rounds_half_up_to_cents():
    # 1 gallon * 0.125 = 0.125 -> 0.13
    assert compute_fields(1, 1, 0, "0.125").tax_due == Decimal("0.13")


def test_compute_fields_floors_mpg_at_one():
    assert compute_fields(100, 0, 0, "0.2").taxable_gallons == Decimal("100")


def test_fuel_type_selects_rate(table):
    ctx = CalculationContext(fleet_mpg="6.5", fuel_type="propane")
    result = calculate(_row("TX", 1000, fuel=0), ctx, table)
    assert result.tax_rate == Decimal("0.1500")


# ── Input sanitization ───────────────────────────────────────────────


def test_taxable_miles_mirror_total(table, ctx):
    result = calculate(_row("TX", 1200, taxable=None, fuel=0), ctx, table)
    assert result.taxable_miles == 1200


def test_taxable_miles_override(table, ctx):
    result = calculate(_row("TX", 1200, taxable=1000, fuel=0), ctx, table)
    assert result.taxable_miles == 1000
    assert result.warnings == []


def test_taxable_miles_clamped_to_total(table, ctx):
    result = calculate(_row("TX", 500, taxable=800, fuel=0), ctx, table)
    assert result.taxable_miles == 500
    assert "exceed total miles" in result.warnings[0]


@pytest.mark.parametrize("bad", ["abc", None, -50, "", float("nan"), True])
def test_invalid_miles_become_zero(table, ctx, bad):
    result = calculate(_row("TX", bad, fuel=0), ctx, table)
    assert result.total_miles == 0
    assert result.tax_due == Decimal("0.00")


def test_miles_and_gallons_capped(table, ctx):
    result = calculate(_row("TX", 5_000_000, fuel=500_000), ctx, table)
    assert result.total_miles == 1_000_000
    assert result.fuel_purchased_gallons == 100_000


def test_fractional_inputs_rounded(table, ctx):
    result = calculate(_row("TX", "999.5", fuel="10.4"), ctx, table)
    assert result.total_miles == 1000
    assert result.fuel_purchased_gallons == 10


def test_sanitize_number():
    assert sanitize_number("1,234") == Decimal("1234")
    assert sanitize_number("-5") == Decimal("0")
    assert sanitize_number("50", 0, 10) == Decimal("10")
    assert sanitize_number(float("inf"), 0, 10) == Decimal("10")
    assert sanitize_number("junk", 3) == Decimal("3")


@pytest.mark.parametrize(
    "value,expected",
    [("6.5", "6.5"), (0, "1"), ("-3", "1"), (50, "20"), ("abc", "6.5"), (None, "6.5")],
)
def test_clamp_mpg(value, expected):
    assert clamp_mpg(value) == Decimal(expected)


def test_context_normalizes_inputs():
    ctx = CalculationContext(fleet_mpg="99", fuel_type="LPG", quarter="4Q2025", base_jurisdiction=" ok ")
    assert ctx.fleet_mpg == Decimal("20")
    assert ctx.fuel_type == FuelType.PROPANE
    assert ctx.quarter == "Q4 2025"
    assert ctx.base_jurisdiction == "OK"


def test_context_evolve_renormalizes(ctx):
    changed = ctx.evolve(fleet_mpg="0.5")
    assert changed.fleet_mpg == Decimal("1")
    assert ctx.fleet_mpg == Decimal("6.5")


# ── Jurisdictions ────────────────────────────────────────────────────


def test_unknown_jurisdiction_gives_zero_rate_with_warning(table, ctx):
    result = calculate(_row("ZZ", 1000, fuel=0), ctx, table)
    assert result.tax_rate == Decimal("0")
    assert result.tax_due == Decimal("0.00")
    assert "Unknown jurisdiction" in result.warnings[0]


def test_blank_jurisdiction_row(table, ctx):
    result = calculate(_row("", 1000, fuel=0), ctx, table)
    assert not result.has_jurisdiction
    assert result.tax_rate == Decimal("0")
    assert result.warnings == []


def test_lowercase_jurisdiction(table, ctx):
    assert calculate(_row("tx"), ctx, table).jurisdiction == "TX"


# ── Properties ───────────────────────────────────────────────────────


@pytest.mark.parametrize("miles,taxable,fuel", [
    (0, None, 0),
    (1000, 900, 120),
    (250, 250, 300),
    (999_999, None, 1),
    (37, 40, 5),
])
def test_invariants_hold(table, ctx, miles, taxable, fuel):
    r = calculate(_row("CA", miles, taxable, fuel), ctx, table)
    assert 0 <= r.taxable_miles <= r.total_miles
    assert r.taxable_gallons >= 0
    assert r.net_taxable_gallons == r.taxable_gallons - r.fuel_purchased_gallons
    if r.net_taxable_gallons > 0:
        assert r.tax_due > 0
    elif r.net_taxable_gallons < 0:
        assert r.tax_due < 0


def test_calculation_is_idempotent(table, ctx):
    row = _row("PA", 4321, 4000, 333)
    assert calculate(row, ctx, table) == calculate(row, ctx, table)


def test_input_row_not_modified(table, ctx):
    row = _row("TX", "abc", 800, -1)
    calculate(row, ctx, table)
    assert row.total_miles == "abc"
    assert row.taxable_miles == 800


# ── Aggregation ──────────────────────────────────────────────────────


def test_aggregate_sums_rows(table, ctx):
    results = [
        calculate(_row("TX", 1000, fuel=100, row_id=1), ctx, table),
        calculate(_row("CA", 1000, fuel=50, row_id=2), ctx, table),
    ]
    totals = aggregate(results)
    assert totals.miles == 2000
    assert totals.fuel_purchased == 150
    assert totals.taxable_gallons == 308
    assert totals.net_gallons == 158
    assert totals.tax_due == Decimal("112.72")
    assert totals.row_count == 2
    assert totals.tax_status == "Tax Due"
    assert float(totals.current_mpg) == pytest.approx(13.333, abs=0.001)


def test_aggregate_skips_blank_rows(table, ctx):
    results = [
        calculate(_row("TX", 1000, fuel=100, row_id=1), ctx, table),
        calculate(_row("", 5000, fuel=5, row_id=2), ctx, table),
    ]
    totals = aggregate(results)
    assert totals.miles == 1000
    assert totals.row_count == 1


def test_aggregate_is_order_independent(table, ctx):
    rows = [
        _row("TX", 1000, fuel=100, row_id=1),
        _row("CA", 700, fuel=200, row_id=2),
        _row("ON", 1234, 1000, 10, row_id=3),
    ]
    results = [calculate(r, ctx, table) for r in rows]
    expected = aggregate(results)
    for perm in itertools.permutations(results):
        assert aggregate(perm) == expected


def test_totals_without_fuel_show_dash():
    totals = Totals(miles=500)
    assert totals.current_mpg is None
    assert totals.current_mpg_display == NO_MPG


def test_credit_status():
    assert Totals(tax_due=Decimal("-1.00")).tax_status == "Credit/Refund"


# ── Calculator object ────────────────────────────────────────────────


def test_calculator_totals_and_explain(ctx):
    calc = FuelTaxCalculator()
    rows = [_row("TX", 1000, fuel=100, row_id=1), _row("TX", 0, fuel=0, row_id=2)]
    results = calc.calculate_all(rows, ctx)
    assert len(results) == 2
    assert calc.totals(rows, ctx).tax_due == Decimal("10.80")
    text = calc.explain(results[0], ctx)
    assert "154 gal" in text
    assert "$10.80" in text


def test_trip_row_from_saved_dict():
    row = TripRow.from_dict(
        {"id": 7, "jurisdiction": "ok", "totalMiles": 300, "taxableMiles": "", "taxPaidGallons": 12}
    )
    assert row.row_id == 7
    assert row.jurisdiction == "OK"
    assert row.taxable_miles is None
    assert row.effective_taxable_miles == 300
    assert row.fuel_purchased_gallons == 12
