"""Tests for the RateTable and rate lookup."""

import logging
from datetime import date
from decimal import Decimal

import pytest

from ifta_engine.exceptions import QuarterFormatError
from ifta_engine.rates import (
    BASE_QUARTER,
    ExchangeRate,
    FuelType,
    Jurisdiction,
    RateTable,
    available_quarters,
    fuel_type_from_name,
    get_rate,
    legacy_quarter,
    next_quarter,
    normalize_fuel_type,
    parse_quarter,
    quarter_bounds,
    quarter_for_date,
    quarter_sort_key,
    validate_rate,
)


@pytest.fixture
def table() -> RateTable:
    return RateTable.default()


def _single(rates: dict) -> RateTable:
    return RateTable(
        "Q4 2025",
        {"ZZ": Jurisdiction("ZZ", "Testland", "US", rates)},
    )


# ── Built-in table ───────────────────────────────────────────────────


def test_default_table_has_58_jurisdictions(table: RateTable):
    assert len(table) == 58
    assert len(table.us_jurisdictions()) == 48
    assert len(table.canadian_jurisdictions()) == 10


def test_default_table_quarter_and_dates(table: RateTable):
    assert table.quarter == BASE_QUARTER
    assert table.effective_date == date(2025, 10, 1)
    assert table.end_date == date(2025, 12, 31)
    assert table.last_updated == date(2025, 11, 29)


def test_all_builtin_rates_within_bounds(table: RateTable):
    for jurisdiction in table:
        for rate in jurisdiction.rates.values():
            assert validate_rate(rate), jurisdiction.code


def test_codes_are_unique_two_letter(table: RateTable):
    codes = table.codes()
    assert len(codes) == len(set(codes))
    assert all(len(c) == 2 and c.isupper() for c in codes)


def test_jurisdiction_list_us_first_then_by_name(table: RateTable):
    listing = table.jurisdiction_list()
    countries = [j.country for j in listing]
    assert countries == sorted(countries, key=lambda c: c != "US")
    us_names = [j.name for j in listing if j.country == "US"]
    assert us_names == sorted(us_names)
    assert listing[0].name == "Alabama"


def test_label_format(table: RateTable):
    assert table.get("TX").label == "Texas (TX)"


def test_exchange_rate_is_plausible(table: RateTable):
    assert table.exchange_rate.is_plausible
    assert not ExchangeRate(Decimal("0.9"), Decimal("0.7")).is_plausible


# ── Rate lookup ──────────────────────────────────────────────────────


def test_texas_diesel_rate(table: RateTable):
    assert get_rate(table, "TX", FuelType.DIESEL) == Decimal("0.2000")


def test_california_diesel_rate(table: RateTable):
    assert get_rate(table, "CA", "diesel") == Decimal("0.980")


def test_lookup_is_case_insensitive_and_trimmed(table: RateTable):
    assert get_rate(table, " tx ", "diesel") == Decimal("0.2000")
    assert "tx" in table


def test_fuel_alias_lookup(table: RateTable):
    assert get_rate(table, "TX", "lpg") == Decimal("0.1500")


def test_empty_code_returns_zero(table: RateTable):
    assert get_rate(table, "", "diesel") == Decimal("0")
    assert get_rate(table, None, "diesel") == Decimal("0")


def test_unknown_code_returns_zero_and_logs(table: RateTable, caplog):
    with caplog.at_level(logging.WARNING, logger="ifta_engine"):
        assert get_rate(table, "ZZ", "diesel") == Decimal("0")
    assert "Unknown jurisdiction" in caplog.text


def test_missing_table_returns_zero():
    assert get_rate(None, "TX", "diesel") == Decimal("0")


def test_missing_fuel_falls_back_to_diesel():
    t = _single({FuelType.DIESEL: Decimal("0.25")})
    assert get_rate(t, "ZZ", "gasoline") == Decimal("0.25")


def test_out_of_range_rate_rejected(caplog):
    t = _single({FuelType.DIESEL: Decimal("2.50")})
    with caplog.at_level(logging.WARNING, logger="ifta_engine"):
        assert get_rate(t, "ZZ", "diesel") == Decimal("0")
    assert "out-of-range" in caplog.text


def test_negative_rate_rejected():
    t = _single({FuelType.DIESEL: Decimal("-0.10")})
    assert get_rate(t, "ZZ", "diesel") == Decimal("0")


# ── Rate validation ──────────────────────────────────────────────────


@pytest.mark.parametrize("value", [0, "0.25", Decimal("2"), 1.999])
def test_validate_rate_accepts(value):
    assert validate_rate(value)


@pytest.mark.parametrize(
    "value", [-0.01, "2.01", "abc", None, True, float("nan"), float("inf")]
)
def test_validate_rate_rejects(value):
    assert not validate_rate(value)


# ── Fuel types ───────────────────────────────────────────────────────


def test_normalize_fuel_aliases():
    assert normalize_fuel_type("Special Diesel") == FuelType.DIESEL
    assert normalize_fuel_type("e85") == FuelType.ETHANOL
    assert normalize_fuel_type("M-85") == FuelType.METHANOL
    assert normalize_fuel_type(FuelType.CNG) == FuelType.CNG


def test_unknown_fuel_defaults_to_diesel():
    assert normalize_fuel_type("hydrogen") == FuelType.DIESEL
    assert normalize_fuel_type(None) == FuelType.DIESEL


def test_fuel_type_from_name_is_strict():
    assert fuel_type_from_name("hydrogen") is None
    assert fuel_type_from_name("Gasoline") == FuelType.GASOLINE


# ── Quarters ─────────────────────────────────────────────────────────


def test_parse_quarter_forms():
    assert parse_quarter("Q4 2025") == (2025, 4)
    assert parse_quarter("4Q2025") == (2025, 4)
    assert parse_quarter("q1 2026") == (2026, 1)


@pytest.mark.parametrize("text", ["", "Q5 2025", "2025 Q4", "fourth quarter"])
def test_parse_quarter_rejects(text):
    with pytest.raises(QuarterFormatError):
        parse_quarter(text)


def test_quarter_format_error_is_value_error():
    with pytest.raises(ValueError):
        parse_quarter("nope")


def test_quarter_helpers():
    assert legacy_quarter("Q1 2026") == "1Q2026"
    assert next_quarter("Q4 2025") == "Q1 2026"
    assert next_quarter("Q2 2025") == "Q3 2025"
    assert quarter_for_date(date(2026, 2, 1)) == "Q1 2026"
    assert quarter_for_date(date(2025, 12, 31)) == "Q4 2025"
    assert quarter_bounds("Q2 2025") == (date(2025, 4, 1), date(2025, 6, 30))


def test_quarter_sort_key_orders_quarters():
    assert quarter_sort_key("Q1 2026") > quarter_sort_key("Q4 2025")
    assert quarter_sort_key("garbage") == 0


# ── Quarterly history ────────────────────────────────────────────────


def test_available_quarters_newest_first():
    quarters = available_quarters()
    assert quarters[0] == "Q4 2025"
    assert quarters[-1] == "Q1 2024"


def test_for_quarter_applies_history():
    t = RateTable.for_quarter("Q1 2024")
    assert t.quarter == "Q1 2024"
    assert t.get_rate("CA", "diesel") == Decimal("0.920")
    assert t.get_rate("PA", "diesel") == Decimal("0.741")
    assert t.get_rate("TX", "diesel") == Decimal("0.2000")


def test_for_quarter_accepts_legacy_label():
    assert RateTable.for_quarter("2Q2025").get_rate("CA") == Decimal("0.970")


def test_for_unknown_quarter_uses_base_rates():
    t = RateTable.for_quarter("Q1 2030")
    assert t.quarter == "Q1 2030"
    assert t.get_rate("CA") == Decimal("0.980")


# ── Replacement ──────────────────────────────────────────────────────


def test_with_rates_returns_new_table(table: RateTable):
    updated = table.with_rates(
        {"TX": {FuelType.DIESEL: Decimal("0.2100")}, "ZZ": {FuelType.DIESEL: Decimal("1")}},
        quarter="Q1 2026",
    )
    assert updated.get_rate("TX") == Decimal("0.2100")
    assert updated.quarter == "Q1 2026"
    assert "ZZ" not in updated
    # Original untouched
    assert table.get_rate("TX") == Decimal("0.2000")
    assert table.quarter == "Q4 2025"


def test_with_rates_keeps_other_fuels(table: RateTable):
    updated = table.with_rates({"TX": {FuelType.DIESEL: Decimal("0.2100")}})
    assert updated.get_rate("TX", "propane") == Decimal("0.1500")


def test_to_dict_shape(table: RateTable):
    data = table.to_dict()
    assert data["quarter"] == "Q4 2025"
    assert data["lastUpdated"] == "2025-11-29"
    assert data["exchangeRate"]["usToCanada"] == "1.3797"
    assert data["jurisdictions"]["TX"]["rates"]["diesel"] == "0.2000"
