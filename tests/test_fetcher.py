"""Tests for the quarterly rate fetcher."""

import json
from datetime import date
from decimal import Decimal

import pytest
import requests

from ifta_engine.exceptions import RateFetchError
from ifta_engine.fetcher import RateFetcher, parse_rate_xml
from ifta_engine.rates import BASE_EXCHANGE_RATE, FuelType, RateTable


def _record(code: str, diesel: str = "0.3000", gasoline: str = "0.2500") -> str:
    return (
        f"<RECORD><JURISDICTION>{code}</JURISDICTION><COUNTRY>US</COUNTRY>"
        "<FUEL_TYPE>Special Diesel</FUEL_TYPE><FUEL_TYPE>Gasoline</FUEL_TYPE>"
        "<FUEL_TYPE>Hydrogen</FUEL_TYPE>"
        f"<RATE>{diesel}</RATE><RATE>0.4139</RATE>"
        f"<RATE>{gasoline}</RATE><RATE>0.3449</RATE>"
        "<RATE>0.5000</RATE><RATE>0.6899</RATE>"
        "</RECORD>"
    )


def _chart(codes, exchange: str = "1.3800 / 0.7246", **overrides) -> bytes:
    records = "".join(
        _record(code, *overrides.get(code, ())) for code in codes
    )
    return (
        f"<TAXMATRIX><EXCHANGE_RATE>{exchange}</EXCHANGE_RATE>{records}</TAXMATRIX>"
    ).encode()


class _Response:
    def __init__(self, content: bytes, status: int = 200) -> None:
        self.content = content
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class _Session:
    def __init__(self, response=None, error=None) -> None:
        self.headers = {}
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def table() -> RateTable:
    return RateTable.default()


@pytest.fixture
def full_chart(table) -> bytes:
    return _chart(table.codes(), TX=("0.2100", "0.0000"))


def _fetcher(tmp_path, session) -> RateFetcher:
    return RateFetcher(
        cache_path=tmp_path / "rates.json",
        base_url="https://example.test/charts/",
        timeout=3,
        cache_expire_days=7,
        session=session,
    )


# ── XML parsing ──────────────────────────────────────────────────────


def test_parse_us_rates_from_pairs():
    fetched = parse_rate_xml(_chart(["TX"]), "1Q2026")
    assert fetched.quarter == "Q1 2026"
    assert fetched.rates["TX"][FuelType.DIESEL] == Decimal("0.3000")
    assert fetched.rates["TX"][FuelType.GASOLINE] == Decimal("0.2500")
    assert fetched.countries["TX"] == "US"


def test_unknown_fuel_names_skipped():
    fetched = parse_rate_xml(_chart(["TX"]), "Q1 2026")
    assert set(fetched.rates["TX"]) == {FuelType.DIESEL, FuelType.GASOLINE}


def test_out_of_range_rates_dropped():
    fetched = parse_rate_xml(_chart(["TX"], TX=("2.5000", "abc")), "Q1 2026")
    assert fetched.rates["TX"] == {}


def test_exchange_rate_parsed():
    fetched = parse_rate_xml(_chart(["TX"]), "Q1 2026")
    assert fetched.exchange_rate.us_to_canada == Decimal("1.3800")
    assert fetched.exchange_rate.canada_to_us == Decimal("0.7246")


def test_labelled_exchange_rate_parsed():
    fetched = parse_rate_xml(_chart(["TX"], exchange="US = 1.3700 CAN = 0.7299"), "Q1 2026")
    assert fetched.exchange_rate.us_to_canada == Decimal("1.3700")


def test_implausible_exchange_rate_ignored():
    fetched = parse_rate_xml(_chart(["TX"], exchange="9.0000 / 0.1000"), "Q1 2026")
    assert fetched.exchange_rate == BASE_EXCHANGE_RATE


@pytest.mark.parametrize("content", [b"", b"<not-xml", b"<TAXMATRIX></TAXMATRIX>"])
def test_bad_charts_raise(content):
    with pytest.raises(RateFetchError):
        parse_rate_xml(content, "Q1 2026")


# ── Download ─────────────────────────────────────────────────────────


def test_chart_url_uses_legacy_quarter(tmp_path):
    fetcher = _fetcher(tmp_path, _Session())
    assert fetcher.chart_url("Q1 2026") == "https://example.test/charts/1Q2026.xml"


def test_fetch_quarter_uses_timeout(tmp_path, full_chart):
    session = _Session(_Response(full_chart))
    fetched = _fetcher(tmp_path, session).fetch_quarter("Q1 2026")
    assert session.calls == [("https://example.test/charts/1Q2026.xml", 3)]
    assert len(fetched.rates) == 58


def test_fetch_network_error(tmp_path):
    fetcher = _fetcher(tmp_path, _Session(error=requests.ConnectionError("offline")))
    with pytest.raises(RateFetchError, match="offline"):
        fetcher.fetch_quarter("Q1 2026")


def test_fetch_http_error(tmp_path):
    fetcher = _fetcher(tmp_path, _Session(_Response(b"", status=404)))
    with pytest.raises(RateFetchError, match="404"):
        fetcher.fetch_quarter("Q1 2026")


def test_needs_update():
    table = RateTable.default()
    assert not RateFetcher.needs_update(table, date(2025, 12, 15))
    assert RateFetcher.needs_update(table, date(2026, 1, 2))


# ── Applying rates ───────────────────────────────────────────────────


def test_apply_merges_positive_rates(tmp_path, table, full_chart):
    fetcher = _fetcher(tmp_path, _Session())
    fetched = parse_rate_xml(full_chart, "Q1 2026")
    updated = fetcher.apply(table, fetched, date(2026, 1, 5))
    assert updated.quarter == "Q1 2026"
    assert updated.last_updated == date(2026, 1, 5)
    assert updated.get_rate("TX", "diesel") == Decimal("0.2100")
    # Zero gasoline rate is not merged
    assert updated.get_rate("TX", "gasoline") == Decimal("0.2000")
    assert updated.get_rate("CA", "diesel") == Decimal("0.3000")
    assert table.get_rate("TX", "diesel") == Decimal("0.2000")


def test_apply_rejects_incomplete_chart(tmp_path, table):
    fetcher = _fetcher(tmp_path, _Session())
    fetched = parse_rate_xml(_chart(["TX", "OK"]), "Q1 2026")
    with pytest.raises(RateFetchError, match="failed validation"):
        fetcher.apply(table, fetched)


# ── Cache ────────────────────────────────────────────────────────────


def test_cache_round_trip(tmp_path, table, full_chart):
    fetcher = _fetcher(tmp_path, _Session())
    updated = fetcher.apply(table, parse_rate_xml(full_chart, "Q1 2026"), date(2026, 1, 5))
    assert fetcher.save_cache(updated)

    cached = fetcher.load_cached(table, date(2026, 1, 8))
    assert cached.quarter == "Q1 2026"
    assert cached.get_rate("TX") == Decimal("0.2100")
    assert cached.exchange_rate.us_to_canada == Decimal("1.3800")


def test_expired_cache_ignored(tmp_path, table):
    fetcher = _fetcher(tmp_path, _Session())
    fetcher.save_cache(table.with_rates({}, last_updated=date(2026, 1, 1)))
    assert fetcher.load_cached(table, date(2026, 1, 8)) is None


def test_missing_cache(tmp_path, table):
    assert _fetcher(tmp_path, _Session()).load_cached(table) is None


def test_corrupt_cache_ignored(tmp_path, table):
    fetcher = _fetcher(tmp_path, _Session())
    fetcher.cache_path.write_text("{not json", encoding="utf-8")
    assert fetcher.load_cached(table) is None


def _write_cache(fetcher, **overrides) -> None:
    data = {
        "quarter": "Q1 2026",
        "lastUpdated": "2026-01-05",
        "exchangeRate": {"usToCanada": "1.3800", "canadaToUs": "0.7246"},
        "jurisdictions": {"TX": {"rates": {"diesel": "0.2100"}}},
    }
    data.update(overrides)
    fetcher.cache_path.write_text(json.dumps(data), encoding="utf-8")


@pytest.mark.parametrize(
    "overrides",
    [
        {"jurisdictions": {"TX": {"rates": {"diesel": "abc"}}}},
        {"exchangeRate": {"usToCanada": "1.38"}},
        {"quarter": "Q9 2026"},
        {"jurisdictions": {"TX": "0.21"}},
    ],
)
def test_partly_invalid_cache_ignored(tmp_path, table, overrides):
    fetcher = _fetcher(tmp_path, _Session())
    _write_cache(fetcher, **overrides)
    assert fetcher.load_cached(table, date(2026, 1, 8)) is None


def test_refresh_ignores_bad_cache_and_fetches(tmp_path, table, full_chart):
    session = _Session(_Response(full_chart))
    fetcher = _fetcher(tmp_path, session)
    _write_cache(fetcher, jurisdictions={"TX": {"rates": {"diesel": "abc"}}})
    result = fetcher.refresh(table, date(2026, 1, 8))
    assert result.updated
    assert result.table.get_rate("TX") == Decimal("0.2100")


# ── Refresh flow ─────────────────────────────────────────────────────


def test_refresh_not_needed(tmp_path, table):
    session = _Session()
    result = _fetcher(tmp_path, session).refresh(table, date(2025, 12, 1))
    assert not result.updated
    assert result.table is table
    assert session.calls == []


def test_refresh_fetches_new_quarter_and_caches(tmp_path, table, full_chart):
    session = _Session(_Response(full_chart))
    fetcher = _fetcher(tmp_path, session)

    result = fetcher.refresh(table, date(2026, 1, 15))
    assert result.updated
    assert result.table.quarter == "Q1 2026"
    assert fetcher.cache_path.exists()
    assert json.loads(fetcher.cache_path.read_text())["quarter"] == "Q1 2026"

    # Second run is served from the cache
    again = fetcher.refresh(table, date(2026, 1, 16))
    assert not again.updated
    assert again.table.quarter == "Q1 2026"
    assert len(session.calls) == 1


def test_refresh_falls_back_on_failure(tmp_path, table):
    fetcher = _fetcher(tmp_path, _Session(error=requests.Timeout("timed out")))
    result = fetcher.refresh(table, date(2026, 1, 15))
    assert not result.updated
    assert result.table is table
    assert "timed out" in result.message
    assert not fetcher.cache_path.exists()


def test_refresh_explicit_quarter(tmp_path, table, full_chart):
    session = _Session(_Response(full_chart))
    result = _fetcher(tmp_path, session).refresh(table, date(2025, 12, 1), quarter="Q1 2026")
    assert result.updated
    assert session.calls[0][0].endswith("1Q2026.xml")
