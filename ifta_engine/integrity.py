"""
Calculation self-tests and rate table integrity monitoring.

Monitors:
- Calculator output against fixed known-answer fixtures
- Rate table invariants (jurisdiction count, rate bounds, exchange rate)
- Rate freshness relative to the current calendar quarter
- Periodic health checks on a background schedule

Everything here is diagnostic. A failing check is logged and reflected
in the monitor's health status; it never blocks or alters calculations.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ifta_engine.calculator import compute_fields
from ifta_engine.config import EXPECTED_JURISDICTION_COUNT, get_settings
from ifta_engine.rates import (
    FuelType,
    RateTable,
    get_rate,
    quarter_for_date,
    quarter_sort_key,
    validate_rate,
)

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")


class HealthStatus(Enum):
    CHECKING = "checking"
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


class RateFreshness(Enum):
    CURRENT = "current"
    STALE = "stale"  # same quarter, but not reviewed recently
    NEW_QUARTER = "new_quarter"  # calendar moved past the table's quarter


@dataclass(frozen=True)
class SelfTestCase:
    """A known-answer calculation: inputs and the expected figures."""

    name: str
    miles: Decimal
    mpg: Decimal
    fuel_purchased: Decimal
    tax_rate: Decimal
    expected_taxable_gallons: Decimal
    expected_net_gallons: Decimal
    expected_tax_due: Decimal


def _case(name: str, miles, mpg, fuel, rate, gallons, net, tax) -> SelfTestCase:
    return SelfTestCase(
        name,
        Decimal(str(miles)),
        Decimal(str(mpg)),
        Decimal(str(fuel)),
        Decimal(str(rate)),
        Decimal(str(gallons)),
        Decimal(str(net)),
        Decimal(str(tax)),
    )


# Expected values follow the whole-gallon policy: 1000 / 6.5 = 153.846
# reports as 154 gallons.
DEFAULT_FIXTURES: tuple[SelfTestCase, ...] = (
    _case("Basic Tax Calculation", 1000, "6.5", 100, "0.20", 154, 54, "10.80"),
    _case("Tax Credit Calculation", 500, "6.5", 100, "0.20", 77, -23, "-4.60"),
    _case("High Rate State (CA)", 1000, "6.5", 50, "0.98", 154, 104, "101.92"),
    _case("Zero Miles", 0, "6.5", 50, "0.20", 0, -50, "-10.00"),
    _case("Exact Fuel Match", 650, "6.5", 100, "0.20", 100, 0, "0.00"),
)


@dataclass(frozen=True)
class RateBoundCheck:
    jurisdiction: str
    fuel_type: FuelType
    minimum: Decimal
    maximum: Decimal


# Known diesel rate ranges; a value outside means corrupted or stale data
DEFAULT_RATE_CHECKS: tuple[RateBoundCheck, ...] = (
    RateBoundCheck("TX", FuelType.DIESEL, Decimal("0.15"), Decimal("0.30")),
    RateBoundCheck("CA", FuelType.DIESEL, Decimal("0.80"), Decimal("1.20")),
    RateBoundCheck("PA", FuelType.DIESEL, Decimal("0.60"), Decimal("0.90")),
    RateBoundCheck("OK", FuelType.DIESEL, Decimal("0.15"), Decimal("0.25")),
    RateBoundCheck("NY", FuelType.DIESEL, Decimal("0.10"), Decimal("0.25")),
)


@dataclass
class FixtureResult:
    name: str
    passed: bool
    errors: list[str]
    actual: dict[str, Decimal]
    expected: dict[str, Decimal]


@dataclass
class SelfTestReport:
    passed: int
    failed: int
    results: list[FixtureResult]

    @property
    def all_passed(self) -> bool:
        return self.failed == 0


@dataclass
class CheckResult:
    passed: bool
    errors: list[str] = field(default_factory=list)


def run_test_case(case: SelfTestCase) -> FixtureResult:
    """Evaluate one fixture through the production calculation path."""
    figures = compute_fields(case.miles, case.mpg, case.fuel_purchased, case.tax_rate)
    actual = {
        "taxable_gallons": figures.taxable_gallons,
        "net_gallons": figures.net_taxable_gallons,
        "tax_due": figures.tax_due,
    }
    expected = {
        "taxable_gallons": case.expected_taxable_gallons,
        "net_gallons": case.expected_net_gallons,
        "tax_due": case.expected_tax_due,
    }

    errors = [
        f"{key}: expected {expected[key]}, got {actual[key]}"
        for key in ("taxable_gallons", "net_gallons", "tax_due")
        if abs(actual[key] - expected[key]) > TOLERANCE
    ]
    return FixtureResult(
        name=case.name,
        passed=not errors,
        errors=errors,
        actual=actual,
        expected=expected,
    )


def run_self_tests(
    fixtures: tuple[SelfTestCase, ...] = DEFAULT_FIXTURES,
) -> SelfTestReport:
    """Run every fixture and count passes and failures."""
    results = [run_test_case(case) for case in fixtures]
    failed = sum(1 for r in results if not r.passed)
    for r in results:
        if not r.passed:
            logger.error(f"Self-test FAILED: {r.name}: {'; '.join(r.errors)}")
    return SelfTestReport(
        passed=len(results) - failed,
        failed=failed,
        results=results,
    )


def validate_rate_table(
    table: RateTable,
    rate_checks: tuple[RateBoundCheck, ...] = DEFAULT_RATE_CHECKS,
    expected_count: int = EXPECTED_JURISDICTION_COUNT,
) -> CheckResult:
    """Static invariants of a rate table."""
    errors: list[str] = []

    for check in rate_checks:
        rate = get_rate(table, check.jurisdiction, check.fuel_type)
        if rate < check.minimum or rate > check.maximum:
            errors.append(
                f"{check.jurisdiction} {check.fuel_type.value}: {rate} outside "
                f"expected range {check.minimum}-{check.maximum}"
            )

    if table.jurisdiction_count != expected_count:
        errors.append(
            f"Expected {expected_count} jurisdictions, found {table.jurisdiction_count}"
        )

    for jurisdiction in table:
        for fuel, rate in jurisdiction.rates.items():
            if not validate_rate(rate):
                errors.append(f"{jurisdiction.code} {fuel.value}: invalid rate {rate}")

    exchange = table.exchange_rate
    if not exchange.is_plausible:
        errors.append(
            f"Exchange rates out of range: {exchange.us_to_canada} / {exchange.canada_to_us}"
        )

    return CheckResult(passed=not errors, errors=errors)


def validate_new_rates(rates: Optional[Mapping[str, Any]]) -> bool:
    """
    Sanity check downloaded rates before they replace the current table.

    ``rates`` maps jurisdiction code to a mapping of fuel type to rate.
    """
    if not rates or not isinstance(rates, Mapping):
        return False
    if len(rates) < 50:
        return False
    for code, fuel_rates in rates.items():
        if not fuel_rates:
            continue
        diesel = fuel_rates.get(FuelType.DIESEL, fuel_rates.get("diesel"))
        if diesel is not None and not validate_rate(diesel):
            logger.warning(f"Rejecting fetched rates: {code} diesel {diesel}")
            return False
    return True


def run_health_check(table: Optional[RateTable]) -> CheckResult:
    """Quick check that rates are loaded and the calculator still agrees."""
    if table is None:
        return CheckResult(False, ["Tax rates not loaded"])
    if table.jurisdiction_count < EXPECTED_JURISDICTION_COUNT:
        return CheckResult(
            False, [f"Missing jurisdictions: only {table.jurisdiction_count} found"]
        )
    if get_rate(table, "TX", FuelType.DIESEL) <= 0:
        return CheckResult(False, ["Rate lookup failing for TX diesel"])

    quick = run_test_case(DEFAULT_FIXTURES[0])
    if not quick.passed:
        return CheckResult(False, ["Calculation deviation detected"])
    return CheckResult(True)


def check_rate_freshness(
    table: RateTable,
    today: Optional[date] = None,
    stale_after_days: Optional[int] = None,
) -> RateFreshness:
    """Compare the table's quarter and review date against today."""
    today = today or date.today()
    if stale_after_days is None:
        stale_after_days = get_settings().stale_after_days

    current = quarter_for_date(today)
    if quarter_sort_key(current) > quarter_sort_key(table.quarter):
        logger.warning(
            f"New quarter detected: {current} > {table.quarter}; "
            "rates need a manual update"
        )
        return RateFreshness.NEW_QUARTER

    if table.last_updated is not None:
        age = (today - table.last_updated).days
        if age > stale_after_days:
            logger.info(f"Rates last reviewed {age} days ago; review recommended")
            return RateFreshness.STALE
    return RateFreshness.CURRENT


class IntegrityMonitor:
    """
    Background integrity monitor.

    Runs the health check, self-tests and freshness check on their own
    intervals. Results are kept on the monitor and exposed through
    :meth:`status`. A failure is reported as an alert only: the monitor
    has no corrective data source, so it never retries or "recalibrates".
    """

    def __init__(
        self,
        table_provider: Callable[[], Optional[RateTable]],
        health_interval: Optional[timedelta] = None,
        self_test_interval: Optional[timedelta] = None,
        update_interval: Optional[timedelta] = None,
        fixtures: tuple[SelfTestCase, ...] = DEFAULT_FIXTURES,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        settings = get_settings()
        self._table_provider = table_provider
        self.health_interval = health_interval or timedelta(
            seconds=settings.health_check_interval
        )
        self.self_test_interval = self_test_interval or timedelta(
            seconds=settings.self_test_interval
        )
        self.update_interval = update_interval or timedelta(
            seconds=settings.update_check_interval
        )
        self.fixtures = fixtures
        self._clock = clock

        self.health = HealthStatus.CHECKING
        self.health_message = "Verifying system..."
        self.freshness: Optional[RateFreshness] = None
        self.last_health_check: Optional[datetime] = None
        self.last_self_test: Optional[datetime] = None
        self.last_update_check: Optional[datetime] = None
        self.last_report: Optional[SelfTestReport] = None
        self.last_table_check: Optional[CheckResult] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _set_health(self, status: HealthStatus, message: str) -> None:
        if status != self.health:
            logger.info(f"System health: {status.value} ({message})")
        self.health = status
        self.health_message = message

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def run_self_tests(self) -> bool:
        self.last_self_test = self._clock()
        report = run_self_tests(self.fixtures)
        table = self._table_provider()
        table_check = (
            validate_rate_table(table)
            if table is not None
            else CheckResult(False, ["Tax rates not loaded"])
        )
        for error in table_check.errors:
            logger.error(f"Rate validation: {error}")

        self.last_report = report
        self.last_table_check = table_check

        passed = report.passed + (1 if table_check.passed else 0)
        failed = report.failed + (0 if table_check.passed else 1)
        logger.info(f"Self-tests complete: {passed}/{passed + failed} passed")

        if failed:
            self._set_health(HealthStatus.ERROR, f"{failed} test(s) failed")
            logger.error(
                "Calculation integrity degraded; check rates at "
                "https://www.iftach.org/taxmatrix4/"
            )
            return False
        self._set_health(HealthStatus.HEALTHY, "All tests passed")
        return True

    @property
    def self_tests_failing(self) -> bool:
        """True while the latest self-test run or table validation failed."""
        report_failed = self.last_report is not None and not self.last_report.all_passed
        table_failed = (
            self.last_table_check is not None and not self.last_table_check.passed
        )
        return report_failed or table_failed

    def run_health_check(self) -> bool:
        """
        Quick check between self-test runs.

        An ERROR raised by the self-tests stays until a later self-test
        run passes; the health check neither clears nor downgrades it.
        """
        self.last_health_check = self._clock()
        result = run_health_check(self._table_provider())
        if result.passed:
            if self.health != HealthStatus.HEALTHY and not self.self_tests_failing:
                self._set_health(HealthStatus.HEALTHY, "System OK")
            return True
        logger.error(f"Health check failed: {result.errors[0]}")
        if self.health != HealthStatus.ERROR:
            self._set_health(HealthStatus.WARNING, result.errors[0])
        return False

    def check_for_quarterly_update(self) -> Optional[RateFreshness]:
        self.last_update_check = self._clock()
        table = self._table_provider()
        if table is None:
            return None
        self.freshness = check_rate_freshness(table, self._clock().date())
        return self.freshness

    def run_initial_checks(self) -> bool:
        self._set_health(HealthStatus.CHECKING, "Verifying system...")
        if not self.run_self_tests():
            logger.error("Self-tests failed on startup")
            return False
        self.check_for_quarterly_update()
        self.last_health_check = self._clock()
        return True

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @staticmethod
    def _due(last: Optional[datetime], interval: timedelta, now: datetime) -> bool:
        return last is None or now - last >= interval

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Run whichever checks are due; returns the names of those run."""
        now = now or self._clock()
        ran: list[str] = []
        if self._due(self.last_self_test, self.self_test_interval, now):
            self.run_self_tests()
            ran.append("self_test")
        if self._due(self.last_health_check, self.health_interval, now):
            self.run_health_check()
            ran.append("health_check")
        if self._due(self.last_update_check, self.update_interval, now):
            self.check_for_quarterly_update()
            ran.append("update_check")
        return ran

    def _seconds_until_next(self, now: datetime) -> float:
        pending = []
        for last, interval in (
            (self.last_self_test, self.self_test_interval),
            (self.last_health_check, self.health_interval),
            (self.last_update_check, self.update_interval),
        ):
            if last is None:
                return 0.0
            pending.append((last + interval - now).total_seconds())
        return max(min(pending), 0.0)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Integrity monitor check raised")
            self._stop.wait(self._seconds_until_next(self._clock()) or 1.0)

    def start(self) -> None:
        """Run the initial checks, then the schedule on a daemon thread."""
        if self.is_running:
            return
        self.run_initial_checks()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="ifta-integrity-monitor",
        )
        self._thread.start()
        logger.info("Background integrity monitoring active")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Integrity monitoring stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called or the timeout passes."""
        return self._stop.wait(timeout)

    def status(self) -> dict[str, Any]:
        """Diagnostic snapshot of the monitor."""
        table = self._table_provider()
        report = self.last_report
        return {
            "is_running": self.is_running,
            "system_health": self.health.value,
            "message": self.health_message,
            "last_update_check": self.last_update_check,
            "last_self_test": self.last_self_test,
            "last_health_check": self.last_health_check,
            "rate_freshness": self.freshness.value if self.freshness else None,
            "passed_tests": report.passed if report else 0,
            "failed_tests": report.failed if report else 0,
            "test_results": report.results if report else [],
            "current_quarter": table.quarter if table else None,
            "jurisdiction_count": table.jurisdiction_count if table else 0,
        }
