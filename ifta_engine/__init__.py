"""
IFTA Fuel Tax Engine
====================

Quarterly International Fuel Tax Agreement (IFTA) calculations for
motor carriers operating across US states and Canadian provinces.

Modules:
    rates           - Per-quarter fuel tax rate table and rate lookup
    calculator      - Row calculator and quarter aggregation
    ledger          - Immutable trip ledger and reducer
    integrity       - Calculation self-tests and background monitor
    fetcher         - Quarterly rate chart download and cache
    report_generator- Quarterly reports with CSV/PDF/JSON export
    storage         - Saved calculation sessions
    cli             - Command-line interface
"""

__version__ = "1.1.0"

from ifta_engine.rates import RateTable, get_rate
from ifta_engine.calculator import FuelTaxCalculator, aggregate, calculate
from ifta_engine.ledger import LedgerState, reduce
from ifta_engine.integrity import IntegrityMonitor, run_self_tests
from ifta_engine.report_generator import ReportGenerator

__all__ = [
    "RateTable",
    "get_rate",
    "FuelTaxCalculator",
    "calculate",
    "aggregate",
    "LedgerState",
    "reduce",
    "IntegrityMonitor",
    "run_self_tests",
    "ReportGenerator",
]
