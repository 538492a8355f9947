#!/usr/bin/env python3
"""
IFTA Fuel Tax Engine - Entry Point

Quarterly IFTA fuel tax calculation for interstate motor carriers.
Looks up per-jurisdiction rates, computes taxable and net gallons,
totals tax due or credit and exports filing-ready reports.

Usage:
    python main.py calculate --jurisdiction TX --miles 1000 --fuel 100
    python main.py calculate --file examples/sample_trips.csv --export-pdf
    python main.py rates --country CAN --fuel-type gasoline
    python main.py selftest
    python main.py monitor --duration 60
    python main.py fetch-rates --quarter "Q1 2026"
"""

from ifta_engine.cli import main

if __name__ == "__main__":
    main()
