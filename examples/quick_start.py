#!/usr/bin/env python3
"""
Quick Start Example
===================

Demonstrates basic usage of the ledger and calculator to compute IFTA
fuel tax for a two-state diesel quarter and print the result.

Usage:
    python examples/quick_start.py
"""

from ifta_engine.calculator import CalculationContext
from ifta_engine.ledger import AddRow, LedgerState, LoadRows, reduce
from ifta_engine.rates import RateTable


def main() -> None:
    # Rates for the quarter being filed
    table = RateTable.for_quarter("Q4 2025")

    # Diesel fleet averaging 6.5 MPG, based in Texas
    state = LedgerState(
        context=CalculationContext(
            fleet_mpg="6.5",
            fuel_type="diesel",
            quarter="Q4 2025",
            base_jurisdiction="TX",
        )
    )

    # Miles driven and tax-paid gallons bought in each jurisdiction
    state = reduce(
        state,
        LoadRows((
            AddRow(jurisdiction="TX", total_miles=1000, fuel_purchased_gallons=100),
            AddRow(jurisdiction="CA", total_miles=500, fuel_purchased_gallons=100),
        )),
    )

    for r in state.results(table):
        print(f"Jurisdiction:   {r.jurisdiction}")
        print(f"Tax Rate:       ${r.tax_rate:.4f}/gal")
        print(f"Taxable Gal:    {r.taxable_gallons}")
        print(f"Net Gal:        {r.net_taxable_gallons}")
        print(f"Tax Due:        ${r.tax_due:.2f}")
        print()

    totals = state.totals(table)
    print(f"Total Miles:    {totals.miles:,}")
    print(f"Actual MPG:     {totals.current_mpg_display}")
    print(f"{totals.tax_status}: ${abs(totals.tax_due):.2f}")


if __name__ == "__main__":
    main()
