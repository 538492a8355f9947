"""
Command-line interface for the IFTA Fuel Tax Engine.

Provides subcommands for quarterly tax calculation, the rate reference,
integrity self-tests, background monitoring and rate updates.
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from ifta_engine.calculator import CalculationContext, FuelTaxCalculator
from ifta_engine.config import get_settings
from ifta_engine.exceptions import IFTAEngineError
from ifta_engine.fetcher import RateFetcher
from ifta_engine.integrity import (
    IntegrityMonitor,
    RateFreshness,
    check_rate_freshness,
    run_health_check,
    run_self_tests,
    validate_rate_table,
)
from ifta_engine.ledger import (
    AddRow,
    LedgerState,
    LoadRows,
    SetBaseJurisdiction,
    SetFleetMpg,
    SetFuelType,
    SetQuarter,
    reduce,
)
from ifta_engine.logging_config import setup_logging
from ifta_engine.rates import FuelType, RateTable, normalize_quarter
from ifta_engine.report_generator import (
    ReportGenerator,
    export_filename,
    load_trips_csv,
)
from ifta_engine.storage import load_session, save_session

console = Console()

FUEL_CHOICES = [f.value for f in FuelType]


def _load_table(quarter: str, use_cache: bool = False) -> RateTable:
    """Rate table for a quarter, preferring fetched rates when asked."""
    table = RateTable.for_quarter(quarter)
    if use_cache:
        cached = RateFetcher().load_cached(table)
        if cached is not None and cached.quarter == table.quarter:
            return cached
    return table


def _build_state(args: argparse.Namespace) -> LedgerState:
    """Ledger from a saved session or defaults, with CLI overrides applied."""
    settings = get_settings()

    if args.load_session:
        state = load_session(args.load_session, RateTable.default())
        if state is None:
            console.print(f"[red]No saved session at {args.load_session}[/red]")
            sys.exit(1)
    else:
        state = LedgerState(
            context=CalculationContext(
                fleet_mpg=settings.default_mpg,
                fuel_type=settings.default_fuel_type,
                quarter=settings.default_quarter,
                base_jurisdiction=settings.base_jurisdiction,
            )
        )

    if args.quarter:
        state = reduce(state, SetQuarter(normalize_quarter(args.quarter)))
    if args.fuel_type:
        state = reduce(state, SetFuelType(args.fuel_type))
    if args.mpg is not None:
        state = reduce(state, SetFleetMpg(args.mpg))
    if args.base:
        state = reduce(state, SetBaseJurisdiction(args.base))

    if args.file:
        csv_path = Path(args.file)
        if not csv_path.exists():
            console.print(f"[red]File not found: {args.file}[/red]")
            sys.exit(1)
        state = reduce(state, LoadRows(tuple(load_trips_csv(csv_path))))
    elif args.jurisdiction:
        if args.miles is None:
            console.print("[red]Provide --miles with --jurisdiction[/red]")
            sys.exit(1)
        row = AddRow(
            jurisdiction=args.jurisdiction,
            total_miles=args.miles,
            taxable_miles=args.taxable_miles,
            fuel_purchased_gallons=args.fuel or 0,
        )
        if args.load_session:
            state = reduce(state, row)
        else:
            state = reduce(state, LoadRows((row,)))
    elif not args.load_session:
        console.print(
            "[red]Provide --jurisdiction and --miles, --file, or --load-session[/red]"
        )
        sys.exit(1)

    return state


def _print_ledger(state: LedgerState, table: RateTable) -> None:
    results = [r for r in state.results(table) if r.has_jurisdiction]
    totals = state.totals(table)
    ctx = state.context

    grid = Table(
        title=f"IFTA Calculation - {ctx.quarter} ({ctx.fuel_type.value})",
        box=box.ROUNDED,
        show_lines=True,
    )
    grid.add_column("Jurisdiction", style="bold")
    grid.add_column("Total Miles", justify="right")
    grid.add_column("Taxable Miles", justify="right")
    grid.add_column("Tax Paid Gal", justify="right")
    grid.add_column("Rate", justify="right")
    grid.add_column("Taxable Gal", justify="right")
    grid.add_column("Net Gal", justify="right")
    grid.add_column("Tax Due", justify="right", style="bold")

    for r in results:
        color = "red" if r.tax_due > 0 else "green" if r.tax_due < 0 else ""
        grid.add_row(
            r.jurisdiction,
            f"{r.total_miles:,}",
            f"{r.taxable_miles:,}",
            f"{r.fuel_purchased_gallons:,}",
            f"${r.tax_rate:.4f}",
            f"{r.taxable_gallons:,}",
            f"{r.net_taxable_gallons:,}",
            f"[{color}]${r.tax_due:,.2f}[/{color}]" if color else f"${r.tax_due:,.2f}",
        )

    console.print(grid)
    console.print()
    console.print(
        Panel(
            f"[bold]Jurisdictions:[/bold] {totals.row_count}\n"
            f"[bold]Total Miles:[/bold] {totals.miles:,}\n"
            f"[bold]Taxable Miles:[/bold] {totals.taxable_miles:,}\n"
            f"[bold]Fuel Purchased:[/bold] {totals.fuel_purchased:,} gal\n"
            f"[bold]Fleet MPG (actual):[/bold] {totals.current_mpg_display}\n"
            f"[bold]Net Taxable Gallons:[/bold] {totals.net_gallons:,}\n"
            f"[bold]{totals.tax_status}:[/bold] ${abs(totals.tax_due):,.2f}",
            title="Quarter Summary",
            border_style="green" if totals.tax_due < 0 else "blue",
        )
    )

    for r in results:
        for w in r.warnings:
            console.print(f"[yellow]Warning ({r.jurisdiction}): {w}[/yellow]")


def _print_single(state: LedgerState, table: RateTable) -> None:
    calc = FuelTaxCalculator(table)
    ctx = state.context
    result = state.results(table)[0]
    jurisdiction = table.get(result.jurisdiction)

    console.print(
        Panel(
            f"[bold]Jurisdiction:[/bold] "
            f"{jurisdiction.label if jurisdiction else result.jurisdiction}\n"
            f"[bold]Quarter:[/bold] {ctx.quarter}\n"
            f"[bold]Fuel Type:[/bold] {ctx.fuel_type.value}\n"
            f"[bold]Fleet MPG:[/bold] {ctx.fleet_mpg}\n"
            f"[bold]Taxable Miles:[/bold] {result.taxable_miles:,}\n"
            f"[bold]Tax Rate:[/bold] ${result.tax_rate:.4f}/gal\n"
            f"[bold]Taxable Gallons:[/bold] {result.taxable_gallons:,}\n"
            f"[bold]Tax Paid Gallons:[/bold] {result.fuel_purchased_gallons:,}\n"
            f"[bold]Net Taxable Gallons:[/bold] {result.net_taxable_gallons:,}\n"
            f"[bold]{'Credit' if result.is_credit else 'Tax Due'}:[/bold] "
            f"${abs(result.tax_due):,.2f}\n\n"
            f"[dim]{calc.explain(result, ctx)}[/dim]",
            title="IFTA Calculation",
            border_style="blue",
        )
    )

    for w in result.warnings:
        console.print(f"[yellow]Warning: {w}[/yellow]")


def _export(args: argparse.Namespace, state: LedgerState, table: RateTable) -> None:
    wanted = [
        args.export_csv,
        args.export_xls,
        args.export_pdf,
        args.export_json,
    ]
    if all(value is None for value in wanted):
        return

    rg = ReportGenerator(args.output_dir or "reports", table)
    report = rg.ifta_report(state, table)
    if not report["jurisdiction_breakdown"]:
        console.print("[yellow]No data to export. Add some trip data first.[/yellow]")
        return

    quarter = state.context.quarter
    today = date.today()
    if args.export_csv is not None:
        name = args.export_csv or export_filename(quarter, "csv", today)
        rg.to_csv(report, name)
        console.print(f"[green]CSV exported to {rg.output_dir / name}[/green]")
    if args.export_xls is not None:
        name = args.export_xls or export_filename(quarter, "csv", today, "spreadsheet")
        rg.to_spreadsheet_csv(report, name)
        console.print(f"[green]Spreadsheet exported to {rg.output_dir / name}[/green]")
    if args.export_pdf is not None:
        name = args.export_pdf or export_filename(quarter, "pdf", today)
        rg.to_pdf(report, name, include_rates=args.include_rates, table=table)
        console.print(f"[green]PDF exported to {rg.output_dir / name}[/green]")
    if args.export_json is not None:
        name = args.export_json or export_filename(quarter, "json", today)
        rg.to_json(report, name)
        console.print(f"[green]JSON exported to {rg.output_dir / name}[/green]")


# -----------------------------------------------------------------------
# Subcommand: calculate
# -----------------------------------------------------------------------


def cmd_calculate(args: argparse.Namespace) -> None:
    """Calculate IFTA tax for one jurisdiction, a trip CSV or a saved session."""
    state = _build_state(args)
    table = _load_table(state.context.quarter, use_cache=args.use_cache)

    single = bool(args.jurisdiction) and not args.file and not args.load_session
    if single:
        _print_single(state, table)
    else:
        _print_ledger(state, table)

    _export(args, state, table)

    if args.save_session is not None:
        path = save_session(
            state, args.save_session or get_settings().session_file
        )
        console.print(f"[green]Session saved to {path}[/green]")


# -----------------------------------------------------------------------
# Subcommand: rates
# -----------------------------------------------------------------------


def cmd_rates(args: argparse.Namespace) -> None:
    """Display the rate reference for one or all jurisdictions."""
    table = _load_table(args.quarter or get_settings().default_quarter, args.use_cache)

    if args.jurisdiction:
        jurisdiction = table.get(args.jurisdiction)
        if not jurisdiction:
            console.print(f"[red]Unknown jurisdiction: {args.jurisdiction}[/red]")
            sys.exit(1)

        lines = [
            f"[bold]Jurisdiction:[/bold] {jurisdiction.label}",
            f"[bold]Country:[/bold] {jurisdiction.country}",
            f"[bold]Quarter:[/bold] {table.quarter}",
        ]
        for fuel, rate in jurisdiction.rates.items():
            lines.append(f"[bold]{fuel.value.title()}:[/bold] ${rate:.4f}/gal")
        if jurisdiction.footnote:
            lines.append(f"[bold]Notes:[/bold] {jurisdiction.footnote}")
        console.print(
            Panel(
                "\n".join(lines),
                title=f"{jurisdiction.name} Fuel Tax Rates",
                border_style="cyan",
            )
        )
        return

    fuel = args.fuel_type or "diesel"
    search = (args.search or "").strip().lower()
    rows = table.jurisdiction_list()
    if args.country:
        rows = [j for j in rows if j.country == args.country]
    if search:
        rows = [
            j for j in rows
            if search in j.name.lower() or search in j.code.lower()
        ]

    grid = Table(
        title=f"IFTA Rates - {table.quarter} ({fuel})",
        box=box.ROUNDED,
    )
    grid.add_column("Code", style="bold")
    grid.add_column("Jurisdiction")
    grid.add_column("Country", justify="center")
    grid.add_column("Rate", justify="right")

    for j in rows:
        grid.add_row(j.code, j.name, j.country, f"${table.get_rate(j.code, fuel):.4f}")
    console.print(grid)
    console.print(
        f"[dim]Exchange rate: 1 USD = {table.exchange_rate.us_to_canada} CAD | "
        f"last updated {table.last_updated or 'unknown'}[/dim]"
    )


# -----------------------------------------------------------------------
# Subcommand: selftest
# -----------------------------------------------------------------------


def cmd_selftest(args: argparse.Namespace) -> None:
    """Run calculation self-tests and rate table checks."""
    table = _load_table(args.quarter or get_settings().default_quarter, args.use_cache)
    report = run_self_tests()

    grid = Table(title="Calculation Self-Tests", box=box.ROUNDED)
    grid.add_column("Test")
    grid.add_column("Result", justify="center")
    grid.add_column("Details")
    for r in report.results:
        grid.add_row(
            r.name,
            "[green]PASS[/green]" if r.passed else "[red]FAIL[/red]",
            "; ".join(r.errors),
        )
    console.print(grid)

    table_check = validate_rate_table(table)
    health = run_health_check(table)
    freshness = check_rate_freshness(table, date.today())

    failures = report.failed
    for label, check in (("Rate table", table_check), ("Health check", health)):
        if check.passed:
            console.print(f"[green]{label}: OK[/green]")
        else:
            failures += 1
            for error in check.errors:
                console.print(f"[red]{label}: {error}[/red]")

    color = "green" if freshness == RateFreshness.CURRENT else "yellow"
    console.print(f"[{color}]Rate freshness: {freshness.value}[/{color}]")

    if failures:
        console.print(f"[red]{failures} check(s) failed[/red]")
        sys.exit(1)
    console.print("[bold green]All checks passed[/bold green]")


# -----------------------------------------------------------------------
# Subcommand: monitor
# -----------------------------------------------------------------------


def cmd_monitor(args: argparse.Namespace) -> None:
    """Run the integrity monitor schedule in the foreground."""
    table = _load_table(args.quarter or get_settings().default_quarter, args.use_cache)
    monitor = IntegrityMonitor(lambda: table)

    console.print("[blue]Integrity monitor running. Press Ctrl+C to stop.[/blue]")
    monitor.start()
    try:
        monitor.wait(args.duration)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()

    status = monitor.status()
    color = {
        "healthy": "green",
        "warning": "yellow",
        "error": "red",
    }.get(status["system_health"], "white")
    console.print(
        Panel(
            f"[bold]Health:[/bold] {status['system_health']} ({status['message']})\n"
            f"[bold]Quarter:[/bold] {status['current_quarter']}\n"
            f"[bold]Jurisdictions:[/bold] {status['jurisdiction_count']}\n"
            f"[bold]Tests:[/bold] {status['passed_tests']} passed, "
            f"{status['failed_tests']} failed\n"
            f"[bold]Rate Freshness:[/bold] {status['rate_freshness']}",
            title="Integrity Monitor",
            border_style=color,
        )
    )
    if status["system_health"] == "error":
        sys.exit(1)


# -----------------------------------------------------------------------
# Subcommand: fetch-rates
# -----------------------------------------------------------------------


def cmd_fetch_rates(args: argparse.Namespace) -> None:
    """Refresh the rate cache from the IFTACH quarterly chart."""
    fetcher = RateFetcher(cache_path=args.cache_file)
    quarter = normalize_quarter(args.quarter) if args.quarter else None
    result = fetcher.refresh(RateTable.default(), quarter=quarter)

    if result.updated:
        console.print(f"[green]{result.message}[/green]")
        console.print(f"[green]Cached to {fetcher.cache_path}[/green]")
        return

    console.print(f"[yellow]{result.message} (using {result.table.quarter})[/yellow]")
    if quarter:
        sys.exit(1)


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--quarter", "-q", help='Reporting quarter, e.g. "Q4 2025"')
    p.add_argument(
        "--use-cache",
        action="store_true",
        help="Use fetched rates from the rate cache when available",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ifta-engine",
        description="IFTA Fuel Tax Engine - Quarterly fuel tax calculation across US and Canadian jurisdictions",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # calculate
    calc_p = subparsers.add_parser("calculate", help="Calculate IFTA fuel tax")
    _add_common(calc_p)
    calc_p.add_argument("--jurisdiction", "-j", help="Two-letter jurisdiction code")
    calc_p.add_argument("--miles", help="Total miles in the jurisdiction")
    calc_p.add_argument("--taxable-miles", help="Taxable miles (default: total miles)")
    calc_p.add_argument("--fuel", help="Tax-paid gallons purchased in the jurisdiction")
    calc_p.add_argument("--file", "-f", help="CSV file with per-jurisdiction trip totals")
    calc_p.add_argument("--fuel-type", choices=FUEL_CHOICES, help="Fuel type")
    calc_p.add_argument("--mpg", help="Fleet miles per gallon (1-20)")
    calc_p.add_argument("--base", help="Base jurisdiction code")
    for flag, what in (
        ("--export-csv", "CSV"),
        ("--export-xls", "spreadsheet CSV"),
        ("--export-pdf", "PDF"),
        ("--export-json", "JSON"),
    ):
        calc_p.add_argument(
            flag,
            nargs="?",
            const="",
            metavar="FILENAME",
            help=f"Export a {what} report (default name if omitted)",
        )
    calc_p.add_argument(
        "--include-rates",
        action="store_true",
        help="Append the rate reference to PDF exports",
    )
    calc_p.add_argument("--output-dir", help="Output directory for exports")
    calc_p.add_argument(
        "--save-session",
        nargs="?",
        const="",
        metavar="PATH",
        help="Save the ledger to a session file",
    )
    calc_p.add_argument("--load-session", metavar="PATH", help="Resume a saved session")
    calc_p.set_defaults(func=cmd_calculate)

    # rates
    rates_p = subparsers.add_parser("rates", help="View the IFTA rate reference")
    _add_common(rates_p)
    rates_p.add_argument("--jurisdiction", "-j", help="Jurisdiction code to look up")
    rates_p.add_argument("--search", "-s", help="Filter by name or code")
    rates_p.add_argument("--country", choices=["US", "CAN"], help="Filter by country")
    rates_p.add_argument("--fuel-type", choices=FUEL_CHOICES, help="Fuel type to list")
    rates_p.set_defaults(func=cmd_rates)

    # selftest
    test_p = subparsers.add_parser("selftest", help="Run calculation self-tests")
    _add_common(test_p)
    test_p.set_defaults(func=cmd_selftest)

    # monitor
    mon_p = subparsers.add_parser("monitor", help="Run the integrity monitor")
    _add_common(mon_p)
    mon_p.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    mon_p.set_defaults(func=cmd_monitor)

    # fetch-rates
    fetch_p = subparsers.add_parser(
        "fetch-rates", help="Download quarterly rates into the cache"
    )
    fetch_p.add_argument("--quarter", "-q", help="Quarter to fetch (default: if due)")
    fetch_p.add_argument("--cache-file", help="Rate cache file")
    fetch_p.set_defaults(func=cmd_fetch_rates)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level="DEBUG" if args.verbose else None, log_file=args.log_file)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except IFTAEngineError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
