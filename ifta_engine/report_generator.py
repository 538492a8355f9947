"""
IFTA quarterly report generator.

Produces:
- The structured quarterly report (per-jurisdiction rows and totals)
- Plain CSV and spreadsheet-style CSV exports
- PDF export with optional summary and rate-reference sections
- JSON export and console-friendly text
- Trip CSV import
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from ifta_engine.calculator import NO_MPG, RowResult
from ifta_engine.exceptions import TripImportError
from ifta_engine.ledger import AddRow, LedgerState
from ifta_engine.rates import RateTable

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "Jurisdiction",
    "Total Miles",
    "Taxable Miles",
    "Tax Paid Gallons",
    "Tax Rate",
    "Taxable Gallons",
    "Net Taxable Gallons",
    "Tax Due",
]

PDF_COLUMNS = [
    "Jurisdiction",
    "Total Miles",
    "Taxable Miles",
    "Tax Paid Gal",
    "Rate",
    "Taxable Gal",
    "Net Taxable",
    "Tax Due",
]

DISCLAIMER = (
    "Disclaimer: This report is for estimation purposes only. "
    "Verify all rates with official sources before filing."
)


class _DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and date objects."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        return super().default(o)


def export_filename(
    quarter: str,
    ext: str,
    today: Optional[date] = None,
    label: str = "",
) -> str:
    """``ifta-report-<quarter>-<date>[-label].<ext>``, spaces as hyphens."""
    stamp = (today or date.today()).isoformat()
    suffix = f"-{label}" if label else ""
    return f"ifta-report-{quarter.replace(' ', '-')}-{stamp}{suffix}.{ext}"


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def _fmt_rate(value: Any) -> str:
    return f"{Decimal(value):.4f}"


def _fmt_gallons(value: Any) -> str:
    return f"{Decimal(value):.3f}"


def _fmt_amount(value: Any) -> str:
    return f"{Decimal(value):.2f}"


def _fmt_currency(value: Any) -> str:
    amount = Decimal(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _fmt_miles(value: Any) -> str:
    return f"{int(value):,}"


# ---------------------------------------------------------------------------
# Trip import
# ---------------------------------------------------------------------------

_COLUMN_ALIASES = {
    "jurisdiction": "jurisdiction",
    "state": "jurisdiction",
    "code": "jurisdiction",
    "totalmiles": "total_miles",
    "miles": "total_miles",
    "taxablemiles": "taxable_miles",
    "taxpaidgallons": "fuel_purchased_gallons",
    "fuelpurchasedgallons": "fuel_purchased_gallons",
    "fuelpurchased": "fuel_purchased_gallons",
    "gallons": "fuel_purchased_gallons",
}

_POSITIONAL = ["jurisdiction", "total_miles", "taxable_miles", "fuel_purchased_gallons"]

_LABEL_CODE_RE = re.compile(r"\(([A-Za-z]{2})\)\s*$")


def _jurisdiction_code(value: Any) -> str:
    text = "" if pd.isna(value) else str(value).strip()
    match = _LABEL_CODE_RE.search(text)
    if match:
        return match.group(1).upper()
    return text.upper()


def _numeric(series: pd.Series) -> pd.Series:
    cleaned = series.astype(str).str.replace(",", "", regex=False).str.strip()
    return pd.to_numeric(cleaned, errors="coerce")


def load_trips_csv(path: Union[str, Path]) -> list[AddRow]:
    """
    Read per-jurisdiction trip totals from a CSV file.

    Columns are matched by header name (``Jurisdiction``, ``Total Miles``,
    ``Taxable Miles``, ``Tax Paid Gallons`` and snake/camel variants);
    files without a recognizable header are read positionally. Non-numeric
    cells become 0, a blank taxable-miles cell means "same as total
    miles", and repeated jurisdictions are summed into one row.
    """
    csv_path = Path(path)
    try:
        df = pd.read_csv(csv_path, dtype=str, skip_blank_lines=True)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise TripImportError(f"Could not read trip file {csv_path}: {e}") from e

    renamed = {
        col: _COLUMN_ALIASES[re.sub(r"[^a-z]", "", str(col).lower())]
        for col in df.columns
        if re.sub(r"[^a-z]", "", str(col).lower()) in _COLUMN_ALIASES
    }
    if "jurisdiction" in renamed.values():
        df = df.rename(columns=renamed)
    else:
        # Unrecognized header: columns in the standard order
        df = df.iloc[:, : len(_POSITIONAL)]
        df.columns = _POSITIONAL[: len(df.columns)]

    if "jurisdiction" not in df.columns:
        raise TripImportError(f"No jurisdiction column in {csv_path}")

    df["jurisdiction"] = df["jurisdiction"].map(_jurisdiction_code)
    df = df[df["jurisdiction"] != ""].copy()

    for col in ("total_miles", "fuel_purchased_gallons"):
        df[col] = _numeric(df[col]).fillna(0) if col in df.columns else 0
    if "taxable_miles" in df.columns:
        df["taxable_miles"] = _numeric(df["taxable_miles"])
    else:
        df["taxable_miles"] = float("nan")

    rows: dict[str, dict[str, Any]] = {}
    for rec in df.to_dict("records"):
        code = rec["jurisdiction"]
        taxable = None if pd.isna(rec["taxable_miles"]) else rec["taxable_miles"]
        if code not in rows:
            rows[code] = {
                "total_miles": rec["total_miles"],
                "taxable_miles": taxable,
                "fuel_purchased_gallons": rec["fuel_purchased_gallons"],
            }
            continue
        logger.info(f"Combining repeated {code} rows from {csv_path.name}")
        current = rows[code]
        if current["taxable_miles"] is None and taxable is None:
            merged_taxable = None
        else:
            previous = current["taxable_miles"]
            merged_taxable = (
                current["total_miles"] if previous is None else previous
            ) + (rec["total_miles"] if taxable is None else taxable)
        current["total_miles"] += rec["total_miles"]
        current["fuel_purchased_gallons"] += rec["fuel_purchased_gallons"]
        current["taxable_miles"] = merged_taxable

    logger.info(f"Imported {len(rows)} jurisdictions from {csv_path}")
    return [
        AddRow(
            jurisdiction=code,
            total_miles=values["total_miles"],
            taxable_miles=values["taxable_miles"],
            fuel_purchased_gallons=values["fuel_purchased_gallons"],
        )
        for code, values in rows.items()
    ]


class ReportGenerator:
    """
    Generates IFTA quarterly reports with export capabilities.

    Reports are structured dicts that can be rendered to console text or
    exported to CSV, spreadsheet CSV, PDF and JSON files under
    ``output_dir``.
    """

    def __init__(
        self,
        output_dir: Optional[str] = None,
        table: Optional[RateTable] = None,
    ) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("reports")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.table = table or RateTable.default()

    def _write(self, filename: str, content: str, encoding: str = "utf-8") -> Path:
        path = self.output_dir / filename
        path.write_text(content, encoding=encoding)
        logger.info(f"Wrote {path}")
        return path

    def _report_table(self, report: dict[str, Any]) -> RateTable:
        """Rate table matching the quarter a report was calculated with."""
        quarter = report.get("header", {}).get("rates_quarter")
        if not quarter or quarter == self.table.quarter:
            return self.table
        return RateTable.for_quarter(quarter)

    # ------------------------------------------------------------------
    # Quarterly report
    # ------------------------------------------------------------------

    def _row_dict(self, r: RowResult, table: RateTable) -> dict[str, Any]:
        jurisdiction = table.get(r.jurisdiction)
        name = jurisdiction.name if jurisdiction else r.jurisdiction
        return {
            "jurisdiction": r.jurisdiction,
            "name": name,
            "label": f"{name} ({r.jurisdiction})",
            "total_miles": r.total_miles,
            "taxable_miles": r.taxable_miles,
            "fuel_purchased_gallons": r.fuel_purchased_gallons,
            "tax_rate": r.tax_rate,
            "taxable_gallons": r.taxable_gallons,
            "net_taxable_gallons": r.net_taxable_gallons,
            "tax_due": r.tax_due,
        }

    def ifta_report(
        self,
        state: LedgerState,
        table: Optional[RateTable] = None,
        generated: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Build the quarterly report for a ledger.

        Only rows with a jurisdiction appear in the breakdown and totals.
        """
        table = table or self.table
        generated = generated or datetime.now()
        results = [r for r in state.results(table) if r.has_jurisdiction]
        totals = state.totals(table)
        ctx = state.context

        warnings: list[str] = []
        for r in results:
            warnings.extend(f"{r.jurisdiction}: {w}" for w in r.warnings)

        return {
            "report_type": "ifta_quarterly",
            "generated_date": generated.date().isoformat(),
            "generated_at": generated.isoformat(timespec="seconds"),
            "period": ctx.quarter,
            "header": {
                "quarter": ctx.quarter,
                "fuel_type": ctx.fuel_type.value,
                "fleet_mpg": ctx.fleet_mpg,
                "base_jurisdiction": ctx.base_jurisdiction,
                "rates_quarter": table.quarter,
                "rates_last_updated": table.last_updated,
            },
            "summary": {
                "jurisdictions": totals.row_count,
                "total_miles": totals.miles,
                "taxable_miles": totals.taxable_miles,
                "fuel_purchased_gallons": totals.fuel_purchased,
                "taxable_gallons": totals.taxable_gallons,
                "net_taxable_gallons": totals.net_gallons,
                "tax_due": totals.tax_due,
                "current_mpg": totals.current_mpg_display,
                "tax_status": totals.tax_status,
            },
            "jurisdiction_breakdown": [self._row_dict(r, table) for r in results],
            "warnings": warnings,
        }

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def to_json(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """Export a report to JSON. Returns the JSON string."""
        json_str = json.dumps(report, indent=2, cls=_DecimalEncoder)
        if filename:
            self._write(filename, json_str)
        return json_str

    @staticmethod
    def _csv_row(row: dict[str, Any]) -> list[str]:
        return [
            row["label"],
            str(row["total_miles"]),
            str(row["taxable_miles"]),
            str(row["fuel_purchased_gallons"]),
            _fmt_rate(row["tax_rate"]),
            _fmt_gallons(row["taxable_gallons"]),
            _fmt_gallons(row["net_taxable_gallons"]),
            _fmt_amount(row["tax_due"]),
        ]

    def to_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """
        Export the jurisdiction breakdown to CSV. Returns the CSV string.

        Written files carry a UTF-8 byte order mark so spreadsheet
        applications detect the encoding.
        """
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for row in report.get("jurisdiction_breakdown", []):
            writer.writerow(self._csv_row(row))

        csv_str = output.getvalue()
        if filename:
            self._write(filename, csv_str, encoding="utf-8-sig")
        return csv_str

    def to_spreadsheet_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """CSV with a report header block, a totals line and the tax status."""
        header = report.get("header", {})
        summary = report.get("summary", {})

        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(["IFTA Fuel Tax Report"])
        writer.writerow(["Quarter:", header.get("quarter", "")])
        writer.writerow(["Fuel Type:", str(header.get("fuel_type", "")).capitalize()])
        writer.writerow(["Fleet MPG:", str(header.get("fleet_mpg", ""))])
        writer.writerow(["Base Jurisdiction:", header.get("base_jurisdiction", "")])
        writer.writerow(["Generated:", report.get("generated_at", "")])
        writer.writerow([])
        writer.writerow(CSV_COLUMNS)
        for row in report.get("jurisdiction_breakdown", []):
            writer.writerow(self._csv_row(row))

        tax_due = Decimal(summary.get("tax_due", 0))
        writer.writerow([])
        writer.writerow([
            "TOTALS",
            str(summary.get("total_miles", 0)),
            str(summary.get("taxable_miles", 0)),
            _fmt_gallons(summary.get("fuel_purchased_gallons", 0)),
            "",
            _fmt_gallons(summary.get("taxable_gallons", 0)),
            _fmt_gallons(summary.get("net_taxable_gallons", 0)),
            _fmt_amount(tax_due),
        ])
        writer.writerow([])
        writer.writerow(
            ["Tax Status:", summary.get("tax_status", "")]
            + [""] * 5
            + [f"${abs(tax_due):.2f}"]
        )

        csv_str = output.getvalue()
        if filename:
            self._write(filename, csv_str, encoding="utf-8-sig")
        return csv_str

    def to_pdf(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
        include_summary: bool = True,
        include_rates: bool = False,
        table: Optional[RateTable] = None,
    ) -> bytes:
        """
        Render a report as a PDF. Returns the PDF bytes.

        ``include_summary`` adds the quarter/fuel/MPG block and tax status;
        ``include_rates`` appends the rate reference for every jurisdiction
        in ``table``, by default the rates the report was calculated with.
        """
        table = table or self._report_table(report)
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=0.5 * inch,
            leftMargin=0.5 * inch,
            topMargin=0.6 * inch,
            bottomMargin=0.6 * inch,
            title="IFTA Fuel Tax Report",
        )
        styles = getSampleStyleSheet()
        primary = colors.HexColor("#5B9BD5")
        title_style = ParagraphStyle(
            "ReportTitle",
            parent=styles["Title"],
            textColor=primary,
            alignment=0,
        )
        small = ParagraphStyle(
            "Footer", parent=styles["Normal"], fontSize=8, textColor=colors.gray
        )

        header = report.get("header", {})
        summary = report.get("summary", {})
        story: list[Any] = [Paragraph("IFTA Fuel Tax Report", title_style)]

        if include_summary:
            info = Table(
                [
                    ["Quarter:", header.get("quarter", ""),
                     "Base Jurisdiction:", header.get("base_jurisdiction", "")],
                    ["Fuel Type:", str(header.get("fuel_type", "")).capitalize(),
                     "Report Date:", report.get("generated_date", "")],
                    ["Fleet MPG:", str(header.get("fleet_mpg", "")),
                     "Tax Status:", summary.get("tax_status", "")],
                ],
                hAlign="LEFT",
            )
            info.setStyle(TableStyle([
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTNAME", (2, 0), (2, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("TEXTCOLOR", (0, 0), (-1, -1), colors.HexColor("#505050")),
            ]))
            story.extend([info, Spacer(1, 0.2 * inch)])

        rows = report.get("jurisdiction_breakdown", [])
        data: list[list[str]] = [PDF_COLUMNS]
        for row in rows:
            data.append([
                row["label"],
                _fmt_miles(row["total_miles"]),
                _fmt_miles(row["taxable_miles"]),
                _fmt_gallons(row["fuel_purchased_gallons"]),
                f"${_fmt_rate(row['tax_rate'])}",
                _fmt_gallons(row["taxable_gallons"]),
                _fmt_gallons(row["net_taxable_gallons"]),
                _fmt_currency(row["tax_due"]),
            ])
        data.append([
            "TOTALS",
            _fmt_miles(summary.get("total_miles", 0)),
            _fmt_miles(summary.get("taxable_miles", 0)),
            _fmt_gallons(summary.get("fuel_purchased_gallons", 0)),
            NO_MPG,
            _fmt_gallons(summary.get("taxable_gallons", 0)),
            _fmt_gallons(summary.get("net_taxable_gallons", 0)),
            _fmt_currency(summary.get("tax_due", 0)),
        ])

        style = [
            ("BACKGROUND", (0, 0), (-1, 0), primary),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, 0), 9),
            ("FONTSIZE", (0, 1), (-1, -1), 8),
            ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
            ("ROWBACKGROUNDS", (0, 1), (-1, -2), [colors.white, colors.HexColor("#FAFAFA")]),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("BACKGROUND", (0, -1), (-1, -1), colors.HexColor("#E8F5E9")),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#DDDDDD")),
        ]
        for i, row in enumerate(rows, start=1):
            tax_due = Decimal(row["tax_due"])
            if tax_due > 0:
                style.append(("TEXTCOLOR", (7, i), (7, i), colors.HexColor("#C62828")))
            elif tax_due < 0:
                style.append(("TEXTCOLOR", (7, i), (7, i), colors.HexColor("#2E7D32")))

        main = Table(data, repeatRows=1, hAlign="LEFT")
        main.setStyle(TableStyle(style))
        story.append(main)

        if include_rates:
            fuel = header.get("fuel_type", "diesel")
            rates_data = [["Code", "Jurisdiction", "Country", f"{str(fuel).capitalize()} Rate"]]
            for j in table.jurisdiction_list():
                rates_data.append([
                    j.code, j.name, j.country,
                    f"${_fmt_rate(table.get_rate(j.code, fuel))}",
                ])
            rates = Table(rates_data, repeatRows=1, hAlign="LEFT")
            rates.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), primary),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("ALIGN", (3, 0), (3, -1), "RIGHT"),
            ]))
            story.extend([
                Spacer(1, 0.3 * inch),
                Paragraph(f"Rate Reference ({table.quarter})", styles["Heading2"]),
                rates,
            ])

        story.extend([
            Spacer(1, 0.3 * inch),
            Paragraph("Tax rates sourced from IFTA, Inc.", small),
            Paragraph(DISCLAIMER, small),
        ])
        doc.build(story)

        pdf_bytes = buffer.getvalue()
        if filename:
            path = self.output_dir / filename
            path.write_bytes(pdf_bytes)
            logger.info(f"Wrote {path}")
        return pdf_bytes

    # ------------------------------------------------------------------
    # Console-formatted text output
    # ------------------------------------------------------------------

    def format_text(self, report: dict[str, Any]) -> str:
        """Format a report as human-readable text for console output."""
        lines: list[str] = []
        header = report.get("header", {})
        lines.append(f"{'=' * 60}")
        lines.append("  IFTA Quarterly Fuel Tax Report")
        lines.append(f"  Generated: {report.get('generated_date', '')}")
        if report.get("period"):
            lines.append(f"  Period: {report['period']}")
        lines.append(
            f"  Fuel: {header.get('fuel_type', '')} | "
            f"Fleet MPG: {header.get('fleet_mpg', '')} | "
            f"Base: {header.get('base_jurisdiction', '')}"
        )
        lines.append(f"{'=' * 60}")
        lines.append("")

        summary = report.get("summary", {})
        if summary:
            lines.append("SUMMARY")
            lines.append("-" * 40)
            for key, value in summary.items():
                label = key.replace("_", " ").title()
                if key == "tax_due":
                    lines.append(f"  {label}: {_fmt_currency(value)}")
                elif isinstance(value, int):
                    lines.append(f"  {label}: {value:,}")
                else:
                    lines.append(f"  {label}: {value}")
            lines.append("")

        breakdown = report.get("jurisdiction_breakdown", [])
        if breakdown:
            lines.append("JURISDICTION BREAKDOWN")
            lines.append("-" * 40)
            for row in breakdown:
                lines.append(
                    f"  {row['jurisdiction']}: {row['taxable_miles']:>9,} mi | "
                    f"{row['net_taxable_gallons']:>7,} net gal | "
                    f"{_fmt_currency(row['tax_due']):>11}"
                )
            lines.append("")

        warnings = report.get("warnings", [])
        if warnings:
            lines.append("WARNINGS")
            lines.append("-" * 40)
            for w in warnings:
                lines.append(f"  * {w}")
            lines.append("")

        return "\n".join(lines)
