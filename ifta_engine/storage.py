"""
Saved calculation sessions.

A session is a JSON document holding the ledger rows and the quarter-wide
selections, so a partly entered quarter can be resumed later.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from ifta_engine.calculator import CalculationContext, TripRow, clamp_mpg
from ifta_engine.config import (
    DEFAULT_BASE_JURISDICTION,
    DEFAULT_FUEL_TYPE,
    DEFAULT_MPG,
    DEFAULT_QUARTER,
    MAX_SESSION_BYTES,
    SESSION_VERSION,
)
from ifta_engine.exceptions import DuplicateJurisdictionError, StorageError
from ifta_engine.ledger import AddRow, LedgerState, LoadRows, reduce
from ifta_engine.rates import RateTable, fuel_type_from_name

logger = logging.getLogger(__name__)

_SESSION_QUARTER_RE = re.compile(r"^Q[1-4] \d{4}$")

# Fuel types a saved session may select
SESSION_FUEL_TYPES = ("diesel", "gasoline", "gasohol", "propane", "lng", "cng")


def _row_to_dict(row: TripRow) -> dict[str, Any]:
    return {
        "id": row.row_id,
        "jurisdiction": row.jurisdiction,
        "totalMiles": str(row.total_miles),
        "taxableMiles": (
            None if row.taxable_miles is None else str(row.taxable_miles)
        ),
        "taxPaidGallons": str(row.fuel_purchased_gallons),
    }


def session_to_dict(state: LedgerState, saved_at: Optional[datetime] = None) -> dict:
    ctx = state.context
    return {
        "version": SESSION_VERSION,
        "rows": [_row_to_dict(r) for r in state.rows.values()],
        "selectedFuelType": ctx.fuel_type.value,
        "selectedQuarter": ctx.quarter,
        "baseJurisdiction": ctx.base_jurisdiction,
        "fleetMpg": str(ctx.fleet_mpg),
        "savedAt": (saved_at or datetime.now()).isoformat(timespec="seconds"),
    }


def save_session(
    state: LedgerState,
    path: Union[str, Path],
    saved_at: Optional[datetime] = None,
) -> Path:
    """
    Write a ledger to ``path`` as JSON.

    Raises StorageError if the document would exceed the size limit or
    the file cannot be written.
    """
    path = Path(path)
    payload = json.dumps(session_to_dict(state, saved_at), indent=2)
    size = len(payload.encode("utf-8"))
    if size > MAX_SESSION_BYTES:
        raise StorageError(
            f"Session is too large to save ({size} bytes, limit {MAX_SESSION_BYTES})"
        )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")
    except OSError as e:
        raise StorageError(f"Could not write session to {path}: {e}") from e
    logger.info(f"Saved {len(state.rows)} rows to {path}")
    return path


def _context_from_dict(data: dict, table: Optional[RateTable]) -> CalculationContext:
    fuel = str(data.get("selectedFuelType") or "").strip().lower()
    if fuel not in SESSION_FUEL_TYPES or fuel_type_from_name(fuel) is None:
        if fuel:
            logger.warning(f"Invalid fuel type in session: {fuel}; using diesel")
        fuel = DEFAULT_FUEL_TYPE

    quarter = str(data.get("selectedQuarter") or "")
    if not _SESSION_QUARTER_RE.match(quarter):
        if quarter:
            logger.warning(f"Invalid quarter in session: {quarter}")
        quarter = DEFAULT_QUARTER

    base = str(data.get("baseJurisdiction") or "").strip().upper()
    if not base or (table is not None and base not in table):
        if base:
            logger.warning(f"Unknown base jurisdiction in session: {base}")
        base = DEFAULT_BASE_JURISDICTION

    mpg = data.get("fleetMpg")
    return CalculationContext(
        fleet_mpg=clamp_mpg(mpg) if mpg not in (None, "") else DEFAULT_MPG,
        fuel_type=fuel,
        quarter=quarter,
        base_jurisdiction=base,
    )


def session_from_dict(
    data: Any, table: Optional[RateTable] = None
) -> LedgerState:
    """Rebuild a ledger from a session document, validating selections."""
    if not isinstance(data, dict):
        raise StorageError("Session document must be a JSON object")
    raw_rows = data.get("rows")
    if not isinstance(raw_rows, list):
        raise StorageError("Session has no rows list")

    version = data.get("version")
    if version != SESSION_VERSION:
        logger.info(f"Loading session saved by version {version}")

    adds = []
    for raw in raw_rows:
        if not isinstance(raw, dict):
            raise StorageError(f"Malformed session row: {raw!r}")
        row = TripRow.from_dict(raw, row_id=0)
        adds.append(
            AddRow(
                jurisdiction=row.jurisdiction,
                total_miles=row.total_miles,
                taxable_miles=row.taxable_miles,
                fuel_purchased_gallons=row.fuel_purchased_gallons,
            )
        )

    state = LedgerState(context=_context_from_dict(data, table))
    try:
        return reduce(state, LoadRows(tuple(adds)))
    except DuplicateJurisdictionError as e:
        raise StorageError(f"Session contains duplicate rows: {e}") from e


def load_session(
    path: Union[str, Path], table: Optional[RateTable] = None
) -> Optional[LedgerState]:
    """
    Load a saved ledger.

    Returns None when no session exists at ``path``; raises StorageError
    for unreadable or malformed files.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise StorageError(f"Could not read session {path}: {e}") from e
    state = session_from_dict(data, table)
    logger.info(f"Loaded {len(state.rows)} rows from {path}")
    return state
