"""
Trip ledger state and reducer.

The ledger is an immutable :class:`LedgerState` value. Every edit is an
action passed to :func:`reduce`, which returns a new state; derived row
figures are recomputed from the state on demand. A jurisdiction code may
be held by at most one row at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from ifta_engine.calculator import (
    CalculationContext,
    RowResult,
    Totals,
    TripRow,
    aggregate,
    calculate,
)
from ifta_engine.exceptions import DuplicateJurisdictionError, UnknownRowError
from ifta_engine.rates import FuelType, RateTable

logger = logging.getLogger(__name__)

# Row fields a user may edit; tax rate and derived figures are not editable
EDITABLE_FIELDS = (
    "jurisdiction",
    "total_miles",
    "taxable_miles",
    "fuel_purchased_gallons",
)


@dataclass(frozen=True)
class LedgerState:
    """Calculation context plus the trip rows, in insertion order."""

    context: CalculationContext = field(default_factory=CalculationContext)
    rows: Mapping[int, TripRow] = field(
        default_factory=lambda: MappingProxyType({})
    )
    next_id: int = 1

    @classmethod
    def empty(cls, context: Optional[CalculationContext] = None) -> "LedgerState":
        """A ledger with a single blank row, as a new session starts."""
        return reduce(cls(context=context or CalculationContext()), AddRow())

    def row(self, row_id: int) -> TripRow:
        try:
            return self.rows[row_id]
        except KeyError:
            raise UnknownRowError(row_id) from None

    def row_for(self, jurisdiction: str) -> Optional[TripRow]:
        """The row holding a jurisdiction code, if any."""
        code = (jurisdiction or "").strip().upper()
        if not code:
            return None
        for row in self.rows.values():
            if row.jurisdiction == code:
                return row
        return None

    @property
    def jurisdictions(self) -> list[str]:
        return [r.jurisdiction for r in self.rows.values() if r.jurisdiction]

    def results(self, table: RateTable) -> list[RowResult]:
        return recompute(self, table)

    def totals(self, table: RateTable) -> Totals:
        return aggregate(recompute(self, table))


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AddRow:
    jurisdiction: str = ""
    total_miles: Any = 0
    taxable_miles: Any = None
    fuel_purchased_gallons: Any = 0


@dataclass(frozen=True)
class UpdateRow:
    row_id: int
    field: str
    value: Any


@dataclass(frozen=True)
class DeleteRow:
    row_id: int


@dataclass(frozen=True)
class ClearAll:
    pass


@dataclass(frozen=True)
class SetFuelType:
    fuel_type: Union[FuelType, str]


@dataclass(frozen=True)
class SetQuarter:
    quarter: str


@dataclass(frozen=True)
class SetFleetMpg:
    fleet_mpg: Any


@dataclass(frozen=True)
class SetBaseJurisdiction:
    jurisdiction: str


@dataclass(frozen=True)
class LoadRows:
    """Replace every row, e.g. from a CSV import or a saved session."""

    rows: tuple[AddRow, ...]


Action = Union[
    AddRow,
    UpdateRow,
    DeleteRow,
    ClearAll,
    SetFuelType,
    SetQuarter,
    SetFleetMpg,
    SetBaseJurisdiction,
    LoadRows,
]


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def _check_unique(
    rows: Mapping[int, TripRow], jurisdiction: str, row_id: Optional[int]
) -> None:
    if not jurisdiction:
        return
    for other in rows.values():
        if other.row_id != row_id and other.jurisdiction == jurisdiction:
            raise DuplicateJurisdictionError(jurisdiction, other.row_id)


def _with_rows(state: LedgerState, rows: dict[int, TripRow], **changes: Any) -> LedgerState:
    return replace(state, rows=MappingProxyType(rows), **changes)


def _add_row(state: LedgerState, action: AddRow) -> LedgerState:
    code = str(action.jurisdiction or "").strip().upper()
    _check_unique(state.rows, code, None)
    row = TripRow(
        row_id=state.next_id,
        jurisdiction=code,
        total_miles=action.total_miles,
        taxable_miles=action.taxable_miles,
        fuel_purchased_gallons=action.fuel_purchased_gallons,
    )
    rows = dict(state.rows)
    rows[row.row_id] = row
    return _with_rows(state, rows, next_id=state.next_id + 1)


def _update_row(state: LedgerState, action: UpdateRow) -> LedgerState:
    if action.field not in EDITABLE_FIELDS:
        raise ValueError(f"Field is not editable: {action.field}")
    current = state.row(action.row_id)

    if action.field == "jurisdiction":
        code = str(action.value or "").strip().upper()
        _check_unique(state.rows, code, current.row_id)
        updated = replace(current, jurisdiction=code)
    elif action.field == "taxable_miles":
        # Clearing the field hands taxable miles back to total miles
        value = None if action.value in ("", None) else action.value
        updated = replace(current, taxable_miles=value)
    else:
        updated = replace(current, **{action.field: action.value})

    rows = dict(state.rows)
    rows[current.row_id] = updated
    return _with_rows(state, rows)


def _delete_row(state: LedgerState, action: DeleteRow) -> LedgerState:
    state.row(action.row_id)
    rows = {k: v for k, v in state.rows.items() if k != action.row_id}
    new_state = _with_rows(state, rows)
    if not rows:
        return _add_row(new_state, AddRow())
    return new_state


def _load_rows(state: LedgerState, action: LoadRows) -> LedgerState:
    new_state = _with_rows(state, {}, next_id=1)
    for add in action.rows:
        new_state = _add_row(new_state, add)
    if not new_state.rows:
        new_state = _add_row(new_state, AddRow())
    return new_state


def reduce(state: LedgerState, action: Action) -> LedgerState:
    """
    Apply an action to a ledger state and return the new state.

    Raises DuplicateJurisdictionError when an action would assign a
    jurisdiction already held by another row, and UnknownRowError for a
    row id that is not in the ledger. The input state is never modified.
    """
    if isinstance(action, AddRow):
        return _add_row(state, action)
    if isinstance(action, UpdateRow):
        return _update_row(state, action)
    if isinstance(action, DeleteRow):
        return _delete_row(state, action)
    if isinstance(action, ClearAll):
        return _add_row(_with_rows(state, {}, next_id=1), AddRow())
    if isinstance(action, LoadRows):
        return _load_rows(state, action)
    if isinstance(action, SetFuelType):
        return replace(state, context=state.context.evolve(fuel_type=action.fuel_type))
    if isinstance(action, SetQuarter):
        return replace(state, context=state.context.evolve(quarter=action.quarter))
    if isinstance(action, SetFleetMpg):
        return replace(state, context=state.context.evolve(fleet_mpg=action.fleet_mpg))
    if isinstance(action, SetBaseJurisdiction):
        return replace(
            state, context=state.context.evolve(base_jurisdiction=action.jurisdiction)
        )
    raise TypeError(f"Unsupported ledger action: {action!r}")


def reduce_all(state: LedgerState, actions: Iterable[Action]) -> LedgerState:
    for action in actions:
        state = reduce(state, action)
    return state


def recompute(state: LedgerState, table: RateTable) -> list[RowResult]:
    """Derived figures for every row, in insertion order."""
    return [calculate(row, state.context, table) for row in state.rows.values()]
