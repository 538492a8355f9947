"""Exception types raised by the IFTA engine."""

from __future__ import annotations


class IFTAEngineError(Exception):
    """Base class for engine errors."""


class QuarterFormatError(IFTAEngineError, ValueError):
    """A quarter string is neither ``Q4 2025`` nor ``4Q2025`` form."""


class DuplicateJurisdictionError(IFTAEngineError):
    """A jurisdiction is already assigned to another ledger row."""

    def __init__(self, jurisdiction: str, row_id: int) -> None:
        super().__init__(
            f"Jurisdiction {jurisdiction} already used by row {row_id}"
        )
        self.jurisdiction = jurisdiction
        self.row_id = row_id


class UnknownRowError(IFTAEngineError, KeyError):
    """No ledger row has the requested id."""


class StorageError(IFTAEngineError):
    """A saved session could not be written or read back."""


class RateFetchError(IFTAEngineError):
    """Downloading or parsing a quarterly rate chart failed."""


class TripImportError(IFTAEngineError):
    """A trip CSV could not be read or has no usable columns."""
