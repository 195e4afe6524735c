# -*- coding: utf-8 -*-
"""
ODM Store Errors
================

Every error raised by the store derives from ODMError and carries the
offending code or identifier as an attribute, so callers can recover
(register and retry, choose another code) without parsing messages.
"""

from __future__ import annotations

from typing import Any, List, Optional


class ODMError(Exception):
    """Base exception for all store operation failures."""

    pass


class UnknownReference(ODMError):
    """A variable, unit, method or processing level is not registered."""

    def __init__(self, kind: str, code: Any):
        self.kind = kind
        self.code = code
        super().__init__(f"Unknown {kind}: {code!r}")


class DuplicateCode(ODMError):
    """A catalog entry with this code already exists."""

    def __init__(self, kind: str, code: Any):
        self.kind = kind
        self.code = code
        super().__init__(f"{kind} {code!r} is already registered")


class InvalidVocabulary(ODMError):
    """A term is not part of the recognized controlled vocabulary."""

    def __init__(self, field: str, term: Any):
        self.field = field
        self.term = term
        super().__init__(f"{term!r} is not a recognized {field} term")


class CardinalityError(ODMError):
    """More than one row maps to a single Measurement result."""

    def __init__(self, site_code: str, variable_code: str, n_rows: int):
        self.site_code = site_code
        self.variable_code = variable_code
        self.n_rows = n_rows
        super().__init__(
            f"Measurement result for {variable_code!r} at site {site_code!r} "
            f"expects exactly one row, got {n_rows}"
        )


class ColumnMappingError(ODMError):
    """The named column mapping does not fit the input frame."""

    def __init__(self, message: str, columns: Optional[List[str]] = None):
        self.columns = list(columns) if columns else []
        super().__init__(message)


class DerivationError(ODMError):
    """A derivation cannot be computed from its inputs."""

    pass


class AmbiguousJoin(DerivationError):
    """An input holds duplicate timestamps for one site."""

    def __init__(self, input_name: str, site_code: str, timestamps: List[Any]):
        self.input_name = input_name
        self.site_code = site_code
        self.timestamps = list(timestamps)
        shown = ", ".join(str(t) for t in self.timestamps[:5])
        super().__init__(
            f"Input {input_name!r} has {len(self.timestamps)} duplicated "
            f"timestamp(s) at site {site_code!r}: {shown}"
        )


class IncompatibleUnits(DerivationError):
    """Inputs to a unit-preserving transform carry different units."""

    def __init__(self, units: List[str]):
        self.units = sorted(set(units))
        super().__init__(f"Inputs carry incompatible units: {self.units}")


class EmptyJoin(DerivationError):
    """The inner join of the derivation inputs produced no rows."""

    def __init__(self, site_code: str, input_names: List[str]):
        self.site_code = site_code
        self.input_names = list(input_names)
        super().__init__(
            f"No common timestamps for inputs {self.input_names} "
            f"at site {site_code!r}"
        )


class ReadOnlyStore(ODMError, PermissionError):
    """A mutation was attempted on a store opened read-only."""

    def __init__(self, db_path: Any):
        self.db_path = db_path
        super().__init__(f"ODM store {db_path} is open read-only")
