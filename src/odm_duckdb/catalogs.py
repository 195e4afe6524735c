# -*- coding: utf-8 -*-
"""
ODM Catalogs
============

Controlled lists of units, variables, methods and processing levels.
Catalog rows are shared by reference from results and are immutable once
registered: registering an existing code fails with DuplicateCode and
leaves the original definition untouched. There is no update path.

Example Usage:
    from odm_duckdb import ODMDatabase, VariableCatalog, UnitCatalog

    db = ODMDatabase(':memory:')
    UnitCatalog(db).register('millimeter', unit_type='length', abbreviation='mm')
    VariableCatalog(db).register(
        'WLVL', name='waterLevel', variable_type='hydrology',
        definition='Logger water level below top of casing',
    )
    VariableCatalog(db).resolve('WLVL')   # -> id
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import duckdb
import pandas as pd

from .exceptions import DuplicateCode, UnknownReference

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)


class Catalog:
    """
    Shared lookup and registration logic for one catalog table.

    Subclasses set ``table``, ``kind`` (used in error messages) and
    ``code_column`` (the unique natural key).
    """

    table: str = ""
    kind: str = ""
    code_column: str = "code"

    def __init__(self, db: "ODMDatabase"):
        self._db = db

    def lookup(self, code: str) -> Optional[int]:
        """Return the id for a code, or None if it is not registered."""
        row = self._db.execute(
            f"SELECT id FROM {self.table} WHERE {self.code_column} = ?", [code]
        ).fetchone()
        return row[0] if row else None

    def resolve(self, code: str) -> int:
        """
        Return the id for a code.

        Raises
        ------
        UnknownReference
            If the code is not registered.
        """
        catalog_id = self.lookup(code)
        if catalog_id is None:
            raise UnknownReference(self.kind, code)
        return catalog_id

    def exists(self, code: str) -> bool:
        return self.lookup(code) is not None

    def get(self, code: str) -> Dict[str, Any]:
        """Return the full catalog row for a code as a dict."""
        df = self._db.query(
            f"SELECT * FROM {self.table} WHERE {self.code_column} = ?", [code]
        )
        if df.empty:
            raise UnknownReference(self.kind, code)
        return df.iloc[0].to_dict()

    def list(self) -> pd.DataFrame:
        """Return every catalog row, ordered by code."""
        return self._db.query(
            f"SELECT * FROM {self.table} ORDER BY {self.code_column}"
        )

    def _insert(self, code: str, columns: List[str], values: List[Any]) -> int:
        """Insert a new row inside a transaction, refusing existing codes."""
        placeholders = ", ".join(["?"] * len(columns))
        sql = (
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING id"
        )
        with self._db.transaction():
            if self.lookup(code) is not None:
                raise DuplicateCode(self.kind, code)
            try:
                new_id = self._db.execute(sql, values).fetchone()[0]
            except duckdb.ConstraintException as e:
                raise DuplicateCode(self.kind, code) from e

        logger.info(f"Registered {self.kind} {code!r} (id={new_id})")
        return new_id


class UnitCatalog(Catalog):
    """Measurement units, keyed by name."""

    table = "units"
    kind = "unit"
    code_column = "name"

    def register(
        self,
        name: str,
        unit_type: Optional[str] = None,
        abbreviation: Optional[str] = None,
    ) -> int:
        """
        Register a unit.

        Raises
        ------
        DuplicateCode
            If a unit with this name exists.
        """
        return self._insert(
            name,
            ["name", "unit_type", "abbreviation"],
            [name, unit_type, abbreviation],
        )


class VariableCatalog(Catalog):
    """
    Variable definitions, keyed by code.

    The variable name and type must be recognized controlled terms, checked
    under the store's vocabulary policy. Two variables may share a name
    (e.g. two derivations of 'groundwaterDepth') but never a code.
    """

    table = "variables"
    kind = "variable"

    def register(
        self,
        code: str,
        name: str,
        variable_type: str,
        definition: Optional[str] = None,
    ) -> int:
        """
        Register a variable.

        Parameters
        ----------
        code : str
            Unique variable code.
        name : str
            Controlled-vocabulary variable name.
        variable_type : str
            Controlled-vocabulary domain category.
        definition : str, optional
            Free-text definition.

        Raises
        ------
        InvalidVocabulary
            If name or type is unknown and the policy is STRICT.
        DuplicateCode
            If a variable with this code exists.
        """
        self._db.vocabulary.check("variable_name", name)
        self._db.vocabulary.check("variable_type", variable_type)
        return self._insert(
            code,
            ["code", "name", "variable_type", "definition"],
            [code, name, variable_type, definition],
        )

    def codes_for_name(self, name: str) -> List[str]:
        """Return every variable code registered under a vocabulary name."""
        rows = self._db.execute(
            "SELECT code FROM variables WHERE name = ? ORDER BY code", [name]
        ).fetchall()
        return [r[0] for r in rows]


class MethodCatalog(Catalog):
    """Methods and procedures (instruments, calculations), keyed by code."""

    table = "methods"
    kind = "method"

    def register(
        self,
        code: str,
        method_type: str,
        description: Optional[str] = None,
        name: Optional[str] = None,
    ) -> int:
        """
        Register a method.

        Raises
        ------
        InvalidVocabulary
            If method_type is unknown and the policy is STRICT.
        DuplicateCode
            If a method with this code exists.
        """
        self._db.vocabulary.check("method_type", method_type)
        return self._insert(
            code,
            ["code", "method_type", "name", "description"],
            [code, method_type, name, description],
        )


class ProcessingLevelCatalog(Catalog):
    """Pipeline stages such as 'Raw data' or 'Derived product', keyed by label."""

    table = "processinglevels"
    kind = "processing level"
    code_column = "label"

    def register(self, label: str, explanation: Optional[str] = None) -> int:
        """
        Register a processing level.

        Raises
        ------
        DuplicateCode
            If a processing level with this label exists.
        """
        return self._insert(label, ["label", "explanation"], [label, explanation])
