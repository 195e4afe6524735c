# -*- coding: utf-8 -*-
"""
ODM Query Facade
================

Read path of the store. Rebuilds denormalized rows by following the
entity graph backwards from each data value:

    datavalues -> results -> variables
    results -> units, processinglevels
    results -> featureactions -> samplingfeatures
    featureactions -> actions -> methods

Rows are ordered by site, then timestamp ascending. Queries never error
on "no match"; they return an empty frame with the contract columns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import pandas as pd

from .column_order import get_column_order, reorder_columns

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT
        dv.value AS value,
        dv.value_datetime AS timestamp,
        sf.code AS site_code,
        v.name AS variable_name,
        u.name AS unit_name,
        m.code AS method_code,
        r.id AS result_id,
        r.kind AS result_kind,
        v.code AS variable_code,
        pl.label AS processing_level,
        a.id AS action_id
    FROM datavalues dv
    JOIN results r ON dv.resultid = r.id
    JOIN variables v ON r.variableid = v.id
    JOIN units u ON r.unitid = u.id
    JOIN processinglevels pl ON r.processinglevelid = pl.id
    JOIN featureactions fa ON r.featureactionid = fa.id
    JOIN samplingfeatures sf ON fa.samplingfeatureid = sf.id
    JOIN actions a ON fa.actionid = a.id
    JOIN methods m ON a.methodid = m.id
"""


@dataclass
class ResultFilter:
    """
    Optional filters for fetch(). Unset fields do not filter.

    variable_name matches the controlled name, which several variables may
    share; variable_code picks exactly one variable.
    """

    variable_name: Optional[str] = None
    site_code: Optional[str] = None
    method_code: Optional[str] = None
    variable_code: Optional[str] = None
    processing_level: Optional[str] = None
    result_id: Optional[int] = None

    _COLUMNS = {
        "variable_name": "v.name",
        "site_code": "sf.code",
        "method_code": "m.code",
        "variable_code": "v.code",
        "processing_level": "pl.label",
        "result_id": "r.id",
    }

    def where_clause(self) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        for name, column in self._COLUMNS.items():
            value = getattr(self, name)
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params


class QueryFacade:
    """
    Pure-read access to stored values.

    Parameters
    ----------
    db : ODMDatabase
        Store handle.
    """

    def __init__(self, db: "ODMDatabase"):
        self._db = db

    def fetch(
        self,
        filter: Optional[ResultFilter] = None,
        include_provenance: bool = False,
        **criteria: Any,
    ) -> pd.DataFrame:
        """
        Fetch denormalized value rows.

        Parameters
        ----------
        filter : ResultFilter, optional
            Filter object. Keyword criteria (variable_name, site_code,
            method_code, variable_code, processing_level, result_id) may be
            given instead.
        include_provenance : bool, optional
            Append result_id, result_kind, variable_code, processing_level
            and action_id columns.

        Returns
        -------
        pd.DataFrame
            value, timestamp, site_code, variable_name, unit_name,
            method_code; ordered by site then timestamp. Empty if nothing
            matches.
        """
        if filter is None:
            filter = ResultFilter(**criteria)
        elif criteria:
            raise TypeError("Pass either a ResultFilter or keyword criteria, not both")

        where, params = filter.where_clause()
        sql = f"{_SELECT} {where} ORDER BY sf.code, dv.value_datetime, r.id, dv.id"
        df = self._db.query(sql, params)

        if df.empty:
            logger.debug(f"No rows for {filter}")
            return pd.DataFrame(columns=get_column_order(include_provenance))

        return reorder_columns(df, include_provenance).reset_index(drop=True)

    def fetch_records(self, filter: Optional[ResultFilter] = None, **criteria: Any) -> List[Dict[str, Any]]:
        """fetch() as a list of dicts, for callers that do not use pandas."""
        return self.fetch(filter, **criteria).to_dict(orient="records")

    def result_summary(self, **criteria: Any) -> pd.DataFrame:
        """
        One row per result: site, variable, unit, method, kind, count and span.
        """
        where, params = ResultFilter(**criteria).where_clause()
        sql = f"""
            SELECT
                r.id AS result_id,
                sf.code AS site_code,
                v.code AS variable_code,
                v.name AS variable_name,
                u.name AS unit_name,
                m.code AS method_code,
                pl.label AS processing_level,
                r.kind AS result_kind,
                COUNT(dv.id) AS value_count,
                MIN(dv.value_datetime) AS begin_datetime,
                MAX(dv.value_datetime) AS end_datetime
            FROM results r
            JOIN variables v ON r.variableid = v.id
            JOIN units u ON r.unitid = u.id
            JOIN processinglevels pl ON r.processinglevelid = pl.id
            JOIN featureactions fa ON r.featureactionid = fa.id
            JOIN samplingfeatures sf ON fa.samplingfeatureid = sf.id
            JOIN actions a ON fa.actionid = a.id
            JOIN methods m ON a.methodid = m.id
            LEFT JOIN datavalues dv ON dv.resultid = r.id
            {where}
            GROUP BY r.id, sf.code, v.code, v.name, u.name, m.code, pl.label, r.kind
            ORDER BY sf.code, r.id
        """
        return self._db.query(sql, params)
