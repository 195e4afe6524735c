# -*- coding: utf-8 -*-
"""
Column order for rows returned by the query facade.

The first six columns are the stable output contract consumed by plotting
and export; the provenance columns are appended only on request.
"""

from typing import List

import pandas as pd

RESULT_ROW_COLUMN_ORDER = [
    "value",
    "timestamp",
    "site_code",
    "variable_name",
    "unit_name",
    "method_code",
]

PROVENANCE_COLUMN_ORDER = [
    "result_id",
    "result_kind",
    "variable_code",
    "processing_level",
    "action_id",
]


def get_column_order(include_provenance: bool = False) -> List[str]:
    """Return the column order for query output."""
    if include_provenance:
        return RESULT_ROW_COLUMN_ORDER + PROVENANCE_COLUMN_ORDER
    return list(RESULT_ROW_COLUMN_ORDER)


def reorder_columns(df: pd.DataFrame, include_provenance: bool = False) -> pd.DataFrame:
    """
    Reorder (and restrict) DataFrame columns to the query output order.

    Columns missing from df are skipped.
    """
    order = [c for c in get_column_order(include_provenance) if c in df.columns]
    return df[order]
