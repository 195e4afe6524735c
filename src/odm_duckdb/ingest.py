# -*- coding: utf-8 -*-
"""
ODM Result Ingestion
====================

Inserts tabular values as provenance-linked results. The input is a frame
with a site code column, a timestamp column and values, described by an
explicit named mapping:

- WideMapping: one column per variable, each mapped to (variable, unit)
- LongMapping: one value column plus variable and unit columns

Both are validated against the frame and normalised to one canonical long
frame (site_code, timestamp, variable_code, unit_name, value,
source_column) before any write happens.

Insertion protocol (one transaction per call):
    1. Resolve every variable, unit, method and processing level; fail with
       UnknownReference before writing anything.
    2. Group rows by site.
    3. Per site: ensure the sampling feature, record one Action spanning the
       site's timestamps and one FeatureAction.
    4. Per mapped value column (per variable and unit for a LongMapping):
       one Result with its DataValues. A Measurement result takes exactly
       one row per site (CardinalityError otherwise).

Example Usage:
    from odm_duckdb.ingest import ResultStore, WideMapping, ValueColumn

    store = ResultStore(db)
    mapping = WideMapping(
        values={'level_mm': ValueColumn('WLVL', 'millimeter')},
        site_column='well', timestamp_column='datetime',
    )
    result_ids = store.insert(
        df, mapping, method_code='LOGGER', processing_level='Raw data',
        kind='TimeSeries', sampled_medium='groundwater',
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

import pandas as pd

from .catalogs import MethodCatalog, ProcessingLevelCatalog, UnitCatalog, VariableCatalog
from .exceptions import CardinalityError, ColumnMappingError
from .provenance import ActionRecorder, content_fingerprint
from .sampling_features import SamplingFeatureRegistry

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)

CANONICAL_COLUMNS = [
    "site_code", "timestamp", "variable_code", "unit_name", "value", "source_column",
]
RESULT_KEY = ["variable_code", "unit_name", "source_column"]


class ResultKind(Enum):
    """Result kinds: a single point value or an ordered series."""
    MEASUREMENT = "Measurement"
    TIMESERIES = "TimeSeries"

    @classmethod
    def coerce(cls, value: Union[str, "ResultKind"]) -> "ResultKind":
        if isinstance(value, cls):
            return value
        for kind in cls:
            if str(value).lower() in (kind.value.lower(), kind.name.lower()):
                return kind
        raise ValueError(
            f"Unknown result kind {value!r}; expected 'Measurement' or 'TimeSeries'"
        )


@dataclass(frozen=True)
class ValueColumn:
    """Variable code and unit name a value column is stored under."""

    variable_code: str
    unit_name: str


def _require_columns(data: pd.DataFrame, required: List[str]) -> None:
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise ColumnMappingError(
            f"Input is missing mapped column(s) {missing}; "
            f"available: {list(data.columns)}",
            columns=missing,
        )


def to_timestamps(series: pd.Series, column: str) -> pd.Series:
    """Parse timestamps; tz-aware values become naive UTC."""
    try:
        parsed = pd.to_datetime(series)
    except (ValueError, TypeError) as e:
        raise ColumnMappingError(
            f"Column {column!r} does not hold timestamps: {e}", columns=[column]
        ) from e
    if getattr(parsed.dt, "tz", None) is not None:
        parsed = parsed.dt.tz_convert("UTC").dt.tz_localize(None)
    return parsed


def to_values(series: pd.Series, column: str) -> pd.Series:
    try:
        return pd.to_numeric(series).astype(float)
    except (ValueError, TypeError) as e:
        raise ColumnMappingError(
            f"Column {column!r} does not hold numeric values: {e}", columns=[column]
        ) from e


def _finish_canonical(long: pd.DataFrame) -> pd.DataFrame:
    """Check keys, drop missing values and fix column order."""
    for key in ("site_code", "timestamp", "variable_code", "unit_name"):
        if long[key].isna().any():
            n = int(long[key].isna().sum())
            raise ColumnMappingError(f"{n} row(s) have no {key}", columns=[key])

    n_missing = int(long["value"].isna().sum())
    if n_missing:
        logger.debug(f"Dropping {n_missing} row(s) with no value")
        long = long[long["value"].notna()]

    long = long.astype({
        "site_code": str, "variable_code": str, "unit_name": str, "source_column": str,
    })
    return long[CANONICAL_COLUMNS].reset_index(drop=True)


@dataclass
class WideMapping:
    """
    One value column per variable.

    Parameters
    ----------
    values : dict
        Value column name -> ValueColumn (or (variable_code, unit_name) tuple).
    site_column : str
        Column holding the site code.
    timestamp_column : str
        Column holding the timestamp.
    """

    values: Dict[str, Union[ValueColumn, Tuple[str, str]]]
    site_column: str = "site_code"
    timestamp_column: str = "timestamp"

    def __post_init__(self) -> None:
        if not self.values:
            raise ColumnMappingError("Mapping names no value columns")
        self.values = {
            col: vc if isinstance(vc, ValueColumn) else ValueColumn(*vc)
            for col, vc in self.values.items()
        }

    def to_long(self, data: pd.DataFrame) -> pd.DataFrame:
        _require_columns(
            data, [self.site_column, self.timestamp_column, *self.values]
        )
        pieces = []
        for column, target in self.values.items():
            pieces.append(pd.DataFrame({
                "site_code": data[self.site_column].values,
                "timestamp": to_timestamps(data[self.timestamp_column], self.timestamp_column).values,
                "variable_code": target.variable_code,
                "unit_name": target.unit_name,
                "value": to_values(data[column], column).values,
                "source_column": column,
            }))
        return _finish_canonical(pd.concat(pieces, ignore_index=True))


@dataclass
class LongMapping:
    """One value column, with the variable and unit named per row."""

    site_column: str = "site_code"
    timestamp_column: str = "timestamp"
    value_column: str = "value"
    variable_column: str = "variable_code"
    unit_column: str = "unit_name"

    def to_long(self, data: pd.DataFrame) -> pd.DataFrame:
        _require_columns(data, [
            self.site_column, self.timestamp_column, self.value_column,
            self.variable_column, self.unit_column,
        ])
        long = pd.DataFrame({
            "site_code": data[self.site_column].values,
            "timestamp": to_timestamps(data[self.timestamp_column], self.timestamp_column).values,
            "variable_code": data[self.variable_column].values,
            "unit_name": data[self.unit_column].values,
            "value": to_values(data[self.value_column], self.value_column).values,
            "source_column": self.value_column,
        })
        return _finish_canonical(long)


Mapping = Union[WideMapping, LongMapping]


@dataclass
class IngestionReport:
    """Outcome of one ingestion call."""

    result_ids: List[int] = field(default_factory=list)
    created: List[int] = field(default_factory=list)
    skipped_sites: List[str] = field(default_factory=list)
    action_ids: Dict[str, int] = field(default_factory=dict)


@dataclass
class _References:
    method_id: int
    processing_level_id: int
    variable_ids: Dict[str, int]
    unit_ids: Dict[str, int]


class ResultStore:
    """
    Insertion path for measurement and timeseries results.

    Parameters
    ----------
    db : ODMDatabase
        Store handle.
    """

    def __init__(self, db: "ODMDatabase"):
        self._db = db
        self.units = UnitCatalog(db)
        self.variables = VariableCatalog(db)
        self.methods = MethodCatalog(db)
        self.processing_levels = ProcessingLevelCatalog(db)
        self.features = SamplingFeatureRegistry(db)
        self.recorder = ActionRecorder(db)

    def insert(
        self,
        data: pd.DataFrame,
        mapping: Mapping,
        method_code: str,
        processing_level: str,
        kind: Union[str, ResultKind] = ResultKind.TIMESERIES,
        sampled_medium: str = "notApplicable",
        **kwargs,
    ) -> List[int]:
        """
        Insert values and return the result ids, ordered by site then variable.

        See ingest() for parameters.
        """
        return self.ingest(
            data, mapping, method_code, processing_level,
            kind=kind, sampled_medium=sampled_medium, **kwargs,
        ).result_ids

    def ingest(
        self,
        data: pd.DataFrame,
        mapping: Mapping,
        method_code: str,
        processing_level: str,
        kind: Union[str, ResultKind] = ResultKind.TIMESERIES,
        sampled_medium: str = "notApplicable",
        action_type: str = "observation",
        description: Optional[str] = None,
        skip_duplicates: bool = True,
        fingerprint_context: Optional[Dict[str, str]] = None,
    ) -> IngestionReport:
        """
        Insert values as one atomic operation.

        Parameters
        ----------
        data : pd.DataFrame
            Input rows.
        mapping : WideMapping or LongMapping
            Named mapping from semantic fields to input columns.
        method_code : str
            Method that produced the values.
        processing_level : str
            Processing level label, e.g. 'Raw data'.
        kind : str or ResultKind
            Measurement or TimeSeries.
        sampled_medium : str
            Controlled medium term.
        action_type : str
            Controlled action type recorded on each per-site action.
        description : str, optional
            Stored on each action.
        skip_duplicates : bool
            If True, a site whose identical rows were already ingested with
            the same method, level and kind is not written again; its
            existing result ids are returned instead.
        fingerprint_context : dict, optional
            Extra values that distinguish otherwise identical ingestions,
            such as the sources of a derivation.

        Returns
        -------
        IngestionReport

        Raises
        ------
        ColumnMappingError, UnknownReference, InvalidVocabulary, CardinalityError
            The store is left unchanged.
        """
        kind = ResultKind.coerce(kind)
        long = mapping.to_long(data)
        refs = self._resolve_references(
            long, method_code, processing_level, sampled_medium, action_type
        )

        if long.empty:
            logger.warning("Nothing to ingest: input has no values")
            return IngestionReport()

        context = {
            'method': method_code,
            'processing_level': processing_level,
            'kind': kind.value,
            'sampled_medium': sampled_medium,
            'action_type': action_type,
            'description': description or "",
        }
        context.update(fingerprint_context or {})

        with self._db.transaction():
            report = self._write(
                long, refs, kind, sampled_medium, action_type,
                description, context, skip_duplicates,
            )

        logger.info(
            f"Ingested {len(report.created)} {kind.value} result(s) "
            f"for {len(report.action_ids)} site(s) with method {method_code!r}"
            + (f"; skipped {len(report.skipped_sites)} already-ingested site(s)"
               if report.skipped_sites else "")
        )
        return report

    def _resolve_references(
        self,
        long: pd.DataFrame,
        method_code: str,
        processing_level: str,
        sampled_medium: str,
        action_type: str,
    ) -> _References:
        """Validate every referenced catalog entry before any write."""
        self._db.vocabulary.check("sampled_medium", sampled_medium)
        self._db.vocabulary.check("action_type", action_type)
        return _References(
            method_id=self.methods.resolve(method_code),
            processing_level_id=self.processing_levels.resolve(processing_level),
            variable_ids={
                code: self.variables.resolve(code)
                for code in pd.unique(long["variable_code"])
            },
            unit_ids={
                name: self.units.resolve(name)
                for name in pd.unique(long["unit_name"])
            },
        )

    def _write(
        self,
        long: pd.DataFrame,
        refs: _References,
        kind: ResultKind,
        sampled_medium: str,
        action_type: str,
        description: Optional[str],
        context: Dict[str, str],
        skip_duplicates: bool,
    ) -> IngestionReport:
        report = IngestionReport()

        for site_code, site_rows in long.groupby("site_code", sort=True):
            site_rows = site_rows.sort_values(
                RESULT_KEY + ["timestamp"], kind="mergesort"
            )

            if kind is ResultKind.MEASUREMENT:
                sizes = site_rows.groupby(RESULT_KEY).size()
                for (variable_code, _unit, _column), n in sizes.items():
                    if n > 1:
                        raise CardinalityError(site_code, variable_code, int(n))

            feature_id = self.features.ensure(site_code)
            fingerprint = content_fingerprint(site_rows, **context)

            if skip_duplicates:
                existing_fa = self.recorder.find_feature_action(feature_id, fingerprint)
                if existing_fa is not None:
                    existing = self._results_for_feature_action(existing_fa)
                    logger.warning(
                        f"Site {site_code!r} already ingested identically "
                        f"(feature action {existing_fa}); reusing results {existing}"
                    )
                    report.result_ids.extend(existing)
                    report.skipped_sites.append(site_code)
                    continue

            action_id = self.recorder.record_action(
                refs.method_id,
                action_type,
                begin=site_rows["timestamp"].min().to_pydatetime(),
                end=site_rows["timestamp"].max().to_pydatetime(),
                description=description,
                fingerprint=fingerprint,
            )
            fa_id = self.recorder.record_feature_action(action_id, feature_id)
            report.action_ids[site_code] = action_id

            grouped = site_rows.groupby(RESULT_KEY, sort=True)
            for (variable_code, unit_name, _column), rows in grouped:
                result_id = self._insert_result(
                    fa_id,
                    refs.variable_ids[variable_code],
                    refs.unit_ids[unit_name],
                    refs.processing_level_id,
                    kind,
                    sampled_medium,
                    rows,
                )
                report.result_ids.append(result_id)
                report.created.append(result_id)
                logger.debug(
                    f"Result {result_id}: {len(rows)} {variable_code} value(s) "
                    f"at {site_code!r}"
                )

        return report

    def _insert_result(
        self,
        featureaction_id: int,
        variable_id: int,
        unit_id: int,
        processing_level_id: int,
        kind: ResultKind,
        sampled_medium: str,
        rows: pd.DataFrame,
    ) -> int:
        result_id = self._db.execute(
            """
            INSERT INTO results (
                featureactionid, variableid, unitid, processinglevelid,
                kind, sampled_medium, value_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [
                featureaction_id, variable_id, unit_id, processing_level_id,
                kind.value, sampled_medium, len(rows),
            ],
        ).fetchone()[0]

        self._db.executemany(
            "INSERT INTO datavalues (resultid, value, value_datetime) VALUES (?, ?, ?)",
            [
                (result_id, float(value), ts.to_pydatetime())
                for value, ts in zip(rows["value"], rows["timestamp"])
            ],
        )
        return result_id

    def _results_for_feature_action(self, featureaction_id: int) -> List[int]:
        rows = self._db.execute(
            "SELECT id FROM results WHERE featureactionid = ? ORDER BY id",
            [featureaction_id],
        ).fetchall()
        return [r[0] for r in rows]
