# -*- coding: utf-8 -*-
"""
ODM Derivation Engine
=====================

Combines stored or in-memory result sets into a new derived variable and
writes it back through the ordinary insertion path, with one lineage row
per input so the derived values can be reproduced from the store.

Join rules (per site):
    - TimeSeries inputs are inner-joined on timestamp. Timestamps missing
      from any input are dropped, never imputed.
    - A Measurement input holds exactly one value and is broadcast across
      every joined timestamp (the well-depth / water-level pattern).
    - If every input is a Measurement, they are joined on timestamp and the
      output is a Measurement.
    - Duplicate timestamps in an input, or more than one value in a
      Measurement input, raise AmbiguousJoin.

Example Usage:
    from odm_duckdb.derivation import DerivationEngine, DerivationInput
    from odm_duckdb.transforms import Subtract

    engine = DerivationEngine(db)
    result_id = engine.derive(
        inputs=[
            DerivationInput.stored('wellDepth', variable_code='WDEPTH'),
            DerivationInput.stored('waterLevel', variable_code='WLVL'),
        ],
        site_code='509R2',
        transform=Subtract(('wellDepth', 'waterLevel')),
        output_variable='GWDEPTH',
        output_method='GWDEPTH_CALC',
        processing_level='Derived product',
    )
    engine.verify(result_id).reproduced   # True
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import AmbiguousJoin, DerivationError, EmptyJoin, IncompatibleUnits, UnknownReference
from .ingest import LongMapping, ResultKind, ResultStore, to_timestamps, to_values
from .provenance import ActionRecorder
from .query import QueryFacade, ResultFilter
from .transforms import Transform, parse_transform

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)

VERIFY_TOLERANCE = 1e-9

TransformLike = Union[Transform, str, Mapping[str, Any]]


@dataclass
class DerivationInput:
    """
    One named input of a derivation.

    Exactly one of ``filter`` (values already in the store) or ``frame``
    (an in-memory table with site code, timestamp and value columns) is set.
    Use the stored() and from_frame() constructors.
    """

    name: str
    filter: Optional[ResultFilter] = None
    frame: Optional[pd.DataFrame] = None
    kind: ResultKind = ResultKind.TIMESERIES
    unit_name: Optional[str] = None
    site_column: str = "site_code"
    timestamp_column: str = "timestamp"
    value_column: str = "value"

    def __post_init__(self) -> None:
        if (self.filter is None) == (self.frame is None):
            raise DerivationError(
                f"Input {self.name!r} needs exactly one of a stored filter or a frame"
            )
        self.kind = ResultKind.coerce(self.kind)

    @classmethod
    def stored(cls, name: str, **criteria: Any) -> "DerivationInput":
        """Input read from the store with ResultFilter criteria."""
        return cls(name, filter=ResultFilter(**criteria))

    @classmethod
    def from_frame(
        cls,
        name: str,
        frame: pd.DataFrame,
        kind: Union[str, ResultKind] = ResultKind.TIMESERIES,
        unit_name: Optional[str] = None,
        **columns: str,
    ) -> "DerivationInput":
        """Input held in memory, e.g. freshly parsed logger data."""
        return cls(name, frame=frame, kind=kind, unit_name=unit_name, **columns)

    @property
    def is_stored(self) -> bool:
        return self.filter is not None


@dataclass
class _LoadedInput:
    """An input narrowed to one site: timestamp/value rows plus provenance."""

    name: str
    rows: pd.DataFrame
    kind: ResultKind
    unit_name: Optional[str]
    variable_codes: Set[str] = field(default_factory=set)
    source_result_ids: List[int] = field(default_factory=list)


def _input_sources(loaded: List[_LoadedInput]) -> str:
    """Input name -> source result ids, or "frame" for in-memory inputs."""
    return ";".join(
        f"{inp.name}=" + (",".join(str(r) for r in inp.source_result_ids) or "frame")
        for inp in sorted(loaded, key=lambda inp: inp.name)
    )


@dataclass
class VerificationReport:
    """Whether a derived result is reproduced from its stored inputs."""

    result_id: int
    reproduced: bool
    n_stored: int
    n_recomputed: int
    max_abs_diff: float
    transform: str


def as_transform(transform: TransformLike) -> Transform:
    """Accept a Transform, an expression string or a {'op', 'operands'} dict."""
    if isinstance(transform, Transform):
        return transform
    if isinstance(transform, str):
        return parse_transform(transform)
    return Transform.from_dict(transform)


class DerivationEngine:
    """
    Derives new variables from joined inputs.

    Parameters
    ----------
    db : ODMDatabase
        Store handle.
    """

    def __init__(self, db: "ODMDatabase"):
        self._db = db
        self.store = ResultStore(db)
        self.query = QueryFacade(db)
        self.recorder = ActionRecorder(db)

    def derive(
        self,
        inputs: Sequence[DerivationInput],
        site_code: str,
        transform: TransformLike,
        output_variable: str,
        output_method: str,
        processing_level: str,
        output_unit: Optional[str] = None,
        sampled_medium: str = "notApplicable",
        skip_duplicates: bool = True,
    ) -> int:
        """
        Derive one result at one site and store it.

        Parameters
        ----------
        inputs : list of DerivationInput
            Named inputs; the names are the transform's operands.
        site_code : str
            Site to derive at.
        transform : Transform, str or dict
            Pointwise arithmetic over the input names.
        output_variable : str
            Registered variable code for the derived values. Must differ
            from every stored input's variable.
        output_method : str
            Registered method code for the derivation.
        processing_level : str
            Processing level label for the derived result.
        output_unit : str, optional
            Unit of the derived values. Defaults to the common input unit
            for unit-preserving transforms.
        sampled_medium : str, optional
            Controlled medium term.
        skip_duplicates : bool, optional
            Return the existing result if this exact derivation was already
            stored.

        Returns
        -------
        int
            Derived result id.

        Raises
        ------
        AmbiguousJoin, EmptyJoin, IncompatibleUnits, DerivationError,
        UnknownReference
            The store is left unchanged.
        """
        transform = as_transform(transform)
        self._check_inputs(inputs, transform)

        with self._db.transaction():
            result_id = self._derive_site(
                inputs, site_code, transform, output_variable, output_method,
                processing_level, output_unit, sampled_medium, skip_duplicates,
            )

        logger.info(
            f"Derived {output_variable} = {transform.expression} "
            f"at {site_code!r} (result {result_id})"
        )
        return result_id

    def derive_sites(
        self,
        inputs: Sequence[DerivationInput],
        transform: TransformLike,
        output_variable: str,
        output_method: str,
        processing_level: str,
        site_codes: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ) -> Dict[str, int]:
        """
        derive() at every site, as one transaction.

        Parameters
        ----------
        site_codes : list of str, optional
            Sites to derive at. Defaults to every site present in all inputs.

        Returns
        -------
        dict
            site code -> derived result id.
        """
        transform = as_transform(transform)
        self._check_inputs(inputs, transform)

        if site_codes is None:
            site_codes = sorted(
                set.intersection(*(self._input_sites(inp) for inp in inputs))
            )

        derived: Dict[str, int] = {}
        with self._db.transaction():
            for site_code in site_codes:
                derived[site_code] = self._derive_site(
                    inputs, site_code, transform, output_variable, output_method,
                    processing_level, **kwargs,
                )

        logger.info(
            f"Derived {output_variable} = {transform.expression} at {len(derived)} site(s)"
        )
        return derived

    def verify(self, result_id: int) -> VerificationReport:
        """
        Recompute a derived result from its recorded inputs and compare.

        Raises
        ------
        DerivationError
            If the result was not derived, or an input was not stored.
        """
        lineage = self.recorder.get_derivation_inputs(result_id)
        if not lineage:
            raise DerivationError(f"Result {result_id} has no recorded derivation")

        transform = Transform.from_dict(json.loads(lineage[0]['transform']))
        sources: Dict[str, List[int]] = {}
        for inp in lineage:
            if inp['source_result_id'] is None:
                raise DerivationError(
                    f"Input {inp['input_name']!r} of result {result_id} was not "
                    f"stored; it cannot be reproduced from the store"
                )
            sources.setdefault(inp['input_name'], []).append(inp['source_result_id'])

        stored = self.query.fetch(result_id=result_id, include_provenance=True)
        site_code = stored['site_code'].iloc[0]

        loaded = []
        for name, result_ids in sources.items():
            rows = pd.concat(
                [self.query.fetch(result_id=rid, include_provenance=True) for rid in result_ids],
                ignore_index=True,
            )
            loaded.append(self._loaded_from_rows(name, rows, site_code))

        joined, _ = self._join(loaded, site_code)
        recomputed = transform.apply({name: joined[name].to_numpy() for name in transform.operands})

        stored_values = stored['value'].to_numpy(dtype=float)
        stored_times = pd.to_datetime(stored['timestamp']).astype('datetime64[ns]').to_numpy()
        same_shape = len(recomputed) == len(stored_values) and np.array_equal(
            joined['timestamp'].to_numpy(), stored_times
        )
        if not same_shape:
            max_diff = float('inf')
        else:
            max_diff = float(np.max(np.abs(recomputed - stored_values)))
        reproduced = max_diff <= VERIFY_TOLERANCE

        log = logger.info if reproduced else logger.warning
        log(f"Verification of result {result_id}: reproduced={reproduced}, max diff {max_diff}")

        return VerificationReport(
            result_id=result_id,
            reproduced=reproduced,
            n_stored=len(stored_values),
            n_recomputed=len(recomputed),
            max_abs_diff=max_diff,
            transform=transform.expression,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_inputs(self, inputs: Sequence[DerivationInput], transform: Transform) -> None:
        names = [inp.name for inp in inputs]
        if len(set(names)) != len(names):
            raise DerivationError(f"Input names must be unique: {names}")
        if set(names) != set(transform.operands):
            raise DerivationError(
                f"Inputs {sorted(names)} do not match transform operands "
                f"{sorted(transform.operands)}"
            )

    def _derive_site(
        self,
        inputs: Sequence[DerivationInput],
        site_code: str,
        transform: Transform,
        output_variable: str,
        output_method: str,
        processing_level: str,
        output_unit: Optional[str] = None,
        sampled_medium: str = "notApplicable",
        skip_duplicates: bool = True,
    ) -> int:
        loaded = [self._load(inp, site_code) for inp in inputs]

        self.store.variables.resolve(output_variable)
        for inp in loaded:
            if output_variable in inp.variable_codes:
                raise DerivationError(
                    f"Output variable {output_variable!r} is also input {inp.name!r}; "
                    f"register a distinct variable for the derived values"
                )

        output_unit = self._output_unit(loaded, transform, output_unit)
        joined, out_kind = self._join(loaded, site_code)
        values = transform.apply({name: joined[name].to_numpy() for name in transform.operands})

        frame = pd.DataFrame({
            "site_code": site_code,
            "timestamp": joined["timestamp"].to_numpy(),
            "variable_code": output_variable,
            "unit_name": output_unit,
            "value": values,
        })

        report = self.store.ingest(
            frame,
            LongMapping(),
            output_method,
            processing_level,
            kind=out_kind,
            sampled_medium=sampled_medium,
            action_type="derivation",
            description=f"{output_variable} = {transform.expression}",
            skip_duplicates=skip_duplicates,
            fingerprint_context={"inputs": _input_sources(loaded)},
        )
        result_id = report.result_ids[0]

        if result_id in report.created:
            recipe = json.dumps(transform.to_dict())
            for inp in loaded:
                for source_id in inp.source_result_ids or [None]:
                    self.recorder.record_derivation(result_id, inp.name, source_id, recipe)

        logger.debug(
            f"{output_variable} at {site_code!r}: {len(joined)} joined row(s) "
            f"from inputs {[inp.name for inp in loaded]}"
        )
        return result_id

    def _input_sites(self, inp: DerivationInput) -> Set[str]:
        if inp.is_stored:
            rows = self.query.fetch(dataclasses.replace(inp.filter, site_code=None))
            return set(rows['site_code'])
        return set(inp.frame[inp.site_column].astype(str))

    def _load(self, inp: DerivationInput, site_code: str) -> _LoadedInput:
        if inp.is_stored:
            # The derivation site always replaces any site in the filter.
            rows = self.query.fetch(
                dataclasses.replace(inp.filter, site_code=site_code),
                include_provenance=True,
            )
            return self._loaded_from_rows(inp.name, rows, site_code)

        frame = inp.frame
        missing = [
            c for c in (inp.site_column, inp.timestamp_column, inp.value_column)
            if c not in frame.columns
        ]
        if missing:
            raise DerivationError(f"Input {inp.name!r} frame is missing columns {missing}")

        at_site = frame[frame[inp.site_column].astype(str) == str(site_code)]
        rows = pd.DataFrame({
            "timestamp": to_timestamps(at_site[inp.timestamp_column], inp.timestamp_column).to_numpy(),
            "value": to_values(at_site[inp.value_column], inp.value_column).to_numpy(),
        }).dropna()
        if rows.empty:
            raise EmptyJoin(site_code, [inp.name])
        loaded = _LoadedInput(inp.name, rows, inp.kind, inp.unit_name)
        self._check_unambiguous(loaded, site_code)
        return loaded

    def _loaded_from_rows(self, name: str, rows: pd.DataFrame, site_code: str) -> _LoadedInput:
        if rows.empty:
            raise EmptyJoin(site_code, [name])

        kinds = set(rows['result_kind'])
        if len(kinds) > 1:
            raise DerivationError(f"Input {name!r} mixes result kinds {sorted(kinds)}")
        units = set(rows['unit_name'])
        if len(units) > 1:
            raise IncompatibleUnits(list(units))

        loaded = _LoadedInput(
            name=name,
            rows=rows[['timestamp', 'value']].reset_index(drop=True),
            kind=ResultKind.coerce(kinds.pop()),
            unit_name=units.pop(),
            variable_codes=set(rows['variable_code']),
            source_result_ids=sorted(int(r) for r in set(rows['result_id'])),
        )
        self._check_unambiguous(loaded, site_code)
        return loaded

    def _check_unambiguous(self, loaded: _LoadedInput, site_code: str) -> None:
        timestamps = loaded.rows['timestamp']
        if loaded.kind is ResultKind.MEASUREMENT and len(loaded.rows) > 1:
            raise AmbiguousJoin(loaded.name, site_code, list(timestamps))
        duplicated = timestamps[timestamps.duplicated(keep=False)]
        if not duplicated.empty:
            raise AmbiguousJoin(loaded.name, site_code, sorted(set(duplicated)))

    def _output_unit(
        self,
        loaded: List[_LoadedInput],
        transform: Transform,
        output_unit: Optional[str],
    ) -> str:
        units = [inp.unit_name for inp in loaded if inp.unit_name]
        if transform.preserves_unit and len(set(units)) > 1:
            raise IncompatibleUnits(units)
        if output_unit is not None:
            self.store.units.resolve(output_unit)
            return output_unit
        if not transform.preserves_unit:
            raise DerivationError(
                f"Transform {transform.expression!r} changes units; pass output_unit"
            )
        if not units:
            raise UnknownReference("unit", None)
        return units[0]

    def _join(self, loaded: List[_LoadedInput], site_code: str) -> Tuple[pd.DataFrame, ResultKind]:
        series = [inp for inp in loaded if inp.kind is ResultKind.TIMESERIES]
        points = [inp for inp in loaded if inp.kind is ResultKind.MEASUREMENT]

        if series:
            joined = self._inner_join(series)
            for inp in points:
                joined[inp.name] = float(inp.rows['value'].iloc[0])
            out_kind = ResultKind.TIMESERIES
        else:
            joined = self._inner_join(points)
            out_kind = ResultKind.MEASUREMENT

        if joined.empty:
            raise EmptyJoin(site_code, [inp.name for inp in loaded])
        return joined.sort_values('timestamp').reset_index(drop=True), out_kind

    @staticmethod
    def _inner_join(inputs: List[_LoadedInput]) -> pd.DataFrame:
        joined = None
        for inp in inputs:
            frame = inp.rows[['timestamp', 'value']].rename(columns={'value': inp.name})
            frame['timestamp'] = pd.to_datetime(frame['timestamp']).astype('datetime64[ns]')
            joined = frame if joined is None else joined.merge(frame, on='timestamp', how='inner')
        return joined
