# -*- coding: utf-8 -*-
"""
ODM Provenance Recording
========================

Records WHO/WHAT/WHEN for every ingestion or derivation event: one Action
(method + time span) per site touched, one FeatureAction tying it to the
sampling feature, and, for derived results, one lineage row per input
naming the source result and the transform applied.

Actions are write-once. Corrections are new actions, never edits.

Example Usage:
    from odm_duckdb.provenance import ActionRecorder

    recorder = ActionRecorder(db)
    with db.transaction():
        action_id = recorder.record_action(method_id, 'observation', t0, t1)
        fa_id = recorder.record_feature_action(action_id, feature_id)

    # Query history
    recorder.get_action_history(site_code='509R2')
    recorder.get_lineage(result_id)
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import networkx as nx
import pandas as pd

from .exceptions import UnknownReference

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)


def content_fingerprint(frame: pd.DataFrame, **context: Any) -> str:
    """
    Hash a canonical frame plus its ingestion context.

    Rows are sorted on every column so that the fingerprint does not depend
    on input order.

    Parameters
    ----------
    frame : pd.DataFrame
        Rows for one site.
    **context
        Method, processing level, kind and any other scalar that makes two
        ingestions distinct.

    Returns
    -------
    str
        Hex sha256 digest.
    """
    digest = hashlib.sha256()
    for key in sorted(context):
        digest.update(f"{key}={context[key]};".encode("utf-8"))
    canonical = frame.sort_values(list(frame.columns)).reset_index(drop=True)
    digest.update(canonical.to_csv(index=False, date_format="%Y-%m-%dT%H:%M:%S.%f").encode("utf-8"))
    return digest.hexdigest()


class ActionRecorder:
    """
    Writes and reads provenance actions.

    Parameters
    ----------
    db : ODMDatabase
        Store handle. Write methods expect to run inside db.transaction().
    """

    def __init__(self, db: "ODMDatabase"):
        self._db = db

    def record_action(
        self,
        method_id: int,
        action_type: str,
        begin: datetime,
        end: datetime,
        description: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> int:
        """
        Record one action.

        Parameters
        ----------
        method_id : int
            Method that produced the values.
        action_type : str
            Controlled action type (observation, derivation, ...).
        begin, end : datetime
            Time span covered by the action's values.
        description : str, optional
            Free text, e.g. the transform expression of a derivation.
        fingerprint : str, optional
            Content hash used to recognize re-ingestion.

        Returns
        -------
        int
            The action id.
        """
        self._db.vocabulary.check("action_type", action_type)
        action_id = self._db.execute(
            """
            INSERT INTO actions (
                methodid, action_type, begin_datetime, end_datetime,
                description, fingerprint
            ) VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [method_id, action_type, begin, end, description, fingerprint],
        ).fetchone()[0]
        logger.debug(f"Recorded {action_type} action {action_id} ({begin} .. {end})")
        return action_id

    def record_feature_action(self, action_id: int, feature_id: int) -> int:
        """Link an action to the sampling feature it touched."""
        return self._db.execute(
            """
            INSERT INTO featureactions (actionid, samplingfeatureid)
            VALUES (?, ?) RETURNING id
            """,
            [action_id, feature_id],
        ).fetchone()[0]

    def find_feature_action(self, feature_id: int, fingerprint: str) -> Optional[int]:
        """Return the feature action of an earlier identical ingestion, if any."""
        row = self._db.execute(
            """
            SELECT fa.id
            FROM featureactions fa
            JOIN actions a ON fa.actionid = a.id
            WHERE fa.samplingfeatureid = ? AND a.fingerprint = ?
            ORDER BY fa.id
            LIMIT 1
            """,
            [feature_id, fingerprint],
        ).fetchone()
        return row[0] if row else None

    def record_derivation(
        self,
        derived_result_id: int,
        input_name: str,
        source_result_id: Optional[int],
        transform: str,
    ) -> int:
        """
        Record that a derived result used one named input.

        source_result_id is None when the input was an in-memory frame
        rather than a stored result.
        """
        return self._db.execute(
            """
            INSERT INTO resultderivations (
                derivedresultid, inputname, sourceresultid, transform
            ) VALUES (?, ?, ?, ?) RETURNING id
            """,
            [derived_result_id, input_name, source_result_id, transform],
        ).fetchone()[0]

    def get_action_history(
        self,
        site_code: Optional[str] = None,
        method_code: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Get actions with optional filters, most recent first.

        Parameters
        ----------
        site_code : str, optional
            Only actions that touched this site.
        method_code : str, optional
            Only actions performed with this method.
        limit : int, optional
            Maximum records to return.

        Returns
        -------
        list of dict
            Action records.
        """
        conditions = []
        params: List[Any] = []

        if site_code:
            conditions.append("sf.code = ?")
            params.append(site_code)
        if method_code:
            conditions.append("m.code = ?")
            params.append(method_code)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        sql = f"""
            SELECT
                a.id, a.action_type, m.code, sf.code,
                a.begin_datetime, a.end_datetime, a.description, a.recorded_at
            FROM actions a
            JOIN methods m ON a.methodid = m.id
            JOIN featureactions fa ON fa.actionid = a.id
            JOIN samplingfeatures sf ON fa.samplingfeatureid = sf.id
            {where_clause}
            ORDER BY a.id DESC
            LIMIT ?
        """
        params.append(limit)

        results = self._db.execute(sql, params).fetchall()

        return [
            {
                'action_id': r[0],
                'action_type': r[1],
                'method_code': r[2],
                'site_code': r[3],
                'begin': r[4],
                'end': r[5],
                'description': r[6],
                'recorded_at': r[7],
            }
            for r in results
        ]

    def get_derivation_inputs(self, result_id: int) -> List[Dict[str, Any]]:
        """Return the direct inputs recorded for a derived result."""
        results = self._db.execute(
            """
            SELECT inputname, sourceresultid, transform
            FROM resultderivations
            WHERE derivedresultid = ?
            ORDER BY id
            """,
            [result_id],
        ).fetchall()
        return [
            {'input_name': r[0], 'source_result_id': r[1], 'transform': r[2]}
            for r in results
        ]

    def lineage_graph(self, result_id: int) -> nx.DiGraph:
        """
        Build the derivation graph upstream of a result.

        Nodes are result ids (or 'input:<name>@<result>' for in-memory
        inputs); edges point from source to derived result and carry the
        input name and transform.
        """
        if not self._result_exists(result_id):
            raise UnknownReference("result", result_id)

        G = nx.DiGraph()
        G.add_node(result_id)
        pending = [result_id]
        while pending:
            current = pending.pop()
            for inp in self.get_derivation_inputs(current):
                source = inp['source_result_id']
                if source is None:
                    source = f"input:{inp['input_name']}@{current}"
                elif source not in G:
                    pending.append(source)
                G.add_edge(
                    source,
                    current,
                    input_name=inp['input_name'],
                    transform=inp['transform'],
                )
        return G

    def get_lineage(self, result_id: int) -> List[Dict[str, Any]]:
        """
        Get every upstream input of a result, nearest first.

        Returns
        -------
        list of dict
            One record per lineage edge: derived result, input name, source
            result (None for in-memory inputs), transform and depth.
        """
        G = self.lineage_graph(result_id)
        depth = nx.shortest_path_length(G.reverse(copy=False), source=result_id)

        records = []
        for source, derived, attrs in G.edges(data=True):
            records.append({
                'derived_result_id': derived,
                'input_name': attrs['input_name'],
                'source_result_id': source if isinstance(source, int) else None,
                'transform': attrs['transform'],
                'depth': depth[derived] + 1,
            })
        records.sort(key=lambda r: (r['depth'], r['derived_result_id'], r['input_name']))
        return records

    def _result_exists(self, result_id: int) -> bool:
        row = self._db.execute(
            "SELECT 1 FROM results WHERE id = ?", [result_id]
        ).fetchone()
        return row is not None
