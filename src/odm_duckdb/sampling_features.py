# -*- coding: utf-8 -*-
"""
Sampling Feature Registry
=========================

Sites and wells are created lazily the first time a site code is
ingested. ensure() is idempotent: a lookup is followed by an insert that
is guarded by the UNIQUE constraint on samplingfeatures.code. If another
writer created the same code between the lookup and the insert, the
uniqueness violation is caught and the lookup is retried.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, Optional

import duckdb
import pandas as pd

from .exceptions import UnknownReference

if TYPE_CHECKING:
    from .odm_db import ODMDatabase

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_TYPE = "site"
MAX_CREATE_ATTEMPTS = 3


class SamplingFeatureRegistry:
    """
    Lookup-or-create access to the samplingfeatures table.

    Parameters
    ----------
    db : ODMDatabase
        Store handle.
    """

    def __init__(self, db: "ODMDatabase"):
        self._db = db

    def lookup(self, code: str) -> Optional[int]:
        """Return the feature id for a site code, or None."""
        row = self._db.execute(
            "SELECT id FROM samplingfeatures WHERE code = ?", [code]
        ).fetchone()
        return row[0] if row else None

    def resolve(self, code: str) -> int:
        """Return the feature id for a site code, raising if it is unknown."""
        feature_id = self.lookup(code)
        if feature_id is None:
            raise UnknownReference("sampling feature", code)
        return feature_id

    def ensure(
        self,
        code: str,
        feature_type: str = DEFAULT_FEATURE_TYPE,
        name: Optional[str] = None,
    ) -> int:
        """
        Return the id of the feature with this code, creating it if absent.

        Inside an enclosing transaction the insert joins that transaction;
        a uniqueness conflict there aborts the whole transaction and is
        re-raised. Outside one, a conflict triggers a fresh lookup.

        Parameters
        ----------
        code : str
            Stable site identifier.
        feature_type : str, optional
            Controlled sampling feature type, used only on creation.
        name : str, optional
            Display name, used only on creation.

        Returns
        -------
        int
            Feature id.
        """
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            feature_id = self.lookup(code)
            if feature_id is not None:
                return feature_id

            joined = self._db.in_transaction
            try:
                with self._db.transaction():
                    # Re-check under the writer lock.
                    feature_id = self.lookup(code)
                    if feature_id is not None:
                        return feature_id
                    self._db.vocabulary.check("sampling_feature_type", feature_type)
                    feature_id = self._db.execute(
                        """
                        INSERT INTO samplingfeatures (code, feature_type, name)
                        VALUES (?, ?, ?) RETURNING id
                        """,
                        [code, feature_type, name],
                    ).fetchone()[0]
            except (duckdb.ConstraintException, duckdb.TransactionException) as e:
                if joined:
                    raise
                logger.debug(
                    f"Concurrent creation of feature {code!r} "
                    f"(attempt {attempt}): {e}"
                )
                continue

            logger.debug(f"Created sampling feature {code!r} (id={feature_id})")
            return feature_id

        return self.resolve(code)

    def ensure_many(self, codes: Iterable[str], **kwargs) -> Dict[str, int]:
        """ensure() every code, returning a code -> id mapping."""
        return {code: self.ensure(code, **kwargs) for code in codes}

    def list(self) -> pd.DataFrame:
        """Return every sampling feature, ordered by code."""
        return self._db.query("SELECT * FROM samplingfeatures ORDER BY code")
