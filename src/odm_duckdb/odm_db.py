# -*- coding: utf-8 -*-
"""
ODM Store Connection Management
===============================

ODMDatabase is the explicit store handle passed to every catalog,
ingestion, derivation and query operation. It owns one DuckDB database
and hands each thread its own cursor, since a single DuckDB connection
must not be shared between threads.

Writes follow a single-writer model: every mutating operation runs inside
transaction(), which holds the handle's writer lock and wraps the work in
BEGIN/COMMIT with ROLLBACK on any error. Writers share one handle per
store. Readers never take the lock; DuckDB's MVCC gives them a snapshot
that never shows a writer's intermediate state.

Example Usage:
    from odm_duckdb import ODMDatabase

    with ODMDatabase('data/wells.duckdb') as db:
        with db.transaction():
            db.execute("INSERT INTO units (name) VALUES (?)", ['millimeter'])
        df = db.query("SELECT * FROM units")
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, List, Optional, Tuple, Union

import duckdb
import pandas as pd

from .config import ODMConfig
from .exceptions import ReadOnlyStore
from .schema import TABLE_ORDER, create_schema, get_schema_version
from .vocabulary import ControlledVocabularies, VocabularyPolicy

logger = logging.getLogger(__name__)


@dataclass
class TransactionContext:
    """Details of the transaction a caller is running inside."""

    connection: duckdb.DuckDBPyConnection
    depth: int
    thread_id: int


class ODMDatabase:
    """
    DuckDB-backed observations store.

    Parameters
    ----------
    db_path : str or Path
        Path to the DuckDB database file. Use ':memory:' for an in-memory store.
    read_only : bool, optional
        If True, opens the database read-only and skips schema creation.
    vocabulary_policy : str or VocabularyPolicy, optional
        Handling of unknown controlled terms. None means STRICT.

    Example
    -------
    >>> db = ODMDatabase(':memory:')
    >>> db.query("SELECT COUNT(*) AS n FROM results")
    >>> db.close()
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        read_only: bool = False,
        vocabulary_policy: Optional[Union[str, VocabularyPolicy]] = None,
    ):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else ":memory:"
        self.read_only = read_only
        self.vocabulary = ControlledVocabularies(vocabulary_policy)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._cursors: List[duckdb.DuckDBPyConnection] = []
        self._cursor_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._local = threading.local()

    @classmethod
    def from_config(cls, config: Optional[ODMConfig] = None) -> "ODMDatabase":
        """Open a store from an ODMConfig (defaults to the environment)."""
        config = config or ODMConfig.from_env()
        return cls(
            config.db_path,
            read_only=config.read_only,
            vocabulary_policy=config.vocabulary_policy,
        )

    def connect(self) -> duckdb.DuckDBPyConnection:
        """
        Get or create the root database connection.

        The schema is created the first time a writable store is opened.
        """
        if self._connection is None:
            if self.db_path != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = duckdb.connect(
                str(self.db_path),
                read_only=self.read_only,
            )
            if not self.read_only:
                create_schema(self._connection)
            logger.info(
                f"Opened ODM store {self.db_path} "
                f"(schema {get_schema_version(self._connection) or 'none'})"
            )

        return self._connection

    @property
    def cursor(self) -> duckdb.DuckDBPyConnection:
        """The calling thread's cursor on the store."""
        cur = getattr(self._local, "cursor", None)
        if cur is None:
            root = self.connect()
            with self._cursor_lock:
                cur = root.cursor()
                self._cursors.append(cur)
            self._local.cursor = cur
            self._local.depth = 0
        return cur

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside transaction()."""
        return getattr(self._local, "depth", 0) > 0

    def close(self) -> None:
        """Close every cursor and the root connection."""
        with self._cursor_lock:
            for cur in self._cursors:
                cur.close()
            self._cursors = []
        self._local = threading.local()
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "ODMDatabase":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def query(self, sql: str, params: Optional[List[Any]] = None) -> pd.DataFrame:
        """
        Execute a SQL query and return results as a DataFrame.

        Parameters
        ----------
        sql : str
            SQL query to execute.
        params : list, optional
            Query parameters for parameterized queries.
        """
        if params:
            return self.cursor.execute(sql, params).fetchdf()
        return self.cursor.execute(sql).fetchdf()

    def execute(
        self,
        sql: str,
        params: Optional[List[Any]] = None,
    ) -> duckdb.DuckDBPyConnection:
        """Execute a SQL statement on the calling thread's cursor."""
        if params:
            return self.cursor.execute(sql, params)
        return self.cursor.execute(sql)

    def executemany(self, sql: str, params_list: List[Tuple[Any, ...]]) -> None:
        """Execute a SQL statement with multiple parameter sets."""
        if params_list:
            self.cursor.executemany(sql, params_list)

    @contextmanager
    def transaction(self) -> Generator[TransactionContext, None, None]:
        """
        Context manager for one atomic store mutation.

        Holds this handle's writer lock for the duration. A nested call on
        the same thread joins the outer transaction, so the outermost block
        decides COMMIT or ROLLBACK.

        Yields
        ------
        TransactionContext
            Context object with transaction details.
        """
        if self.read_only:
            raise ReadOnlyStore(self.db_path)

        cur = self.cursor
        depth = self._local.depth

        if depth > 0:
            self._local.depth = depth + 1
            try:
                yield TransactionContext(cur, depth + 1, threading.get_ident())
            finally:
                self._local.depth = depth
            return

        with self._write_lock:
            cur.execute("BEGIN TRANSACTION")
            self._local.depth = 1
            try:
                yield TransactionContext(cur, 1, threading.get_ident())
                cur.execute("COMMIT")
            except BaseException:
                self._rollback(cur)
                raise
            finally:
                self._local.depth = 0

    def _rollback(self, cur: duckdb.DuckDBPyConnection) -> None:
        try:
            cur.execute("ROLLBACK")
        except duckdb.TransactionException as e:
            # A failed COMMIT has already ended the transaction.
            logger.debug(f"Rollback after failed commit: {e}")

    def count_records(self) -> dict:
        """
        Count records in each store table.

        Returns
        -------
        dict
            Table names as keys and record counts as values.
        """
        return {
            table: self.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in TABLE_ORDER
        }
