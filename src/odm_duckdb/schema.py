# -*- coding: utf-8 -*-
"""
ODM Store Schema
================

Table definitions for the observations store. Catalog tables (units,
variables, methods, processinglevels, samplingfeatures) are shared by
reference; actions, featureactions, results and datavalues form the
write-once ownership chain created by each ingestion or derivation.

Every surrogate key is drawn from its own sequence so that ids are
assigned by the database, never by the caller.
"""

from __future__ import annotations

from typing import List

import duckdb

SCHEMA_VERSION = "1.0.0"

# Creation order respects REFERENCES between tables.
TABLE_ORDER = [
    "units",
    "variables",
    "methods",
    "processinglevels",
    "samplingfeatures",
    "actions",
    "featureactions",
    "results",
    "datavalues",
    "resultderivations",
]

UNITS_TABLE = """
CREATE TABLE IF NOT EXISTS units (
    id INTEGER PRIMARY KEY DEFAULT nextval('units_id_seq'),
    name VARCHAR NOT NULL UNIQUE,
    unit_type VARCHAR,
    abbreviation VARCHAR
)
"""

VARIABLES_TABLE = """
CREATE TABLE IF NOT EXISTS variables (
    id INTEGER PRIMARY KEY DEFAULT nextval('variables_id_seq'),
    code VARCHAR NOT NULL UNIQUE,
    name VARCHAR NOT NULL,
    variable_type VARCHAR NOT NULL,
    definition VARCHAR
)
"""

METHODS_TABLE = """
CREATE TABLE IF NOT EXISTS methods (
    id INTEGER PRIMARY KEY DEFAULT nextval('methods_id_seq'),
    code VARCHAR NOT NULL UNIQUE,
    method_type VARCHAR NOT NULL,
    name VARCHAR,
    description VARCHAR
)
"""

PROCESSING_LEVELS_TABLE = """
CREATE TABLE IF NOT EXISTS processinglevels (
    id INTEGER PRIMARY KEY DEFAULT nextval('processinglevels_id_seq'),
    label VARCHAR NOT NULL UNIQUE,
    explanation VARCHAR
)
"""

SAMPLING_FEATURES_TABLE = """
CREATE TABLE IF NOT EXISTS samplingfeatures (
    id INTEGER PRIMARY KEY DEFAULT nextval('samplingfeatures_id_seq'),
    code VARCHAR NOT NULL UNIQUE,
    feature_type VARCHAR NOT NULL,
    name VARCHAR
)
"""

ACTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY DEFAULT nextval('actions_id_seq'),
    methodid INTEGER NOT NULL REFERENCES methods (id),
    action_type VARCHAR NOT NULL,
    begin_datetime TIMESTAMP NOT NULL,
    end_datetime TIMESTAMP NOT NULL,
    description VARCHAR,
    fingerprint VARCHAR,
    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

FEATURE_ACTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS featureactions (
    id INTEGER PRIMARY KEY DEFAULT nextval('featureactions_id_seq'),
    actionid INTEGER NOT NULL REFERENCES actions (id),
    samplingfeatureid INTEGER NOT NULL REFERENCES samplingfeatures (id)
)
"""

RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY DEFAULT nextval('results_id_seq'),
    featureactionid INTEGER NOT NULL REFERENCES featureactions (id),
    variableid INTEGER NOT NULL REFERENCES variables (id),
    unitid INTEGER NOT NULL REFERENCES units (id),
    processinglevelid INTEGER NOT NULL REFERENCES processinglevels (id),
    kind VARCHAR NOT NULL CHECK (kind IN ('Measurement', 'TimeSeries')),
    sampled_medium VARCHAR NOT NULL,
    value_count INTEGER NOT NULL
)
"""

DATA_VALUES_TABLE = """
CREATE TABLE IF NOT EXISTS datavalues (
    id BIGINT PRIMARY KEY DEFAULT nextval('datavalues_id_seq'),
    resultid INTEGER NOT NULL REFERENCES results (id),
    value DOUBLE NOT NULL,
    value_datetime TIMESTAMP NOT NULL
)
"""

RESULT_DERIVATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS resultderivations (
    id INTEGER PRIMARY KEY DEFAULT nextval('resultderivations_id_seq'),
    derivedresultid INTEGER NOT NULL REFERENCES results (id),
    inputname VARCHAR NOT NULL,
    sourceresultid INTEGER REFERENCES results (id),
    transform VARCHAR NOT NULL
)
"""

SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS odm_schema_version (
    version VARCHAR NOT NULL,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_datavalues_result ON datavalues (resultid)",
    "CREATE INDEX IF NOT EXISTS idx_results_featureaction ON results (featureactionid)",
    "CREATE INDEX IF NOT EXISTS idx_featureactions_feature ON featureactions (samplingfeatureid)",
    "CREATE INDEX IF NOT EXISTS idx_actions_fingerprint ON actions (fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_derivations_derived ON resultderivations (derivedresultid)",
]

_TABLE_SQL = {
    "units": UNITS_TABLE,
    "variables": VARIABLES_TABLE,
    "methods": METHODS_TABLE,
    "processinglevels": PROCESSING_LEVELS_TABLE,
    "samplingfeatures": SAMPLING_FEATURES_TABLE,
    "actions": ACTIONS_TABLE,
    "featureactions": FEATURE_ACTIONS_TABLE,
    "results": RESULTS_TABLE,
    "datavalues": DATA_VALUES_TABLE,
    "resultderivations": RESULT_DERIVATIONS_TABLE,
}


def get_schema_sql() -> List[str]:
    """
    Return every DDL statement in execution order.

    Returns
    -------
    list of str
        Sequences, tables, the version table and indexes.
    """
    statements = [
        f"CREATE SEQUENCE IF NOT EXISTS {table}_id_seq START 1"
        for table in TABLE_ORDER
    ]
    statements.extend(_TABLE_SQL[table] for table in TABLE_ORDER)
    statements.append(SCHEMA_VERSION_TABLE)
    statements.extend(INDEXES)
    return statements


def create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """
    Create all tables on a connection. Safe to call on an existing store.

    Parameters
    ----------
    conn : duckdb.DuckDBPyConnection
        Open, writable connection.
    """
    for statement in get_schema_sql():
        conn.execute(statement)

    current = conn.execute(
        "SELECT version FROM odm_schema_version ORDER BY applied_at DESC LIMIT 1"
    ).fetchone()
    if current is None:
        conn.execute(
            "INSERT INTO odm_schema_version (version) VALUES (?)", [SCHEMA_VERSION]
        )


def get_schema_version(conn: duckdb.DuckDBPyConnection) -> str:
    """Return the schema version recorded in the store, or '' if none."""
    row = conn.execute(
        "SELECT version FROM odm_schema_version ORDER BY applied_at DESC LIMIT 1"
    ).fetchone()
    return row[0] if row else ""
