# -*- coding: utf-8 -*-
"""
ODM DuckDB Store
================

DuckDB-based storage for environmental monitoring observations under an
ODM2-style entity model: sampling features (sites, wells), the variables
measured or derived at them, the methods and actions that produced each
value, and the values themselves (single measurements and timeseries).

Derived variables (well depth, groundwater depth) are computed by joining
stored or in-memory results by site and timestamp and are written back
with full lineage to their source results.

Modules:
    odm_db: Store handle, thread-local cursors and transactions
    schema: Table definitions and schema creation
    vocabulary: Controlled vocabularies and the unknown-term policy
    catalogs: Unit, variable, method and processing level catalogs
    sampling_features: Lazy, idempotent site creation
    provenance: Actions, feature actions and derivation lineage
    ingest: Measurement and timeseries insertion
    transforms: Declared arithmetic transforms
    derivation: Join-and-derive engine with verification
    query: Denormalized read path
    cli: odm-store command line

Example Usage:
    from odm_duckdb import ODMDatabase, ResultStore, QueryFacade, WideMapping

    with ODMDatabase('data/wells.duckdb') as db:
        store = ResultStore(db)
        store.insert(df, WideMapping({'level_mm': ('WLVL', 'millimeter')}),
                     method_code='LOGGER', processing_level='Raw data')
        rows = QueryFacade(db).fetch(site_code='509R2')
"""

from .column_order import (
    PROVENANCE_COLUMN_ORDER,
    RESULT_ROW_COLUMN_ORDER,
    get_column_order,
    reorder_columns,
)
from .config import ODMConfig
from .exceptions import (
    AmbiguousJoin,
    CardinalityError,
    ColumnMappingError,
    DerivationError,
    DuplicateCode,
    EmptyJoin,
    IncompatibleUnits,
    InvalidVocabulary,
    ODMError,
    ReadOnlyStore,
    UnknownReference,
)
from .schema import SCHEMA_VERSION, create_schema, get_schema_sql
from .vocabulary import ControlledVocabularies, VocabularyPolicy
from .odm_db import ODMDatabase, TransactionContext
from .catalogs import MethodCatalog, ProcessingLevelCatalog, UnitCatalog, VariableCatalog
from .sampling_features import SamplingFeatureRegistry
from .provenance import ActionRecorder
from .ingest import (
    IngestionReport,
    LongMapping,
    ResultKind,
    ResultStore,
    ValueColumn,
    WideMapping,
)
from .transforms import (
    Add,
    Divide,
    Multiply,
    Subtract,
    Transform,
    get_transform,
    list_transforms,
    parse_transform,
    register_transform,
)
from .query import QueryFacade, ResultFilter
from .derivation import DerivationEngine, DerivationInput, VerificationReport

__all__ = [
    # Column ordering
    "RESULT_ROW_COLUMN_ORDER",
    "PROVENANCE_COLUMN_ORDER",
    "get_column_order",
    "reorder_columns",
    # Configuration
    "ODMConfig",
    # Errors
    "ODMError",
    "UnknownReference",
    "DuplicateCode",
    "InvalidVocabulary",
    "CardinalityError",
    "ColumnMappingError",
    "DerivationError",
    "AmbiguousJoin",
    "IncompatibleUnits",
    "EmptyJoin",
    "ReadOnlyStore",
    # Schema
    "SCHEMA_VERSION",
    "create_schema",
    "get_schema_sql",
    # Vocabulary
    "ControlledVocabularies",
    "VocabularyPolicy",
    # Connection management
    "ODMDatabase",
    "TransactionContext",
    # Catalogs
    "UnitCatalog",
    "VariableCatalog",
    "MethodCatalog",
    "ProcessingLevelCatalog",
    "SamplingFeatureRegistry",
    # Provenance
    "ActionRecorder",
    # Ingestion
    "ResultStore",
    "ResultKind",
    "WideMapping",
    "LongMapping",
    "ValueColumn",
    "IngestionReport",
    # Transforms
    "Transform",
    "Add",
    "Subtract",
    "Multiply",
    "Divide",
    "register_transform",
    "get_transform",
    "list_transforms",
    "parse_transform",
    # Query
    "QueryFacade",
    "ResultFilter",
    # Derivation
    "DerivationEngine",
    "DerivationInput",
    "VerificationReport",
]
