# -*- coding: utf-8 -*-
"""
Centralized pytest fixtures for ODM DuckDB tests.

Provides:
- In-memory store fixture (fresh per test)
- Store with seeded catalogs (units, variables, methods, processing levels)
- Sample well and logger frames modelled on site 509R2
"""

import sys
from pathlib import Path

import pandas as pd
import pytest

# Add src to path so the package imports without installation
src_dir = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(src_dir))

# Import after path setup
from odm_duckdb import (
    MethodCatalog,
    ODMDatabase,
    ProcessingLevelCatalog,
    UnitCatalog,
    VariableCatalog,
)


# ==============================================================================
# Configuration
# ==============================================================================

TEST_SITE = "509R2"
OTHER_SITE = "510R1"

RAW = "Raw data"
DERIVED = "Derived product"

VARIABLES = [
    # code, vocabulary name, type
    ("GAGE", "gageHeight", "hydrology"),
    ("OFFSET", "offset", "instrumentation"),
    ("BODYLEN", "bodyLength", "instrumentation"),
    ("WLVL", "waterLevel", "hydrology"),
    ("WDEPTH", "wellDepth", "hydrology"),
    ("GWDEPTH", "groundwaterDepth", "hydrology"),
]

METHODS = [
    # code, type
    ("LOGGER", "observation"),
    ("FIELD", "observation"),
    ("CALC", "derivation"),
]


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def db():
    """Empty in-memory store, closed after the test."""
    store = ODMDatabase(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def seeded_db(db):
    """In-memory store with the catalogs used across the tests registered."""
    units = UnitCatalog(db)
    units.register("millimeter", unit_type="length", abbreviation="mm")
    units.register("meter", unit_type="length", abbreviation="m")

    variables = VariableCatalog(db)
    for code, name, variable_type in VARIABLES:
        variables.register(code, name=name, variable_type=variable_type)

    methods = MethodCatalog(db)
    for code, method_type in METHODS:
        methods.register(code, method_type=method_type)

    levels = ProcessingLevelCatalog(db)
    levels.register(RAW, explanation="Values as delivered by the instrument")
    levels.register(DERIVED, explanation="Values computed from other results")

    return db


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================

@pytest.fixture
def logger_frame():
    """Wide logger data: gage height and offset at one site, three times."""
    return pd.DataFrame({
        "site_code": [TEST_SITE] * 3,
        "timestamp": pd.to_datetime([
            "2023-05-01 00:00", "2023-05-01 01:00", "2023-05-01 02:00",
        ]),
        "gage_mm": [1000.0, 1010.0, 1020.0],
        "offset_mm": [200.0, 200.0, 205.0],
    })


@pytest.fixture
def water_level_frame():
    """Hourly water level readings at two sites."""
    return pd.DataFrame({
        "site_code": [TEST_SITE, TEST_SITE, TEST_SITE, OTHER_SITE, OTHER_SITE],
        "timestamp": pd.to_datetime([
            "2023-05-01 00:00", "2023-05-01 01:00", "2023-05-01 02:00",
            "2023-05-01 00:00", "2023-05-01 01:00",
        ]),
        "level_mm": [3100.0, 3150.0, 3125.0, 1800.0, 1790.0],
    })


@pytest.fixture
def well_depth_frame():
    """One surveyed well depth per site."""
    return pd.DataFrame({
        "site_code": [TEST_SITE, OTHER_SITE],
        "timestamp": pd.to_datetime(["2023-04-15 12:00", "2023-04-16 09:30"]),
        "depth_mm": [12000.0, 9000.0],
    })
