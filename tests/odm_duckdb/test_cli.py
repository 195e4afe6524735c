# -*- coding: utf-8 -*-
"""
Tests for the odm-store command line.
"""

import json

import pytest

pytestmark = pytest.mark.db

from odm_duckdb import (
    DerivationEngine,
    DerivationInput,
    MethodCatalog,
    ODMDatabase,
    ProcessingLevelCatalog,
    ResultStore,
    UnitCatalog,
    VariableCatalog,
    WideMapping,
)
from odm_duckdb.cli import create_parser, main


@pytest.fixture
def store_path(tmp_path, water_level_frame, well_depth_frame):
    """A file store with water levels, well depths and one derivation."""
    path = tmp_path / "wells.duckdb"
    with ODMDatabase(path) as db:
        UnitCatalog(db).register("millimeter", abbreviation="mm")
        variables = VariableCatalog(db)
        variables.register("WLVL", name="waterLevel", variable_type="hydrology")
        variables.register("WDEPTH", name="wellDepth", variable_type="hydrology")
        variables.register("GWDEPTH", name="groundwaterDepth", variable_type="hydrology")
        MethodCatalog(db).register("LOGGER", method_type="observation")
        MethodCatalog(db).register("CALC", method_type="derivation")
        ProcessingLevelCatalog(db).register("Raw data")
        ProcessingLevelCatalog(db).register("Derived product")

        store = ResultStore(db)
        store.insert(
            water_level_frame, WideMapping({"level_mm": ("WLVL", "millimeter")}),
            "LOGGER", "Raw data",
        )
        store.insert(
            well_depth_frame, WideMapping({"depth_mm": ("WDEPTH", "millimeter")}),
            "LOGGER", "Raw data", kind="Measurement",
        )
        DerivationEngine(db).derive(
            [
                DerivationInput.stored("wellDepth", variable_code="WDEPTH"),
                DerivationInput.stored("waterLevel", variable_code="WLVL"),
            ],
            "509R2", "wellDepth - waterLevel",
            output_variable="GWDEPTH", output_method="CALC",
            processing_level="Derived product",
        )
    return path


def _derived_result_id(path):
    with ODMDatabase(path, read_only=True) as db:
        return db.execute(
            "SELECT DISTINCT derivedresultid FROM resultderivations"
        ).fetchone()[0]


class TestParser:
    """Argument parsing."""

    def test_fetch_arguments(self):
        opts = create_parser().parse_args(
            ["--db", "x.duckdb", "fetch", "--site", "509R2", "--format", "json"]
        )
        assert opts.command == "fetch"
        assert opts.site == "509R2"
        assert opts.format == "json"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--db", "x.duckdb"])


class TestCommands:
    """End-to-end command runs against a file store."""

    def test_init(self, tmp_path, capsys):
        path = tmp_path / "new.duckdb"
        assert main(["--db", str(path), "init"]) == 0
        assert path.exists()
        assert "datavalues" in capsys.readouterr().out

    def test_fetch_csv(self, store_path, capsys):
        assert main(["--db", str(store_path), "fetch", "--site", "510R1"]) == 0
        out = capsys.readouterr().out
        assert out.splitlines()[0] == "value,timestamp,site_code,variable_name,unit_name,method_code"
        assert "1800.0" in out

    def test_fetch_json_to_file(self, store_path, tmp_path):
        output = tmp_path / "gw.json"
        code = main([
            "--db", str(store_path), "fetch",
            "--variable", "groundwaterDepth", "--format", "json", "-o", str(output),
        ])
        assert code == 0
        records = json.loads(output.read_text())
        assert [r["value"] for r in records] == [8900.0, 8850.0, 8875.0]

    def test_lineage(self, store_path, capsys):
        result_id = _derived_result_id(store_path)
        assert main(["--db", str(store_path), "lineage", str(result_id), "-f", "json"]) == 0
        records = json.loads(capsys.readouterr().out)
        assert {r["input_name"] for r in records} == {"wellDepth", "waterLevel"}

    def test_verify(self, store_path, capsys):
        result_id = _derived_result_id(store_path)
        assert main(["--db", str(store_path), "verify", str(result_id)]) == 0
        assert "reproduced: True" in capsys.readouterr().out

    def test_catalog(self, store_path, capsys):
        assert main(["--db", str(store_path), "catalog", "methods"]) == 0
        out = capsys.readouterr().out
        assert "CALC" in out and "LOGGER" in out

    def test_store_error_exit_code(self, store_path, capsys):
        assert main(["--db", str(store_path), "lineage", "9999"]) == 1
        assert "Unknown result" in capsys.readouterr().err
