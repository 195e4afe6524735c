# -*- coding: utf-8 -*-
"""
Tests for the derivation engine: join rules, failure modes, lineage and
verification.
"""

import pandas as pd
import pytest

pytestmark = pytest.mark.db

from odm_duckdb import (
    ActionRecorder,
    AmbiguousJoin,
    DerivationEngine,
    DerivationError,
    DerivationInput,
    EmptyJoin,
    IncompatibleUnits,
    Multiply,
    QueryFacade,
    ResultStore,
    Subtract,
    VariableCatalog,
    WideMapping,
)

TEST_SITE = "509R2"
OTHER_SITE = "510R1"
RAW = "Raw data"
DERIVED = "Derived product"


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def gage_db(seeded_db, logger_frame):
    """Store holding gage height and offset timeseries at 509R2."""
    mapping = WideMapping({
        "gage_mm": ("GAGE", "millimeter"),
        "offset_mm": ("OFFSET", "millimeter"),
    })
    ResultStore(seeded_db).insert(logger_frame, mapping, "LOGGER", RAW)
    return seeded_db


@pytest.fixture
def well_db(seeded_db, water_level_frame, well_depth_frame):
    """Store holding logger water levels and surveyed well depths at two sites."""
    store = ResultStore(seeded_db)
    store.insert(
        water_level_frame,
        WideMapping({"level_mm": ("WLVL", "millimeter")}),
        "LOGGER", RAW, kind="TimeSeries", sampled_medium="groundwater",
    )
    store.insert(
        well_depth_frame,
        WideMapping({"depth_mm": ("WDEPTH", "millimeter")}),
        "FIELD", RAW, kind="Measurement",
    )
    return seeded_db


def _body_length_inputs():
    return [
        DerivationInput.stored("gageHeight", variable_code="GAGE"),
        DerivationInput.stored("offset", variable_code="OFFSET"),
    ]


def _groundwater_inputs():
    return [
        DerivationInput.stored("wellDepth", variable_code="WDEPTH"),
        DerivationInput.stored("waterLevel", variable_code="WLVL"),
    ]


def _derive_groundwater(db, site_code=TEST_SITE):
    return DerivationEngine(db).derive(
        _groundwater_inputs(), site_code, "wellDepth - waterLevel",
        output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
    )


# =============================================================================
# REFERENCE DERIVATIONS
# =============================================================================


class TestReferenceDerivations:
    """bodyLength = gageHeight - offset; groundwaterDepth = wellDepth - waterLevel."""

    def test_body_length(self, gage_db):
        result_id = DerivationEngine(gage_db).derive(
            _body_length_inputs(), TEST_SITE, Subtract(("gageHeight", "offset")),
            output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
        )

        rows = QueryFacade(gage_db).fetch(result_id=result_id, include_provenance=True)
        assert list(rows["value"]) == [800.0, 810.0, 815.0]
        assert set(rows["variable_name"]) == {"bodyLength"}
        assert set(rows["unit_name"]) == {"millimeter"}
        assert set(rows["method_code"]) == {"CALC"}
        assert set(rows["processing_level"]) == {DERIVED}
        assert set(rows["result_kind"]) == {"TimeSeries"}

    def test_groundwater_depth_broadcasts_measurement(self, well_db):
        result_id = _derive_groundwater(well_db)

        rows = QueryFacade(well_db).fetch(result_id=result_id, include_provenance=True)
        assert list(rows["value"]) == [8900.0, 8850.0, 8875.0]
        assert list(pd.to_datetime(rows["timestamp"])) == list(pd.to_datetime([
            "2023-05-01 00:00", "2023-05-01 01:00", "2023-05-01 02:00",
        ]))
        assert set(rows["result_kind"]) == {"TimeSeries"}

    def test_derived_values_fetchable_by_name(self, well_db):
        _derive_groundwater(well_db)
        rows = QueryFacade(well_db).fetch(variable_name="groundwaterDepth", site_code=TEST_SITE)
        assert len(rows) == 3

    def test_derive_sites(self, well_db):
        derived = DerivationEngine(well_db).derive_sites(
            _groundwater_inputs(), "wellDepth - waterLevel",
            output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
        )
        assert set(derived) == {TEST_SITE, OTHER_SITE}

        rows = QueryFacade(well_db).fetch(result_id=derived[OTHER_SITE])
        assert list(rows["value"]) == [7200.0, 7210.0]

    def test_all_measurements_give_measurement(self, seeded_db):
        df = pd.DataFrame({
            "site_code": [TEST_SITE],
            "timestamp": pd.to_datetime(["2023-04-15 12:00"]),
            "depth_mm": [12000.0],
            "offset_mm": [500.0],
        })
        mapping = WideMapping({
            "depth_mm": ("WDEPTH", "millimeter"),
            "offset_mm": ("OFFSET", "millimeter"),
        })
        ResultStore(seeded_db).insert(df, mapping, "FIELD", RAW, kind="Measurement")

        result_id = DerivationEngine(seeded_db).derive(
            [
                DerivationInput.stored("wellDepth", variable_code="WDEPTH"),
                DerivationInput.stored("offset", variable_code="OFFSET"),
            ],
            TEST_SITE, "wellDepth - offset",
            output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
        )
        rows = QueryFacade(seeded_db).fetch(result_id=result_id, include_provenance=True)
        assert list(rows["value"]) == [11500.0]
        assert rows["result_kind"].iloc[0] == "Measurement"

    def test_rederive_returns_existing_result(self, well_db):
        first = _derive_groundwater(well_db)
        second = _derive_groundwater(well_db)
        assert second == first
        assert len(ActionRecorder(well_db).get_derivation_inputs(first)) == 2


# =============================================================================
# JOIN RULES AND FAILURES
# =============================================================================


class TestJoinRules:
    """Inner join semantics."""

    def test_unmatched_timestamps_dropped(self, gage_db):
        offsets = pd.DataFrame({
            "site_code": [TEST_SITE, TEST_SITE],
            "timestamp": pd.to_datetime(["2023-05-01 01:00", "2023-05-01 05:00"]),
            "value": [200.0, 200.0],
        })
        result_id = DerivationEngine(gage_db).derive(
            [
                DerivationInput.stored("gageHeight", variable_code="GAGE"),
                DerivationInput.from_frame("offset", offsets, unit_name="millimeter"),
            ],
            TEST_SITE, "gageHeight - offset",
            output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
        )
        rows = QueryFacade(gage_db).fetch(result_id=result_id)
        assert list(rows["value"]) == [810.0]

    def test_ambiguous_join(self, well_db):
        duplicate = pd.DataFrame({
            "site_code": [TEST_SITE],
            "timestamp": pd.to_datetime(["2023-05-01 01:00"]),
            "level_mm": [3152.0],
        })
        ResultStore(well_db).insert(
            duplicate, WideMapping({"level_mm": ("WLVL", "millimeter")}), "LOGGER", RAW,
        )
        before = well_db.count_records()

        with pytest.raises(AmbiguousJoin) as exc:
            _derive_groundwater(well_db)

        assert exc.value.input_name == "waterLevel"
        assert exc.value.site_code == TEST_SITE
        assert exc.value.timestamps == [pd.Timestamp("2023-05-01 01:00")]
        assert well_db.count_records() == before

    def test_measurement_with_two_values_is_ambiguous(self, well_db):
        extra = pd.DataFrame({
            "site_code": [TEST_SITE],
            "timestamp": pd.to_datetime(["2023-06-01 10:00"]),
            "depth_mm": [12050.0],
        })
        ResultStore(well_db).insert(
            extra, WideMapping({"depth_mm": ("WDEPTH", "millimeter")}),
            "FIELD", RAW, kind="Measurement",
        )
        with pytest.raises(AmbiguousJoin) as exc:
            _derive_groundwater(well_db)
        assert exc.value.input_name == "wellDepth"

    def test_empty_join(self, gage_db):
        offsets = pd.DataFrame({
            "site_code": [TEST_SITE],
            "timestamp": pd.to_datetime(["2024-01-01 00:00"]),
            "value": [200.0],
        })
        before = gage_db.count_records()
        with pytest.raises(EmptyJoin) as exc:
            DerivationEngine(gage_db).derive(
                [
                    DerivationInput.stored("gageHeight", variable_code="GAGE"),
                    DerivationInput.from_frame("offset", offsets, unit_name="millimeter"),
                ],
                TEST_SITE, "gageHeight - offset",
                output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
            )
        assert exc.value.site_code == TEST_SITE
        assert gage_db.count_records() == before

    def test_missing_input_at_site(self, well_db):
        with pytest.raises(EmptyJoin):
            _derive_groundwater(well_db, site_code="999X")

    def test_failure_at_later_site_rolls_back_earlier_sites(self, well_db):
        # 509R2 derives first; 510R1 then has two water levels at 01:00.
        duplicate = pd.DataFrame({
            "site_code": [OTHER_SITE],
            "timestamp": pd.to_datetime(["2023-05-01 01:00"]),
            "level_mm": [1795.0],
        })
        ResultStore(well_db).insert(
            duplicate, WideMapping({"level_mm": ("WLVL", "millimeter")}), "LOGGER", RAW,
        )
        before = well_db.count_records()

        with pytest.raises(AmbiguousJoin) as exc:
            DerivationEngine(well_db).derive_sites(
                _groundwater_inputs(), "wellDepth - waterLevel",
                output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
            )

        assert exc.value.site_code == OTHER_SITE
        assert well_db.count_records() == before
        assert QueryFacade(well_db).fetch(variable_code="GWDEPTH").empty


class TestDerivationErrors:
    """Units, variables and operand checks."""

    def test_incompatible_units(self, seeded_db, logger_frame):
        mapping = WideMapping({
            "gage_mm": ("GAGE", "millimeter"),
            "offset_mm": ("OFFSET", "meter"),
        })
        ResultStore(seeded_db).insert(logger_frame, mapping, "LOGGER", RAW)

        with pytest.raises(IncompatibleUnits) as exc:
            DerivationEngine(seeded_db).derive(
                _body_length_inputs(), TEST_SITE, "gageHeight - offset",
                output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
            )
        assert exc.value.units == ["meter", "millimeter"]

    def test_unit_changing_transform_needs_output_unit(self, gage_db):
        with pytest.raises(DerivationError):
            DerivationEngine(gage_db).derive(
                _body_length_inputs(), TEST_SITE, Multiply(("gageHeight", "offset")),
                output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
            )

    def test_output_variable_must_differ(self, well_db):
        with pytest.raises(DerivationError):
            DerivationEngine(well_db).derive(
                _groundwater_inputs(), TEST_SITE, "wellDepth - waterLevel",
                output_variable="WLVL", output_method="CALC", processing_level=DERIVED,
            )

    def test_operands_must_match_inputs(self, well_db):
        with pytest.raises(DerivationError):
            DerivationEngine(well_db).derive(
                _groundwater_inputs(), TEST_SITE, "wellDepth - level",
                output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
            )

    def test_input_needs_one_source(self):
        with pytest.raises(DerivationError):
            DerivationInput("waterLevel")


# =============================================================================
# LINEAGE AND VERIFICATION
# =============================================================================


class TestLineage:
    """resultderivations rows and the lineage graph."""

    def test_direct_inputs_recorded(self, well_db):
        result_id = _derive_groundwater(well_db)
        inputs = ActionRecorder(well_db).get_derivation_inputs(result_id)

        assert [i["input_name"] for i in inputs] == ["wellDepth", "waterLevel"]
        assert all(i["source_result_id"] is not None for i in inputs)
        assert '"subtract"' in inputs[0]["transform"]

    def test_derivation_action_recorded(self, well_db):
        _derive_groundwater(well_db)
        history = ActionRecorder(well_db).get_action_history(method_code="CALC")
        assert len(history) == 1
        assert history[0]["action_type"] == "derivation"
        assert history[0]["description"] == "GWDEPTH = wellDepth - waterLevel"

    def test_lineage_is_recursive(self, gage_db):
        VariableCatalog(gage_db).register("DEPTHX", name="depth", variable_type="hydrology")
        engine = DerivationEngine(gage_db)
        body_id = engine.derive(
            _body_length_inputs(), TEST_SITE, "gageHeight - offset",
            output_variable="BODYLEN", output_method="CALC", processing_level=DERIVED,
        )
        depth_id = engine.derive(
            [
                DerivationInput.stored("bodyLength", variable_code="BODYLEN"),
                DerivationInput.stored("offset", variable_code="OFFSET"),
            ],
            TEST_SITE, "bodyLength - offset",
            output_variable="DEPTHX", output_method="CALC", processing_level=DERIVED,
        )

        lineage = ActionRecorder(gage_db).get_lineage(depth_id)
        assert [r["depth"] for r in lineage] == [1, 1, 2, 2]
        assert {r["derived_result_id"] for r in lineage} == {depth_id, body_id}

        graph = ActionRecorder(gage_db).lineage_graph(depth_id)
        assert graph.has_edge(body_id, depth_id)
        assert graph.out_degree(depth_id) == 0

    def test_in_memory_input_has_no_source(self, well_db, water_level_frame):
        result_id = DerivationEngine(well_db).derive(
            [
                DerivationInput.stored("wellDepth", variable_code="WDEPTH"),
                DerivationInput.from_frame(
                    "waterLevel", water_level_frame,
                    unit_name="millimeter", value_column="level_mm",
                ),
            ],
            TEST_SITE, "wellDepth - waterLevel",
            output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
        )
        lineage = ActionRecorder(well_db).get_lineage(result_id)
        sources = {r["input_name"]: r["source_result_id"] for r in lineage}
        assert sources["waterLevel"] is None
        assert sources["wellDepth"] is not None

        with pytest.raises(DerivationError):
            DerivationEngine(well_db).verify(result_id)

    def test_stored_rederivation_keeps_its_own_lineage(self, well_db, water_level_frame):
        engine = DerivationEngine(well_db)
        from_frame = engine.derive(
            [
                DerivationInput.stored("wellDepth", variable_code="WDEPTH"),
                DerivationInput.from_frame(
                    "waterLevel", water_level_frame,
                    unit_name="millimeter", value_column="level_mm",
                ),
            ],
            TEST_SITE, "wellDepth - waterLevel",
            output_variable="GWDEPTH", output_method="CALC", processing_level=DERIVED,
        )
        from_store = _derive_groundwater(well_db)

        assert from_store != from_frame
        sources = {
            i["input_name"]: i["source_result_id"]
            for i in ActionRecorder(well_db).get_derivation_inputs(from_store)
        }
        assert sources["waterLevel"] is not None
        assert DerivationEngine(well_db).verify(from_store).reproduced


class TestVerify:
    """Recomputing a derived result from its stored inputs."""

    def test_reproduced(self, well_db):
        result_id = _derive_groundwater(well_db)
        report = DerivationEngine(well_db).verify(result_id)
        assert report.reproduced
        assert report.n_stored == report.n_recomputed == 3
        assert report.max_abs_diff == 0.0
        assert report.transform == "wellDepth - waterLevel"

    def test_detects_changed_value(self, well_db):
        result_id = _derive_groundwater(well_db)
        well_db.execute(
            "UPDATE datavalues SET value = value + 1 WHERE resultid = ?", [result_id]
        )
        report = DerivationEngine(well_db).verify(result_id)
        assert not report.reproduced
        assert report.max_abs_diff == pytest.approx(1.0)

    def test_observed_result_cannot_be_verified(self, well_db):
        result_id = int(QueryFacade(well_db).fetch(
            variable_code="WLVL", include_provenance=True,
        )["result_id"].iloc[0])
        with pytest.raises(DerivationError):
            DerivationEngine(well_db).verify(result_id)
