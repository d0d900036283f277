"""Tests for the scenario catalog."""

import copy
import json

import pytest

from generators.scenarios import ScenarioCatalog, ScenarioDefinition, load_scenarios
from realtime.errors import InvariantViolation, ScenarioNotFound
from realtime.evaluator import CandidateAlert
from realtime.thresholds import ALERT_TYPES, Severity

MINIMAL = {
    "id": "drill",
    "name": "Drill",
    "duration_min": 5,
    "alert_targets": ["TEMPERATURE_HIGH"],
    "heart_rate": {"baseline": 80, "peak": 120},
    "core_temperature": {"baseline": 37.0, "peak": 38.6},
}


@pytest.fixture(scope="module")
def catalog():
    return load_scenarios()


def definition(**overrides):
    d = copy.deepcopy(MINIMAL)
    d.update(overrides)
    return d


class TestShippedCatalog:
    def test_all_scenarios_load(self, catalog):
        assert len(catalog) == 13
        assert "heat_exhaustion" in catalog
        assert catalog.ids()[0] == "routine_training"

    def test_listing(self, catalog):
        listed = {s["id"]: s for s in catalog.list_scenarios()}
        assert listed["routine_training"]["max_severity"] == "high"
        assert listed["communication_lost_scenario"]["communication_failure"] is True
        assert listed["heat_exhaustion"]["alert_targets"] == ["HEART_RATE_HIGH", "TEMPERATURE_CRITICAL"]

    def test_targets_are_canonical(self, catalog):
        for scenario in catalog:
            assert scenario.alert_targets
            assert scenario.alert_targets <= ALERT_TYPES

    def test_aliases_are_normalized(self, catalog):
        s = catalog.get_scenario("equipment_failure_scenario")
        assert s.alert_targets == frozenset({"SCBA_MALFUNCTION", "EQUIPMENT_FAILURE", "HELMET_OFF"})
        assert catalog.get_scenario("communication_lost_scenario").alert_targets == frozenset({"COMMUNICATION_LOST"})

    def test_filters_close_over_targets_and_cap(self, catalog):
        every_type = [
            CandidateAlert(type=t, severity=Severity.CRITICAL, message=t, priority=10) for t in sorted(ALERT_TYPES)
        ]
        for scenario in catalog:
            out = scenario.alert_filter.apply(every_type)
            assert {c.type for c in out} == scenario.alert_targets
            if scenario.max_severity is not None:
                assert all(c.severity <= scenario.max_severity for c in out)


class TestLookup:
    def test_unknown_id(self, catalog):
        with pytest.raises(ScenarioNotFound) as exc:
            catalog.get_scenario("volcano")
        assert exc.value.reason == "not-found"

    @pytest.mark.parametrize("scenario_id", [None, ""])
    def test_missing_id(self, catalog, scenario_id):
        with pytest.raises(ScenarioNotFound) as exc:
            catalog.get_scenario(scenario_id)
        assert exc.value.reason == "invalid-scenario"


class TestDefinitionValidation:
    def test_minimal_definition(self):
        s = ScenarioDefinition.from_dict(definition())
        assert s.duration_sec == 300
        assert s.motion.pattern == "fixed"
        assert s.environment.ambient_temp == 20.0
        assert s.max_severity is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": ""},
            {"alert_targets": []},
            {"alert_targets": ["MELTDOWN"]},
            {"duration_min": 0},
            {"max_severity": "apocalyptic"},
            {"heart_rate": {"baseline": 80, "peak": 120, "exponent": 1.5}},
            {"heart_rate": {"baseline": 80}},
            {"motion": {"pattern": "cartwheel"}},
            {"motion": {"activity_level": "FRANTIC"}},
            {"motion": {"base_acceleration": {"y": 1.0, "z": 1.0}}},
            {"motion": {"base_acceleration": 9.81}},
            {"motion": {"fall_risk": "often"}},
            {"duration_min": "long"},
            {"duration_min": None},
            {"heart_rate": [80, 120]},
            {"equipment_failure": {"probability": "rare", "when": "True", "alert_type": "TEMPERATURE_HIGH"}},
            {"communication_failure": True},
            {"equipment_failure": {"probability": 0.2, "when": "True", "alert_type": "SCBA_MALFUNCTION"}},
            {"equipment_failure": {"probability": 1.5, "when": "True", "alert_type": "TEMPERATURE_HIGH"}},
            {"equipment_failure": {"probability": 0.2, "when": "import os", "alert_type": "TEMPERATURE_HIGH"}},
        ],
    )
    def test_invalid_definitions(self, overrides):
        with pytest.raises(InvariantViolation):
            ScenarioDefinition.from_dict(definition(**overrides))

    @pytest.mark.parametrize("channel", ["heart_rate", "core_temperature"])
    def test_missing_channel_profile(self, channel):
        d = definition()
        del d[channel]
        with pytest.raises(InvariantViolation) as exc:
            ScenarioDefinition.from_dict(d)
        assert channel in str(exc.value)

    def test_duplicate_ids(self):
        with pytest.raises(InvariantViolation):
            ScenarioCatalog.from_dict({"scenarios": [definition(), definition()]})

    def test_from_file(self, tmp_path):
        path = tmp_path / "scenarios.json"
        path.write_text(json.dumps({"scenarios": [definition(), definition(id="drill_2")]}), encoding="utf-8")
        catalog = load_scenarios(str(path))
        assert catalog.ids() == ["drill", "drill_2"]
