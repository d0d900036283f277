"""Tests for the progression helpers and the vitals simulator."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from generators.progression import clamp, environment_offset, jitter, power_curve, progress_at, step_boost
from generators.scenarios import ScenarioDefinition, load_scenarios
from generators.vitals_simulator import HR_FLOOR, VitalsSimulator, simulate_scenario_stream

START = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def catalog():
    return load_scenarios()


def run(scenario, seed=0, tick=10.0):
    return list(simulate_scenario_stream(scenario, "FF-001", START, tick, rng=np.random.default_rng(seed)))


class TestProgression:
    def test_progress_is_clamped(self):
        assert progress_at(-5, 100) == 0.0
        assert progress_at(50, 100) == 0.5
        assert progress_at(500, 100) == 1.0
        assert progress_at(10, 0) == 1.0

    def test_power_curve(self):
        assert power_curve(37.0, 39.0, 0.0, 0.5) == pytest.approx(37.0)
        assert power_curve(37.0, 39.0, 1.0, 0.5) == pytest.approx(39.0)
        assert power_curve(37.0, 39.0, 0.25, 0.5) == pytest.approx(38.0)
        assert power_curve(37.0, 39.0, 0.25, 1.0) == pytest.approx(37.5)

    def test_step_boost_is_strict(self):
        boosts = [(0.2, 0.4), (0.5, 0.3)]
        assert step_boost(0.2, boosts) == 0.0
        assert step_boost(0.21, boosts) == pytest.approx(0.4)
        assert step_boost(0.9, boosts) == pytest.approx(0.7)

    def test_environment_offset(self):
        assert environment_offset(20, 50, 0.15, 0.025) == 0.0
        assert environment_offset(45, 90, 0.02, 0.005) == pytest.approx(0.7)

    def test_jitter_bounds(self):
        rng = np.random.default_rng(3)
        values = [jitter(rng, 10.0) for _ in range(500)]
        assert min(values) >= -5.0 and max(values) < 5.0
        assert jitter(rng, 0.0) == 0.0

    def test_clamp_with_ceiling(self):
        assert clamp(38.2, 35.0, 42.0) == 38.2
        assert clamp(38.2, 35.0, 42.0, ceiling=37.5) == 37.5
        assert clamp(12.0, 35.0, 42.0) == 35.0


class TestVitalsSimulator:
    def test_seeded_runs_are_reproducible(self, catalog):
        s = catalog.get_scenario("structure_fire")
        assert run(s, seed=11) == run(s, seed=11)
        assert run(s, seed=11) != run(s, seed=12)

    def test_stream_length_and_indices(self, catalog):
        samples = run(catalog.get_scenario("heat_exhaustion"))
        assert len(samples) == 179
        assert [s.sample_index for s in samples] == list(range(179))
        assert samples[0].timestamp == START + timedelta(seconds=10)
        assert samples[-1].timestamp == START + timedelta(seconds=1790)
        assert all(s.is_synthetic and s.scenario_id == "heat_exhaustion" for s in samples)

    def test_communication_loss_yields_nothing(self, catalog):
        assert run(catalog.get_scenario("communication_lost_scenario")) == []

    def test_values_stay_in_physical_ranges(self, catalog):
        for scenario in catalog:
            for s in run(scenario, seed=5, tick=30.0):
                assert HR_FLOOR <= s.heart_rate <= 250
                assert 35.0 <= s.core_temperature <= 42.0
                assert 0 <= s.air_quality <= 100
                assert 0.0 < s.acceleration.magnitude <= 50.0

    def test_quantized_output(self, catalog):
        s = run(catalog.get_scenario("search_rescue"))[10]
        assert isinstance(s.heart_rate, int)
        assert isinstance(s.air_quality, int)
        assert s.core_temperature == round(s.core_temperature, 1)
        assert s.acceleration.x == round(s.acceleration.x, 2)

    def test_fall_then_inactivity(self, catalog):
        samples = run(catalog.get_scenario("fall_incident"), seed=2)
        impact = [s for s in samples if s.sample_index < 35]
        after = [s for s in samples if s.sample_index >= 35]
        assert all(s.acceleration.magnitude > 20.0 for s in impact)
        assert all(0.0 < s.acceleration.magnitude < 0.8 for s in after)

    def test_heat_exhaustion_reaches_critical_temperature(self, catalog):
        samples = run(catalog.get_scenario("heat_exhaustion"), seed=9)
        late = [s for s in samples if s.sample_index >= 40]
        assert all(s.core_temperature >= 39.0 for s in late)

    def test_temperature_ceiling(self, catalog):
        samples = run(catalog.get_scenario("immobility_scenario"), seed=4)
        assert max(s.core_temperature for s in samples) <= 37.5

    def test_failing_channel_falls_back_to_baseline(self, catalog):
        scenario = catalog.get_scenario("search_rescue")
        sim = VitalsSimulator(scenario, rng=np.random.default_rng(1))

        def boom(progress):
            raise ArithmeticError("overflow")

        sim._temperature = boom
        s = sim.sample("FF-001", 600.0, START)
        assert s.core_temperature == scenario.core_temperature.baseline
        assert s.heart_rate >= HR_FLOOR
        assert s.acceleration.magnitude > 0


class TestEquipmentFailure:
    @pytest.fixture
    def scenario(self):
        return ScenarioDefinition.from_dict(
            {
                "id": "scba_drill",
                "duration_min": 10,
                "alert_targets": ["SCBA_MALFUNCTION"],
                "heart_rate": {"baseline": 80, "peak": 100},
                "core_temperature": {"baseline": 37.0, "peak": 37.5},
                "equipment_failure": {"probability": 1.0, "when": "elapsed_minutes >= 1",
                                      "alert_type": "SCBA_MALFUNCTION"},
            }
        )

    def test_predicate_gates_failures(self, scenario):
        sim = VitalsSimulator(scenario, rng=np.random.default_rng(0))
        assert sim.sample("FF-001", 30.0, START).equipment_faults == ()
        assert sim.sample("FF-001", 90.0, START).equipment_faults == ("SCBA_MALFUNCTION",)

    def test_failures_are_random(self, catalog):
        samples = run(catalog.get_scenario("equipment_failure_scenario"), seed=8)
        faulted = [s for s in samples if s.equipment_faults]
        assert all(s.sample_index >= 5 for s in faulted)
        assert 0 < len(faulted) < len(samples)
        assert {f for s in faulted for f in s.equipment_faults} == {"EQUIPMENT_FAILURE"}
