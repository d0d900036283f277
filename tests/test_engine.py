"""Tests for simulation instances, the offline runner and the async engine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from generators.scenarios import load_scenarios
from realtime.engine import EngineConfig, SimulationEngine, SimulationState, run_scenario
from realtime.errors import (
    ScenarioNotFound,
    SimulationAlreadyRunning,
    SimulationNotFound,
    TransientSinkError,
    UnknownSubject,
    ValidationError,
)
from realtime.pipeline import MonitoringPipeline
from realtime.thresholds import Severity

START = datetime(2024, 6, 1, 14, 0, tzinfo=timezone.utc)
FAST = EngineConfig(tick_interval_sec=10.0, speed=1e6, seed=7)


@pytest.fixture(scope="module")
def catalog():
    return load_scenarios()


class BrokenSink:
    def on_sample(self, subject_id, sample):
        raise TransientSinkError("unavailable")

    def on_alert(self, subject_id, event):
        raise TransientSinkError("unavailable")


class TestRunScenario:
    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    def test_heat_exhaustion(self, catalog, seed):
        pipeline = MonitoringPipeline()
        result = run_scenario(
            catalog.get_scenario("heat_exhaustion"), "FF-001", pipeline=pipeline, start_time=START, seed=seed
        )
        assert result.state == SimulationState.COMPLETED
        assert len(result.samples) == 179
        assert result.ticks == 180
        assert result.events_of("created", "TEMPERATURE_CRITICAL")
        assert "TEMPERATURE_CRITICAL" in [a.type for a in pipeline.active_alerts("FF-001")]
        assert result.events_of(alert_type="FALL_DETECTED") == []
        assert {e.alert.type for e in result.events} <= {"TEMPERATURE_CRITICAL", "HEART_RATE_HIGH"}

    def test_fall_incident(self, catalog):
        result = run_scenario(catalog.get_scenario("fall_incident"), "FF-002", start_time=START, seed=3)
        created = result.events_of("created")
        assert [e.alert.type for e in created] == ["FALL_DETECTED", "INACTIVITY_DETECTED"]
        assert created[0].alert.created_at == START + timedelta(seconds=10)
        assert created[1].alert.created_at == START + timedelta(seconds=360)
        (resolved,) = result.events_of("resolved", "FALL_DETECTED")
        assert resolved.alert.resolved_at == START + timedelta(seconds=380)
        assert created[0].alert.metadata["scenario_id"] == "fall_incident"

    def test_every_scenario_stays_within_targets_and_cap(self, catalog):
        for scenario in catalog:
            result = run_scenario(scenario, f"FF-{scenario.id}", start_time=START, tick_interval_sec=20.0, seed=1)
            for e in result.events:
                assert e.alert.type in scenario.alert_targets
                if scenario.max_severity is not None:
                    assert e.alert.severity <= scenario.max_severity
            assert all(s.scenario_id == scenario.id for s in result.samples)

    def test_communication_loss(self, catalog):
        scenario = catalog.get_scenario("communication_lost_scenario")
        result = run_scenario(scenario, "FF-003", start_time=START, seed=0)
        assert result.samples == []
        assert result.state == SimulationState.COMPLETED
        (created,) = result.events_of("created")
        assert created.alert.type == "COMMUNICATION_LOST"
        assert created.alert.severity == Severity.CRITICAL
        assert created.alert.priority == 9
        assert result.events_of("resolved") == []

    def test_shared_pipeline_keeps_subjects_apart(self, catalog):
        pipeline = MonitoringPipeline()
        scenario = catalog.get_scenario("inactivity_scenario")
        run_scenario(scenario, "FF-A", pipeline=pipeline, start_time=START, seed=0)
        run_scenario(scenario, "FF-B", pipeline=pipeline, start_time=START, seed=0)
        assert [a.subject_id for a in pipeline.active_alerts()] == ["FF-A", "FF-B"]


class TestSimulationEngine:
    def test_runs_to_completion(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=FAST)
            inst = engine.start("FF-001", "heat_exhaustion", start_time=START)
            with pytest.raises(SimulationAlreadyRunning):
                engine.start("FF-001", "fall_incident")
            assert engine.is_active("FF-001")
            await engine.drain()
            return engine, inst

        engine, inst = asyncio.run(scenario())
        assert inst.state == SimulationState.COMPLETED
        assert inst.samples == 179
        assert inst.latency.stats()["count"] == 179
        assert engine.list_active() == []
        assert engine.pipeline.stats["in"] == 179
        assert engine.pipeline.lifecycle.stats["created"] >= 1

    def test_stop_prevents_further_ticks(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=EngineConfig(speed=1000.0, seed=1))
            inst = engine.start("FF-001", "wildfire_suppression")
            await asyncio.sleep(0.1)
            status = engine.stop("FF-001")
            seen = engine.pipeline.stats["in"]
            await asyncio.sleep(0.1)
            return engine, inst, status, seen

        engine, inst, status, seen = asyncio.run(scenario())
        assert status["state"] == "stopped"
        assert "active_alerts" in status
        assert seen >= 1
        assert engine.pipeline.stats["in"] == seen
        assert inst.task.cancelled()
        assert not engine.is_active("FF-001")

    def test_validation_errors(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=FAST, subjects=["FF-001", "FF-002"])
            with pytest.raises(ScenarioNotFound):
                engine.start("FF-001", "volcano")
            with pytest.raises(ScenarioNotFound):
                engine.start("FF-999", "")
            with pytest.raises(UnknownSubject):
                engine.start("FF-999", "heat_exhaustion")
            with pytest.raises(ValidationError):
                engine.start("  ", "heat_exhaustion")
            with pytest.raises(SimulationNotFound):
                engine.stop("FF-001")
            with pytest.raises(SimulationNotFound):
                engine.status("FF-002")
            return engine

        engine = asyncio.run(scenario())
        assert engine.list_active() == []

    def test_start_many(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=EngineConfig(speed=100.0, seed=2))
            with pytest.raises(ScenarioNotFound):
                engine.start_many(["FF-001"], "volcano")
            out = engine.start_many(["FF-001", "FF-002", "FF-001"], "structure_fire")
            statuses = engine.list_active()
            stopped = engine.stop_all()
            return engine, out, statuses, stopped

        engine, out, statuses, stopped = asyncio.run(scenario())
        assert out["summary"] == {"requested": 3, "started": 2, "failed": 1}
        assert out["errors"][0]["reason"] == "already-running"
        assert sorted(s["subject_id"] for s in statuses) == ["FF-001", "FF-002"]
        assert all(s["state"] in ("starting", "running") for s in statuses)
        assert sorted(stopped) == ["FF-001", "FF-002"]
        assert engine.list_active() == []

    def test_restart_after_completion(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=FAST)
            first = engine.start("FF-001", "inactivity_scenario")
            await engine.drain()
            second = engine.start("FF-001", "inactivity_scenario")
            await engine.drain()
            return engine, first, second

        engine, first, second = asyncio.run(scenario())
        assert second.start_time >= first.now
        assert second.state == SimulationState.COMPLETED
        assert engine.pipeline.stats["late"] == 0

    def test_sink_failures_do_not_stop_the_run(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, pipeline=MonitoringPipeline(sink=BrokenSink()), config=FAST)
            inst = engine.start("FF-001", "fall_incident")
            await engine.drain()
            return engine, inst

        engine, inst = asyncio.run(scenario())
        assert inst.state == SimulationState.COMPLETED
        assert engine.pipeline.stats["sink_errors"] >= 179

    @pytest.mark.parametrize("exc", [ConnectionError("broker unreachable"), RuntimeError("serializer bug")])
    def test_unexpected_sink_errors_do_not_stop_the_run(self, catalog, exc):
        class ExplodingSink:
            def on_sample(self, subject_id, sample):
                raise exc

            def on_alert(self, subject_id, event):
                raise exc

        async def scenario():
            engine = SimulationEngine(catalog, pipeline=MonitoringPipeline(sink=ExplodingSink()), config=FAST)
            inst = engine.start("FF-001", "heat_exhaustion", start_time=START)
            await engine.drain()
            return engine, inst

        engine, inst = asyncio.run(scenario())
        assert inst.state == SimulationState.COMPLETED
        assert inst.samples == 179
        assert engine.pipeline.stats["sink_errors"] >= 179
        assert engine.pipeline.lifecycle.stats["created"] >= 1

    def test_status(self, catalog):
        async def scenario():
            engine = SimulationEngine(catalog, config=EngineConfig(speed=100.0, seed=3))
            engine.start("FF-001", "search_rescue", start_time=START)
            await asyncio.sleep(0.35)
            status = engine.status("FF-001")
            engine.stop("FF-001")
            return status

        status = asyncio.run(scenario())
        assert status["scenario_id"] == "search_rescue"
        assert status["tick"] >= 1
        assert status["samples"] == status["tick"]
        assert status["last_sample"]["subject_id"] == "FF-001"
        assert 0 < status["progress"] < 1
