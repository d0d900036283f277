# realtime/engine.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from generators.scenarios import ScenarioCatalog, ScenarioDefinition
from generators.vitals_simulator import VitalsSimulator
from realtime.alerting import AlertEvent
from realtime.errors import (
    MonitoringError,
    OutOfOrderSample,
    SimulationAlreadyRunning,
    SimulationNotFound,
    UnknownSubject,
    ValidationError,
)
from realtime.evaluator import equipment_candidate
from realtime.metrics import LatencyTracker
from realtime.pipeline import MonitoringPipeline, PipelineResult
from realtime.vitals import VitalSample

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    tick_interval_sec: float = 10.0   # simulated seconds per tick
    speed: float = 1.0                # wall sleep per tick = tick_interval_sec / speed
    seed: Optional[int] = None


class SimulationState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (SimulationState.COMPLETED, SimulationState.STOPPED)


class SimulationInstance:
    """
    One scenario running for one subject. Time advances by ticks, not by the wall clock:
    tick n is at start_time + n * tick_interval_sec.
    """

    def __init__(
        self,
        subject_id: str,
        scenario: ScenarioDefinition,
        start_time: datetime,
        rng: np.random.Generator,
        tick_interval_sec: float = 10.0,
    ):
        self.subject_id = subject_id
        self.scenario = scenario
        self.start_time = start_time
        self.tick_interval_sec = float(tick_interval_sec)
        self.simulator = VitalsSimulator(scenario, rng=rng)
        self.alert_filter = scenario.alert_filter

        self.state = SimulationState.STARTING
        self.tick = 0
        self.samples = 0
        self.revoked = False
        self.task: Optional[asyncio.Task] = None
        self.last_sample: Optional[VitalSample] = None
        self.latency = LatencyTracker(size=200)

    @property
    def elapsed_sec(self) -> float:
        return self.tick * self.tick_interval_sec

    @property
    def progress(self) -> float:
        return min(1.0, self.elapsed_sec / self.scenario.duration_sec)

    @property
    def now(self) -> datetime:
        return self.start_time + timedelta(seconds=self.elapsed_sec)

    def step(self, pipeline: MonitoringPipeline) -> Optional[PipelineResult]:
        """
        Advance one tick. Returns None once the instance is finished or revoked.
        """
        if self.revoked or self.state.terminal:
            return None

        self.tick += 1
        if self.elapsed_sec >= self.scenario.duration_sec:
            self.state = SimulationState.COMPLETED
            logger.info("Simulation completed: %s (%s) after %d samples",
                        self.subject_id, self.scenario.id, self.samples)
            return None
        self.state = SimulationState.RUNNING

        with self.latency.measure():
            if self.scenario.communication_failure:
                events = pipeline.present(
                    self.subject_id,
                    [equipment_candidate("COMMUNICATION_LOST")],
                    self.now,
                    alert_filter=self.alert_filter,
                    scenario_id=self.scenario.id,
                )
                result = PipelineResult(sample=None, events=events, meta={"communication_lost": True})
            else:
                sample = self.simulator.sample(
                    self.subject_id, self.elapsed_sec, self.now, sample_index=self.samples
                )
                self.samples += 1
                result = pipeline.process(sample, alert_filter=self.alert_filter)
                if result.sample is not None:
                    self.last_sample = result.sample

        logger.debug("Tick %d for %s: %d candidates, %d events",
                     self.tick, self.subject_id, len(result.candidates), len(result.events))
        return result

    def to_status(self, pipeline: Optional[MonitoringPipeline] = None) -> Dict[str, Any]:
        out = {
            "subject_id": self.subject_id,
            "scenario_id": self.scenario.id,
            "scenario_name": self.scenario.name,
            "state": self.state.value,
            "started_at": self.start_time.isoformat(),
            "tick": self.tick,
            "samples": self.samples,
            "elapsed_sec": self.elapsed_sec,
            "progress": round(self.progress, 4),
            "latency": self.latency.stats(),
            "last_sample": self.last_sample.to_dict() if self.last_sample is not None else None,
        }
        if pipeline is not None:
            out["active_alerts"] = [a.to_dict() for a in pipeline.active_alerts(self.subject_id)]
        return out


class SimulationEngine:
    """
    Owns the subject -> SimulationInstance registry and one asyncio task per instance.
    All ticks run on the same event loop; a tick never awaits, only the sleep between ticks does.
    """

    def __init__(
        self,
        catalog: ScenarioCatalog,
        pipeline: Optional[MonitoringPipeline] = None,
        config: Optional[EngineConfig] = None,
        subjects: Optional[Iterable[str]] = None,
    ):
        self.catalog = catalog
        self.pipeline = pipeline or MonitoringPipeline()
        self.cfg = config or EngineConfig()
        self.subjects = set(subjects) if subjects is not None else None
        self._instances: Dict[str, SimulationInstance] = {}
        self._seeds = np.random.SeedSequence(self.cfg.seed)

    def _check_subject(self, subject_id: str) -> None:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("subject_id is required", subject_id=subject_id)
        if self.subjects is not None and subject_id not in self.subjects:
            raise UnknownSubject(subject_id)

    def start(
        self,
        subject_id: str,
        scenario_id: str,
        start_time: Optional[datetime] = None,
    ) -> SimulationInstance:
        """
        Start a scenario for one subject. Must be called from inside the running event loop.
        """
        scenario = self.catalog.get_scenario(scenario_id)
        self._check_subject(subject_id)
        if subject_id in self._instances:
            raise SimulationAlreadyRunning(subject_id)

        start = start_time or datetime.now(timezone.utc)
        last = self.pipeline.lifecycle.last_seen(subject_id)
        if last is not None and start <= last:
            # a previous run may have advanced simulated time past the wall clock
            start = last + timedelta(seconds=self.cfg.tick_interval_sec)

        rng = np.random.default_rng(self._seeds.spawn(1)[0])
        inst = SimulationInstance(subject_id, scenario, start, rng, self.cfg.tick_interval_sec)
        self._instances[subject_id] = inst
        inst.task = asyncio.get_running_loop().create_task(self._run(inst))
        logger.info("Simulation started: %s -> %s", subject_id, scenario.id)
        return inst

    def start_many(self, subject_ids: Iterable[str], scenario_id: str) -> Dict[str, Any]:
        """
        Start the same scenario for several subjects. A bad scenario rejects the whole
        request; per-subject problems are collected and reported.
        """
        self.catalog.get_scenario(scenario_id)
        requested = list(subject_ids)
        started: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for sid in requested:
            try:
                inst = self.start(sid, scenario_id)
            except MonitoringError as e:
                errors.append({"subject_id": sid, **e.to_dict()})
                continue
            started.append({"subject_id": sid, "scenario_id": scenario_id, "started_at": inst.start_time.isoformat()})

        return {
            "started": started,
            "errors": errors,
            "summary": {"requested": len(requested), "started": len(started), "failed": len(errors)},
        }

    def stop(self, subject_id: str) -> Dict[str, Any]:
        """
        Revoke the instance, cancel its task and drop the registry entry.
        No tick for this subject runs after this returns.
        """
        inst = self._instances.pop(subject_id, None)
        if inst is None:
            raise SimulationNotFound(subject_id)
        inst.revoked = True
        inst.state = SimulationState.STOPPED
        if inst.task is not None:
            inst.task.cancel()
        logger.info("Simulation stopped: %s (%s) at tick %d", subject_id, inst.scenario.id, inst.tick)
        return inst.to_status(self.pipeline)

    def stop_all(self) -> List[str]:
        stopped = []
        for sid in list(self._instances):
            self.stop(sid)
            stopped.append(sid)
        return stopped

    def instance(self, subject_id: str) -> SimulationInstance:
        inst = self._instances.get(subject_id)
        if inst is None:
            raise SimulationNotFound(subject_id)
        return inst

    def status(self, subject_id: str) -> Dict[str, Any]:
        return self.instance(subject_id).to_status(self.pipeline)

    def list_active(self) -> List[Dict[str, Any]]:
        return [inst.to_status(self.pipeline) for inst in self._instances.values()]

    def is_active(self, subject_id: str) -> bool:
        return subject_id in self._instances

    async def drain(self) -> None:
        """Wait until every current instance has completed or been stopped."""
        tasks = [inst.task for inst in self._instances.values() if inst.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, inst: SimulationInstance) -> None:
        sleep_sec = self.cfg.tick_interval_sec / max(self.cfg.speed, 1e-9)
        try:
            while not inst.revoked:
                await asyncio.sleep(sleep_sec)
                if inst.revoked:
                    return
                try:
                    inst.step(self.pipeline)
                except OutOfOrderSample as e:
                    logger.warning("Skipped tick %d for %s: %s", inst.tick, inst.subject_id, e)
                if inst.state.terminal:
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            inst.state = SimulationState.STOPPED
            logger.exception("Simulation for %s aborted at tick %d", inst.subject_id, inst.tick)
            raise
        finally:
            if self._instances.get(inst.subject_id) is inst and inst.state.terminal:
                del self._instances[inst.subject_id]


@dataclass
class RunResult:
    subject_id: str
    scenario_id: str
    state: SimulationState
    ticks: int
    samples: List[VitalSample] = field(default_factory=list)
    events: List[AlertEvent] = field(default_factory=list)

    def events_of(self, kind: Optional[str] = None, alert_type: Optional[str] = None) -> List[AlertEvent]:
        return [
            e for e in self.events
            if (kind is None or e.kind == kind) and (alert_type is None or e.alert.type == alert_type)
        ]


def run_scenario(
    scenario: ScenarioDefinition,
    subject_id: str,
    pipeline: Optional[MonitoringPipeline] = None,
    start_time: Optional[datetime] = None,
    tick_interval_sec: float = 10.0,
    seed: Optional[int] = None,
) -> RunResult:
    """
    Run a scenario to completion synchronously (no timers). Used for datasets and tests.
    """
    pipeline = pipeline or MonitoringPipeline()
    start = start_time or datetime.now(timezone.utc)
    inst = SimulationInstance(subject_id, scenario, start, np.random.default_rng(seed), tick_interval_sec)

    out = RunResult(subject_id=subject_id, scenario_id=scenario.id, state=inst.state, ticks=0)
    while not inst.state.terminal:
        result = inst.step(pipeline)
        if result is None:
            break
        if result.sample is not None:
            out.samples.append(result.sample)
        out.events.extend(result.events)

    out.state = inst.state
    out.ticks = inst.tick
    return out
