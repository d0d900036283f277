from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from generators.expressions import Predicate
from realtime.errors import InvariantViolation, ScenarioNotFound
from realtime.filtering import ScenarioAlertFilter
from realtime.thresholds import Severity, normalize_alert_type

logger = logging.getLogger(__name__)

DEFAULT_SCENARIOS_PATH = Path(__file__).with_name("scenarios.json")

ACTIVITY_MULTIPLIERS = {
    "LOW": 1.8,
    "MODERATE": 3.5,
    "HIGH": 6.0,
    "EXTREME": 8.5,
}

MOTION_PATTERNS = ("fixed", "activity", "fall")


@dataclass(frozen=True)
class ChannelProfile:
    """
    Progression of one channel over a scenario:
      baseline + (peak - baseline) * progress ** exponent + boosts + fatigue * progress + noise
    """
    baseline: float
    peak: float
    exponent: float = 1.0
    variability: float = 0.0
    boosts: Tuple[Tuple[float, float], ...] = ()   # (progress boundary, amount)
    fatigue: float = 0.0
    spike_probability: float = 0.0
    spike_magnitude: float = 0.0
    ceiling: Optional[float] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any], where: str) -> "ChannelProfile":
        if not isinstance(d, dict):
            raise InvariantViolation(f"{where}: channel profile must be an object")
        try:
            prof = cls(
                baseline=float(d["baseline"]),
                peak=float(d["peak"]),
                exponent=float(d.get("exponent", 1.0)),
                variability=float(d.get("variability", 0.0)),
                boosts=tuple((float(after), float(amount)) for after, amount in d.get("boosts", [])),
                fatigue=float(d.get("fatigue", 0.0)),
                spike_probability=float(d.get("spike_probability", 0.0)),
                spike_magnitude=float(d.get("spike_magnitude", 0.0)),
                ceiling=float(d["ceiling"]) if d.get("ceiling") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvariantViolation(f"{where}: bad channel profile ({e})") from e

        if not (0.0 < prof.exponent <= 1.0):
            raise InvariantViolation(f"{where}: exponent must be in (0, 1], got {prof.exponent}")
        if prof.variability < 0:
            raise InvariantViolation(f"{where}: variability must be >= 0")
        if not (0.0 <= prof.spike_probability <= 1.0):
            raise InvariantViolation(f"{where}: spike_probability must be in [0, 1]")
        return prof


@dataclass(frozen=True)
class MotionProfile:
    activity_level: str = "MODERATE"
    pattern: str = "fixed"
    base_acceleration: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    fall_risk: float = 0.0
    fall_phase: float = 0.2
    jitter: float = 0.2

    @property
    def activity_multiplier(self) -> float:
        return ACTIVITY_MULTIPLIERS[self.activity_level]

    @classmethod
    def from_dict(cls, d: Dict[str, Any], where: str) -> "MotionProfile":
        level = str(d.get("activity_level", "MODERATE")).upper()
        if level not in ACTIVITY_MULTIPLIERS:
            raise InvariantViolation(f"{where}: unknown activity_level {level}")
        pattern = str(d.get("pattern", "fixed"))
        if pattern not in MOTION_PATTERNS:
            raise InvariantViolation(f"{where}: unknown motion pattern {pattern}")
        base = d.get("base_acceleration", (0.0, 0.0, 1.0))
        try:
            if isinstance(base, dict):
                base = (base["x"], base["y"], base["z"])
            if len(base) != 3:
                raise InvariantViolation(f"{where}: base_acceleration needs 3 components")
            prof = cls(
                activity_level=level,
                pattern=pattern,
                base_acceleration=tuple(float(b) for b in base),
                fall_risk=float(d.get("fall_risk", 0.0)),
                fall_phase=float(d.get("fall_phase", 0.2)),
                jitter=float(d.get("jitter", 0.2)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvariantViolation(f"{where}: bad motion profile ({e!r})") from e
        if not (0.0 <= prof.fall_risk <= 1.0):
            raise InvariantViolation(f"{where}: fall_risk must be in [0, 1]")
        if not (0.0 < prof.fall_phase < 1.0):
            raise InvariantViolation(f"{where}: fall_phase must be in (0, 1)")
        return prof


@dataclass(frozen=True)
class EnvironmentProfile:
    ambient_temp: float = 20.0
    humidity: float = 50.0
    air_quality: float = 95.0
    air_variability: float = 8.0
    ambient_coupling: float = 0.15
    humidity_coupling: float = 0.025

    @classmethod
    def from_dict(cls, d: Dict[str, Any], where: str) -> "EnvironmentProfile":
        try:
            return cls(**{k: float(v) for k, v in d.items()})
        except (TypeError, ValueError) as e:
            raise InvariantViolation(f"{where}: bad environment ({e})") from e


@dataclass(frozen=True)
class EquipmentFailureRule:
    probability: float
    when: Predicate
    alert_type: str

    @classmethod
    def from_dict(cls, d: Dict[str, Any], where: str) -> "EquipmentFailureRule":
        try:
            prob = float(d.get("probability", 0.0))
        except (TypeError, ValueError) as e:
            raise InvariantViolation(f"{where}: bad failure probability ({e})") from e
        if not (0.0 <= prob <= 1.0):
            raise InvariantViolation(f"{where}: failure probability must be in [0, 1]")
        return cls(
            probability=prob,
            when=Predicate(d.get("when", "True")),
            alert_type=normalize_alert_type(d.get("alert_type", "EQUIPMENT_FAILURE")),
        )


@dataclass(frozen=True)
class ScenarioDefinition:
    id: str
    name: str
    description: str
    duration_min: float
    alert_targets: frozenset
    heart_rate: ChannelProfile
    core_temperature: ChannelProfile
    motion: MotionProfile
    environment: EnvironmentProfile
    max_severity: Optional[Severity] = None
    communication_failure: bool = False
    equipment_failure: Optional[EquipmentFailureRule] = None

    @property
    def duration_sec(self) -> float:
        return float(self.duration_min) * 60.0

    @property
    def alert_filter(self) -> ScenarioAlertFilter:
        return ScenarioAlertFilter(targets=self.alert_targets, max_severity=self.max_severity)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "duration_min": self.duration_min,
            "alert_targets": sorted(self.alert_targets),
            "max_severity": self.max_severity.label if self.max_severity is not None else None,
            "communication_failure": self.communication_failure,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScenarioDefinition":
        sid = str(d.get("id") or "").strip()
        if not sid:
            raise InvariantViolation("scenario without id")

        targets = d.get("alert_targets") or []
        if not targets:
            raise InvariantViolation(f"{sid}: alert_targets must not be empty")
        target_set = frozenset(normalize_alert_type(t) for t in targets)

        try:
            duration = float(d.get("duration_min", 0))
        except (TypeError, ValueError) as e:
            raise InvariantViolation(f"{sid}: duration_min must be a number") from e
        if duration <= 0:
            raise InvariantViolation(f"{sid}: duration_min must be > 0")

        for channel in ("heart_rate", "core_temperature"):
            if channel not in d:
                raise InvariantViolation(f"{sid}: missing {channel} profile")

        max_sev = d.get("max_severity")
        failure = d.get("equipment_failure")
        scenario = cls(
            id=sid,
            name=str(d.get("name", sid)),
            description=str(d.get("description", "")),
            duration_min=duration,
            alert_targets=target_set,
            heart_rate=ChannelProfile.from_dict(d["heart_rate"], f"{sid}.heart_rate"),
            core_temperature=ChannelProfile.from_dict(d["core_temperature"], f"{sid}.core_temperature"),
            motion=MotionProfile.from_dict(d.get("motion") or {}, f"{sid}.motion"),
            environment=EnvironmentProfile.from_dict(d.get("environment") or {}, f"{sid}.environment"),
            max_severity=Severity.parse(max_sev) if max_sev is not None else None,
            communication_failure=bool(d.get("communication_failure", False)),
            equipment_failure=EquipmentFailureRule.from_dict(failure, f"{sid}.equipment_failure") if failure else None,
        )

        if scenario.communication_failure and "COMMUNICATION_LOST" not in target_set:
            raise InvariantViolation(f"{sid}: communication_failure requires COMMUNICATION_LOST in alert_targets")
        if scenario.equipment_failure is not None and scenario.equipment_failure.alert_type not in target_set:
            raise InvariantViolation(
                f"{sid}: equipment failure type {scenario.equipment_failure.alert_type} is not an alert target"
            )
        return scenario


class ScenarioCatalog:
    """
    Immutable, validated set of scenarios keyed by id.
    """

    def __init__(self, scenarios: List[ScenarioDefinition]):
        self._scenarios: Dict[str, ScenarioDefinition] = {}
        for s in scenarios:
            if s.id in self._scenarios:
                raise InvariantViolation(f"duplicate scenario id: {s.id}")
            self._scenarios[s.id] = s

    def __len__(self) -> int:
        return len(self._scenarios)

    def __iter__(self):
        return iter(self._scenarios.values())

    def __contains__(self, scenario_id: str) -> bool:
        return scenario_id in self._scenarios

    def ids(self) -> List[str]:
        return list(self._scenarios)

    def list_scenarios(self) -> List[Dict[str, Any]]:
        return [s.summary() for s in self._scenarios.values()]

    def get_scenario(self, scenario_id: Optional[str]) -> ScenarioDefinition:
        if not scenario_id:
            raise ScenarioNotFound(scenario_id)
        s = self._scenarios.get(scenario_id)
        if s is None:
            raise ScenarioNotFound(scenario_id)
        return s

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ScenarioCatalog":
        return cls([ScenarioDefinition.from_dict(d) for d in raw.get("scenarios", [])])

    @classmethod
    def from_file(cls, path) -> "ScenarioCatalog":
        with Path(path).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        catalog = cls.from_dict(raw)
        logger.info("Loaded %d scenarios from %s", len(catalog), path)
        return catalog

    @classmethod
    def default(cls) -> "ScenarioCatalog":
        return cls.from_file(DEFAULT_SCENARIOS_PATH)


def load_scenarios(path: Optional[str] = None) -> ScenarioCatalog:
    return ScenarioCatalog.from_file(path) if path else ScenarioCatalog.default()
