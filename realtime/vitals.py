# realtime/vitals.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import numpy as np

from realtime.errors import InvariantViolation, ValidationError
from realtime.thresholds import normalize_alert_type


def air_quality_category(score: float) -> str:
    if score <= 25:
        return "hazardous"
    if score <= 50:
        return "poor"
    if score <= 75:
        return "moderate"
    return "good"


def parse_timestamp(value: Any) -> datetime:
    """
    Accepts ISO-8601 strings, epoch seconds or datetimes.
    Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Acceleration:
    x: float
    y: float
    z: float

    @property
    def magnitude(self) -> float:
        return float(np.linalg.norm([self.x, self.y, self.z]))

    def to_dict(self) -> Dict[str, float]:
        return {
            "x": round(float(self.x), 2),
            "y": round(float(self.y), 2),
            "z": round(float(self.z), 2),
            "magnitude": round(self.magnitude, 2),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Acceleration":
        return cls(x=float(d["x"]), y=float(d["y"]), z=float(d["z"]))

    @classmethod
    def from_magnitude(cls, magnitude: float, direction: Tuple[float, float, float]) -> "Acceleration":
        """Scale a direction vector to the given magnitude (z axis if the direction is zero)."""
        vec = np.asarray(direction, dtype=float)
        norm = float(np.linalg.norm(vec))
        unit = vec / norm if norm > 0 else np.array([0.0, 0.0, 1.0])
        out = unit * float(magnitude)
        return cls(x=float(out[0]), y=float(out[1]), z=float(out[2]))


@dataclass(frozen=True)
class VitalSample:
    """
    One telemetry reading for one subject.

    Values are expected to be clamped/quantized by realtime.validation before
    they reach the evaluator; the dataclass itself does not enforce ranges.
    """
    subject_id: str
    timestamp: datetime
    heart_rate: int
    core_temperature: float
    acceleration: Acceleration
    air_quality: int
    is_synthetic: bool = False
    scenario_id: Optional[str] = None
    sample_index: Optional[int] = None
    equipment_faults: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def air_quality_category(self) -> str:
        return air_quality_category(self.air_quality)

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "timestamp": self.timestamp.isoformat(),
            "heart_rate": int(self.heart_rate),
            "core_temperature": round(float(self.core_temperature), 1),
            "acceleration": self.acceleration.to_dict(),
            "air_quality": int(self.air_quality),
            "air_quality_category": self.air_quality_category,
            "is_synthetic": bool(self.is_synthetic),
            "scenario_id": self.scenario_id,
            "sample_index": self.sample_index,
            "equipment_faults": list(self.equipment_faults),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VitalSample":
        # magnitude and air_quality_category are derived and ignored on load
        idx = d.get("sample_index")
        return cls(
            subject_id=str(d["subject_id"]),
            timestamp=parse_timestamp(d["timestamp"]),
            heart_rate=int(d["heart_rate"]),
            core_temperature=float(d["core_temperature"]),
            acceleration=Acceleration.from_dict(d["acceleration"]),
            air_quality=int(d["air_quality"]),
            is_synthetic=bool(d.get("is_synthetic", False)),
            scenario_id=d.get("scenario_id"),
            sample_index=int(idx) if idx is not None else None,
            equipment_faults=tuple(d.get("equipment_faults") or ()),
        )

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "VitalSample":
        """
        Build a sample from a raw device event.

        Raw events may carry NaN or None for any channel; those are passed
        through as NaN and resolved by realtime.validation.sanitize_sample.
        """
        subject = event.get("subject_id", event.get("firefighter_id"))
        if subject is None or subject == "":
            raise ValidationError("event is missing subject_id")
        if event.get("timestamp") is None:
            raise ValidationError("event is missing timestamp", subject_id=str(subject))
        try:
            timestamp = parse_timestamp(event["timestamp"])
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise ValidationError(f"bad timestamp: {event['timestamp']!r}", subject_id=str(subject)) from e

        accel = event.get("acceleration")
        if isinstance(accel, dict):
            acc = Acceleration(
                x=_raw_float(accel.get("x")),
                y=_raw_float(accel.get("y")),
                z=_raw_float(accel.get("z")),
            )
        elif isinstance(accel, (list, tuple)) and len(accel) == 3:
            acc = Acceleration(*(_raw_float(a) for a in accel))
        else:
            acc = Acceleration(float("nan"), float("nan"), float("nan"))

        return cls(
            subject_id=str(subject),
            timestamp=timestamp,
            heart_rate=_raw_float(event.get("heart_rate")),
            core_temperature=_raw_float(event.get("core_temperature", event.get("temperature"))),
            acceleration=acc,
            air_quality=_raw_float(event.get("air_quality")),
            is_synthetic=bool(event.get("is_synthetic", False)),
            scenario_id=event.get("scenario_id"),
            sample_index=event.get("sample_index"),
            equipment_faults=_faults_from_event(event, str(subject)),
        )


def _raw_float(v: Any) -> float:
    try:
        if v is None:
            return float("nan")
        return float(v)
    except (TypeError, ValueError):
        return float("nan")


def _faults_from_event(event: Dict[str, Any], subject: str) -> Tuple[str, ...]:
    faults = event.get("equipment_faults")
    if faults is None:
        return ()
    if not isinstance(faults, (list, tuple)):
        raise ValidationError(f"equipment_faults must be a list, got {type(faults).__name__}", subject_id=subject)
    out = []
    for fault in faults:
        try:
            out.append(normalize_alert_type(fault))
        except InvariantViolation as e:
            raise ValidationError(f"unknown equipment fault: {fault!r}", subject_id=subject) from e
    return tuple(out)
