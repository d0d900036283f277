# realtime/thresholds.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from realtime.errors import InvariantViolation


class Severity(IntEnum):
    NORMAL = 0
    MODERATE = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise InvariantViolation(f"Unknown severity: {value}") from None


ALERT_TYPES = frozenset(
    {
        "HEART_RATE_MODERATE",
        "HEART_RATE_HIGH",
        "HEART_RATE_CRITICAL",
        "HEART_RATE_LOW",
        "HEART_RATE_SPIKE",
        "HEART_RATE_SUSTAINED",
        "TEMPERATURE_MODERATE",
        "TEMPERATURE_HIGH",
        "TEMPERATURE_CRITICAL",
        "TEMPERATURE_LOW",
        "TEMPERATURE_SPIKE",
        "ENVIRONMENTAL_HAZARD",
        "FALL_DETECTED",
        "INACTIVITY_DETECTED",
        "SCBA_MALFUNCTION",
        "EQUIPMENT_FAILURE",
        "HELMET_OFF",
        "COMMUNICATION_LOST",
    }
)

# Older scenario tables use these names for the same alerts.
ALERT_TYPE_ALIASES = {
    "AIR_QUALITY_CRITICAL": "ENVIRONMENTAL_HAZARD",
    "EQUIPMENT_MALFUNCTION": "EQUIPMENT_FAILURE",
    "HELMET_REMOVAL": "HELMET_OFF",
    "RADIO_FAILURE": "COMMUNICATION_LOST",
}

DEFAULT_PRIORITY = {
    Severity.NORMAL: 0,
    Severity.MODERATE: 6,
    Severity.HIGH: 8,
    Severity.CRITICAL: 10,
}


def normalize_alert_type(name: str) -> str:
    key = str(name).strip().upper()
    key = ALERT_TYPE_ALIASES.get(key, key)
    if key not in ALERT_TYPES:
        raise InvariantViolation(f"Unknown alert type: {name}")
    return key


def priority_for(severity: Severity) -> int:
    return DEFAULT_PRIORITY[Severity(severity)]


@dataclass(frozen=True)
class ThresholdBand:
    channel: str
    lower: float
    upper: float
    severity: Severity
    alert_type: Optional[str] = None
    message: str = ""
    priority: Optional[int] = None
    recommended_action: str = ""


@dataclass(frozen=True)
class ChannelBands:
    """
    Ordered bands for one channel.

    closed="left":  [lower, upper) per band, last band also includes its upper bound
    closed="right": (lower, upper] per band, first band also includes its lower bound
    """
    channel: str
    prefix: str
    unit: str
    low: float
    high: float
    closed: str
    bands: Tuple[ThresholdBand, ...]

    @property
    def edges(self) -> np.ndarray:
        return np.array([self.bands[0].lower] + [b.upper for b in self.bands], dtype=float)

    def locate(self, value: float) -> ThresholdBand:
        edges = self.edges
        v = float(np.clip(value, self.low, self.high))
        side = "right" if self.closed == "left" else "left"
        idx = int(np.searchsorted(edges, v, side=side)) - 1
        idx = min(max(idx, 0), len(self.bands) - 1)
        return self.bands[idx]

    def alert_type_for(self, band: ThresholdBand) -> str:
        return band.alert_type or f"{self.prefix}_{band.severity.name}"


@dataclass(frozen=True)
class RateOfChangeRule:
    channel: str
    delta: float
    window_sec: float
    alert_type: str
    severity: Severity
    message: str = ""


@dataclass(frozen=True)
class SustainedRule:
    channel: str
    level: float
    window_sec: float
    min_span_sec: float
    alert_type: str
    severity: Severity
    message: str = ""


@dataclass(frozen=True)
class MotionRule:
    fall_threshold_g: float = 20.0
    inactivity_threshold_g: float = 0.8
    low: float = 0.0
    high: float = 50.0


DEFAULT_THRESHOLDS: Dict[str, Any] = {
    "channels": {
        "heart_rate": {
            "prefix": "HEART_RATE",
            "unit": "bpm",
            "range": [30, 250],
            "closed": "left",
            "bands": [
                {"lower": 30, "upper": 50, "severity": "high", "alert_type": "HEART_RATE_LOW",
                 "message": "LOW: Heart rate {value:.0f} bpm - Check consciousness level",
                 "recommended_action": "Immediate radio contact - Check consciousness level"},
                {"lower": 50, "upper": 150, "severity": "normal"},
                {"lower": 150, "upper": 185, "severity": "moderate",
                 "message": "MODERATE: Heart rate {value:.0f} bpm - Monitor if sustained >10 min",
                 "recommended_action": "Monitor closely - Ensure adequate hydration - Consider work/rest cycles"},
                {"lower": 185, "upper": 200, "severity": "high",
                 "message": "HIGH: Heart rate {value:.0f} bpm - Approaching critical threshold",
                 "recommended_action": "Immediate rest and cooling - Consider rotation if sustained >5 min"},
                {"lower": 200, "upper": 250, "severity": "critical",
                 "message": "CRITICAL: Heart rate {value:.0f} bpm - Cardiac event risk",
                 "recommended_action": "IMMEDIATE MEDICAL ATTENTION - CEASE ALL ACTIVITY"},
            ],
        },
        "core_temperature": {
            "prefix": "TEMPERATURE",
            "unit": "C",
            "range": [35.0, 42.0],
            "closed": "left",
            "bands": [
                {"lower": 35.0, "upper": 36.0, "severity": "moderate", "alert_type": "TEMPERATURE_LOW",
                 "message": "LOW: Core temperature {value:.1f}°C - Possible hypothermia or sensor displacement",
                 "recommended_action": "Verify sensor placement - Check for cold exposure"},
                {"lower": 36.0, "upper": 38.0, "severity": "normal"},
                {"lower": 38.0, "upper": 38.5, "severity": "moderate",
                 "message": "MODERATE: Core temperature {value:.1f}°C - Heat stress developing",
                 "recommended_action": "Monitor temperature trend - Ensure adequate hydration"},
                {"lower": 38.5, "upper": 39.0, "severity": "high",
                 "message": "HIGH: Core temperature {value:.1f}°C - Elevated heat stress",
                 "recommended_action": "Immediate cooling break - Remove to shade - Cold fluids"},
                {"lower": 39.0, "upper": 42.0, "severity": "critical",
                 "message": "CRITICAL: Core temperature {value:.1f}°C - Heat exhaustion/stroke risk",
                 "recommended_action": "IMMEDIATE WITHDRAWAL - Aggressive cooling protocol"},
            ],
        },
        "air_quality": {
            "prefix": "AIR_QUALITY",
            "unit": "%",
            "range": [0, 100],
            "closed": "right",
            "bands": [
                {"lower": 0, "upper": 25, "severity": "critical", "alert_type": "ENVIRONMENTAL_HAZARD",
                 "message": "CRITICAL: Air quality {value:.0f}% - Dangerous exposure to toxins",
                 "recommended_action": "IMMEDIATE EVACUATION - Check SCBA function - Switch to backup air supply"},
                {"lower": 25, "upper": 50, "severity": "high", "alert_type": "ENVIRONMENTAL_HAZARD",
                 "priority": 7,
                 "message": "HIGH: Air quality {value:.0f}% - Poor environmental conditions",
                 "recommended_action": "Verify SCBA function immediately - Limit exposure time"},
                {"lower": 50, "upper": 75, "severity": "normal"},
                {"lower": 75, "upper": 100, "severity": "normal"},
            ],
        },
    },
    "rate_of_change": [
        {"channel": "heart_rate", "delta": 30, "window_sec": 60, "alert_type": "HEART_RATE_SPIKE",
         "severity": "high", "message": "SPIKE: Heart rate rose {delta:.0f} bpm within {window:.0f}s"},
        {"channel": "core_temperature", "delta": 0.8, "window_sec": 300, "alert_type": "TEMPERATURE_SPIKE",
         "severity": "high", "message": "SPIKE: Core temperature rose {delta:.1f}°C within {window:.0f}s"},
    ],
    "sustained": [
        {"channel": "heart_rate", "level": 150, "window_sec": 600, "min_span_sec": 300,
         "alert_type": "HEART_RATE_SUSTAINED", "severity": "moderate",
         "message": "SUSTAINED: Mean heart rate {value:.0f} bpm over {window:.0f}s"},
    ],
    "motion": {"fall_threshold_g": 20.0, "inactivity_threshold_g": 0.8, "range": [0.0, 50.0]},
}


@dataclass(frozen=True)
class ThresholdTable:
    """
    Immutable threshold configuration: per-channel bands plus derived-condition rules.
    Built once and validated on construction.
    """
    channels: Dict[str, ChannelBands]
    rate_rules: Tuple[RateOfChangeRule, ...] = ()
    sustained_rules: Tuple[SustainedRule, ...] = ()
    motion: MotionRule = field(default_factory=MotionRule)

    def __post_init__(self):
        for bands in self.channels.values():
            _check_coverage(bands)
        for rule in self.rate_rules:
            if rule.channel not in self.channels:
                raise InvariantViolation(f"Rate rule on unknown channel: {rule.channel}")
        for rule in self.sustained_rules:
            if rule.channel not in self.channels:
                raise InvariantViolation(f"Sustained rule on unknown channel: {rule.channel}")
        if not (self.motion.low <= self.motion.inactivity_threshold_g
                < self.motion.fall_threshold_g <= self.motion.high):
            raise InvariantViolation("Motion thresholds must satisfy low <= inactivity < fall <= high")

    def range_of(self, channel: str) -> Tuple[float, float]:
        if channel == "acceleration":
            return self.motion.low, self.motion.high
        bands = self.channels[channel]
        return bands.low, bands.high

    def band_for(self, channel: str, value: float) -> ThresholdBand:
        return self.channels[channel].locate(value)

    def alert_types(self) -> List[str]:
        out = [self.channels[c].alert_type_for(b)
               for c in self.channels for b in self.channels[c].bands
               if b.severity > Severity.NORMAL]
        out += [r.alert_type for r in self.rate_rules]
        out += [r.alert_type for r in self.sustained_rules]
        out += ["FALL_DETECTED", "INACTIVITY_DETECTED"]
        return sorted(set(out))

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ThresholdTable":
        channels: Dict[str, ChannelBands] = {}
        for name, ch in (raw.get("channels") or {}).items():
            lo, hi = ch["range"]
            closed = ch.get("closed", "left")
            if closed not in ("left", "right"):
                raise InvariantViolation(f"{name}: closed must be 'left' or 'right'")
            bands = []
            for b in ch["bands"]:
                alert_type = b.get("alert_type")
                bands.append(
                    ThresholdBand(
                        channel=name,
                        lower=float(b["lower"]),
                        upper=float(b["upper"]),
                        severity=Severity.parse(b["severity"]),
                        alert_type=normalize_alert_type(alert_type) if alert_type else None,
                        message=b.get("message", ""),
                        priority=b.get("priority"),
                        recommended_action=b.get("recommended_action", ""),
                    )
                )
            channels[name] = ChannelBands(
                channel=name,
                prefix=ch.get("prefix", name.upper()),
                unit=ch.get("unit", ""),
                low=float(lo),
                high=float(hi),
                closed=closed,
                bands=tuple(bands),
            )

        rate_rules = tuple(
            RateOfChangeRule(
                channel=r["channel"],
                delta=float(r["delta"]),
                window_sec=float(r["window_sec"]),
                alert_type=normalize_alert_type(r["alert_type"]),
                severity=Severity.parse(r["severity"]),
                message=r.get("message", ""),
            )
            for r in raw.get("rate_of_change", [])
        )
        sustained_rules = tuple(
            SustainedRule(
                channel=r["channel"],
                level=float(r["level"]),
                window_sec=float(r["window_sec"]),
                min_span_sec=float(r.get("min_span_sec", 0.0)),
                alert_type=normalize_alert_type(r["alert_type"]),
                severity=Severity.parse(r["severity"]),
                message=r.get("message", ""),
            )
            for r in raw.get("sustained", [])
        )
        m = raw.get("motion") or {}
        m_lo, m_hi = m.get("range", (0.0, 50.0))
        motion = MotionRule(
            fall_threshold_g=float(m.get("fall_threshold_g", 20.0)),
            inactivity_threshold_g=float(m.get("inactivity_threshold_g", 0.8)),
            low=float(m_lo),
            high=float(m_hi),
        )
        return cls(channels=channels, rate_rules=rate_rules, sustained_rules=sustained_rules, motion=motion)

    @classmethod
    def from_file(cls, path: str) -> "ThresholdTable":
        with Path(path).open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def default(cls) -> "ThresholdTable":
        return cls.from_dict(DEFAULT_THRESHOLDS)


def _check_coverage(ch: ChannelBands) -> None:
    if not ch.bands:
        raise InvariantViolation(f"{ch.channel}: no bands configured")
    if ch.low >= ch.high:
        raise InvariantViolation(f"{ch.channel}: empty plausible range")
    if ch.bands[0].lower != ch.low or ch.bands[-1].upper != ch.high:
        raise InvariantViolation(f"{ch.channel}: bands do not span [{ch.low}, {ch.high}]")
    for prev, nxt in zip(ch.bands, ch.bands[1:]):
        if prev.upper != nxt.lower:
            raise InvariantViolation(
                f"{ch.channel}: gap or overlap between {prev.upper} and {nxt.lower}"
            )
    for b in ch.bands:
        if b.lower >= b.upper:
            raise InvariantViolation(f"{ch.channel}: empty band [{b.lower}, {b.upper}]")
