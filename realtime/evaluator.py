# realtime/evaluator.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from realtime.thresholds import (
    RateOfChangeRule,
    Severity,
    SustainedRule,
    ThresholdTable,
    normalize_alert_type,
    priority_for,
)
from realtime.vitals import VitalSample

BAND_CHANNELS = ("heart_rate", "core_temperature", "air_quality")

EQUIPMENT_MESSAGES = {
    "SCBA_MALFUNCTION": ("CRITICAL: SCBA malfunction reported",
                         "Switch to backup air supply - Exit hazard zone immediately"),
    "EQUIPMENT_FAILURE": ("CRITICAL: Equipment failure reported",
                          "Stop work - Inspect equipment - Withdraw if protection is compromised"),
    "HELMET_OFF": ("CRITICAL: Helmet removal detected",
                   "Contact firefighter - Confirm helmet and sensor placement"),
    "COMMUNICATION_LOST": ("CRITICAL: Communication lost with firefighter",
                           "Attempt radio contact - Dispatch accountability check"),
}

# priority per equipment type where it differs from the critical default
EQUIPMENT_PRIORITY = {"COMMUNICATION_LOST": 9}


@dataclass(frozen=True)
class CandidateAlert:
    type: str
    severity: Severity
    message: str
    priority: int
    value: Optional[float] = None
    threshold: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_severity(self, severity: Severity, priority: int) -> "CandidateAlert":
        return replace(self, severity=severity, priority=priority)


def sort_candidates(candidates: Sequence[CandidateAlert]) -> List[CandidateAlert]:
    return sorted(candidates, key=lambda c: (-c.priority, c.type))


def equipment_candidate(alert_type: str) -> CandidateAlert:
    alert_type = normalize_alert_type(alert_type)
    message, action = EQUIPMENT_MESSAGES.get(
        alert_type, (f"CRITICAL: {alert_type.replace('_', ' ').title()}", "Check equipment")
    )
    return CandidateAlert(
        type=alert_type,
        severity=Severity.CRITICAL,
        message=message,
        priority=EQUIPMENT_PRIORITY.get(alert_type, priority_for(Severity.CRITICAL)),
        metadata={"source": "equipment", "recommended_action": action},
    )


def evaluate(
    sample: VitalSample,
    history: Sequence[VitalSample],
    table: ThresholdTable,
) -> List[CandidateAlert]:
    """
    Pure evaluation of one sanitized sample.

    `history` holds earlier samples of the same subject (oldest first), bounded
    by the caller. Nothing is mutated; the same inputs always give the same output.
    """
    out: List[CandidateAlert] = []

    for channel in BAND_CHANNELS:
        if channel not in table.channels:
            continue
        out.extend(_band_candidates(sample, channel, table))

    out.extend(_motion_candidates(sample, table))

    for rule in table.rate_rules:
        c = _rate_candidate(sample, history, rule)
        if c is not None:
            out.append(c)

    for rule in table.sustained_rules:
        c = _sustained_candidate(sample, history, rule)
        if c is not None:
            out.append(c)

    for fault in dict.fromkeys(sample.equipment_faults):
        out.append(equipment_candidate(fault))

    return sort_candidates(out)


def _band_candidates(sample: VitalSample, channel: str, table: ThresholdTable) -> List[CandidateAlert]:
    value = float(getattr(sample, channel))
    bands = table.channels[channel]
    band = bands.locate(value)
    if band.severity == Severity.NORMAL:
        return []

    alert_type = bands.alert_type_for(band)
    # the bound the value crossed: lower edge for rising bands, upper edge for the low end
    threshold = band.upper if band is bands.bands[0] and band.lower == bands.low else band.lower
    message = band.message.format(value=value) if band.message else (
        f"{band.severity.name}: {channel} {value:g}{bands.unit}"
    )
    return [
        CandidateAlert(
            type=alert_type,
            severity=band.severity,
            message=message,
            priority=band.priority if band.priority is not None else priority_for(band.severity),
            value=value,
            threshold=threshold,
            metadata={
                "channel": channel,
                "band": [band.lower, band.upper],
                "recommended_action": band.recommended_action,
            },
        )
    ]


def _motion_candidates(sample: VitalSample, table: ThresholdTable) -> List[CandidateAlert]:
    rule = table.motion
    mag = sample.acceleration.magnitude
    if mag > rule.fall_threshold_g:
        return [
            CandidateAlert(
                type="FALL_DETECTED",
                severity=Severity.CRITICAL,
                message=f"CRITICAL: Fall detected - Impact {mag:.1f}g",
                priority=10,
                value=round(mag, 2),
                threshold=rule.fall_threshold_g,
                metadata={"channel": "acceleration",
                          "recommended_action": "Immediate radio contact - Dispatch RIT if no response"},
            )
        ]
    if 0.0 < mag < rule.inactivity_threshold_g:
        return [
            CandidateAlert(
                type="INACTIVITY_DETECTED",
                severity=Severity.HIGH,
                message=f"HIGH: Inactivity detected - Movement {mag:.2f}g",
                priority=9,
                value=round(mag, 2),
                threshold=rule.inactivity_threshold_g,
                metadata={"channel": "acceleration",
                          "recommended_action": "Check on firefighter - Possible incapacitation"},
            )
        ]
    return []


def _rate_candidate(
    sample: VitalSample,
    history: Sequence[VitalSample],
    rule: RateOfChangeRule,
) -> Optional[CandidateAlert]:
    now = sample.epoch
    current = float(getattr(sample, rule.channel))
    window = [float(getattr(h, rule.channel)) for h in history if 0 <= now - h.epoch <= rule.window_sec]
    if not window:
        return None

    delta = current - min(window)
    if delta <= rule.delta:
        return None

    message = rule.message.format(delta=delta, window=rule.window_sec, value=current) if rule.message else (
        f"{rule.alert_type}: {rule.channel} +{delta:g} in {rule.window_sec:g}s"
    )
    return CandidateAlert(
        type=rule.alert_type,
        severity=rule.severity,
        message=message,
        priority=priority_for(rule.severity),
        value=current,
        threshold=rule.delta,
        metadata={"channel": rule.channel, "delta": round(delta, 2), "window_sec": rule.window_sec},
    )


def _sustained_candidate(
    sample: VitalSample,
    history: Sequence[VitalSample],
    rule: SustainedRule,
) -> Optional[CandidateAlert]:
    now = sample.epoch
    window = [h for h in history if 0 <= now - h.epoch <= rule.window_sec]
    if not window:
        return None

    span = now - min(h.epoch for h in window)
    if span < rule.min_span_sec:
        return None

    values = [float(getattr(h, rule.channel)) for h in window] + [float(getattr(sample, rule.channel))]
    mean = sum(values) / len(values)
    if mean < rule.level:
        return None

    message = rule.message.format(value=mean, window=rule.window_sec) if rule.message else (
        f"{rule.alert_type}: mean {rule.channel} {mean:g}"
    )
    return CandidateAlert(
        type=rule.alert_type,
        severity=rule.severity,
        message=message,
        priority=priority_for(rule.severity),
        value=round(mean, 1),
        threshold=rule.level,
        metadata={"channel": rule.channel, "span_sec": span, "n_samples": len(values)},
    )
