# realtime/alerting.py
from __future__ import annotations

import copy
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from realtime.errors import AlertNotFound, OutOfOrderSample
from realtime.evaluator import CandidateAlert
from realtime.thresholds import Severity
from realtime.vitals import parse_timestamp

logger = logging.getLogger(__name__)


ESCALATION_TIMEOUTS_SEC = {
    Severity.CRITICAL: 120.0,
    Severity.HIGH: 300.0,
    Severity.MODERATE: 900.0,
    Severity.NORMAL: 1800.0,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


@dataclass
class AlertConfig:
    resolve_after_ticks: int = 3    # consecutive ticks without the condition before resolving
    cooldown_sec: float = 0.0       # min time after resolution before the same type can re-open
    stale_after_sec: float = 600.0  # silence after which a subject is reported COMMUNICATION_LOST
    # unacknowledged alerts are escalated once after this long (by current severity); <= 0 disables
    escalation_timeouts_sec: Dict[Severity, float] = field(default_factory=lambda: dict(ESCALATION_TIMEOUTS_SEC))


@dataclass
class Alert:
    alert_id: str
    subject_id: str
    type: str
    severity: Severity
    message: str
    priority: int
    created_at: datetime
    updated_at: datetime
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    escalation_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        def ts(v: Optional[datetime]) -> Optional[str]:
            return v.isoformat() if v is not None else None

        return {
            "alert_id": self.alert_id,
            "subject_id": self.subject_id,
            "type": self.type,
            "severity": self.severity.label,
            "message": self.message,
            "priority": int(self.priority),
            "status": self.status.value,
            "created_at": ts(self.created_at),
            "updated_at": ts(self.updated_at),
            "acknowledged_at": ts(self.acknowledged_at),
            "resolved_at": ts(self.resolved_at),
            "escalated_at": ts(self.escalated_at),
            "escalation_count": int(self.escalation_count),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Alert":
        def ts(v: Any) -> Optional[datetime]:
            return parse_timestamp(v) if v is not None else None

        return cls(
            alert_id=str(d["alert_id"]),
            subject_id=str(d["subject_id"]),
            type=str(d["type"]),
            severity=Severity.parse(d["severity"]),
            message=str(d.get("message", "")),
            priority=int(d["priority"]),
            created_at=parse_timestamp(d["created_at"]),
            updated_at=parse_timestamp(d["updated_at"]),
            status=AlertStatus(d.get("status", "active")),
            acknowledged_at=ts(d.get("acknowledged_at")),
            resolved_at=ts(d.get("resolved_at")),
            escalated_at=ts(d.get("escalated_at")),
            escalation_count=int(d.get("escalation_count", 0)),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass(frozen=True)
class AlertEvent:
    kind: str   # created | escalated | resolved | acknowledged
    alert: Alert
    previous_severity: Optional[Severity] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"kind": self.kind, "alert": self.alert.to_dict()}
        if self.previous_severity is not None:
            out["previous_severity"] = self.previous_severity.label
        return out


class AlertLifecycleManager:
    """
    Stateful alerting per subject and alert type.

    - One open (active or acknowledged) alert per subject+type
    - Same or lower severity while open -> suppressed
    - Higher severity -> escalated in place
    - Resolved after `resolve_after_ticks` consecutive reconciles without the type
    - Optional cooldown before a resolved type can be re-created
    - Unacknowledged alerts escalated once when left open past their severity's timeout
    """

    def __init__(self, cfg: Optional[AlertConfig] = None):
        self.cfg = cfg or AlertConfig()
        self._open: Dict[str, Dict[str, Alert]] = {}
        self._misses: Dict[str, int] = {}
        self._last_ts: Dict[str, datetime] = {}
        self._last_resolved: Dict[Tuple[str, str], datetime] = {}
        self._overdue: Set[str] = set()
        self._ids = itertools.count(1)
        self.stats = {
            "created": 0,
            "escalated": 0,
            "overdue": 0,
            "resolved": 0,
            "acknowledged": 0,
            "suppressed": 0,
        }

    def last_seen(self, subject_id: str) -> Optional[datetime]:
        return self._last_ts.get(subject_id)

    def subjects_last_seen(self) -> Dict[str, datetime]:
        return dict(self._last_ts)

    def reconcile(
        self,
        subject_id: str,
        candidates: Sequence[CandidateAlert],
        now: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[AlertEvent]:
        last = self._last_ts.get(subject_id)
        if last is not None and now < last:
            raise OutOfOrderSample(
                f"reconcile at {now.isoformat()} is older than {last.isoformat()} for {subject_id}",
                subject_id=subject_id,
            )
        self._last_ts[subject_id] = now

        # collapse to the most severe candidate per type
        best: Dict[str, CandidateAlert] = {}
        for c in candidates:
            cur = best.get(c.type)
            if cur is None or (c.severity, c.priority) > (cur.severity, cur.priority):
                best[c.type] = c

        opened = self._open.setdefault(subject_id, {})
        events: List[AlertEvent] = []

        for alert_type in sorted(best, key=lambda t: (-best[t].priority, t)):
            ev = self.open_alert(subject_id, best[alert_type], now, context)
            if ev is not None:
                events.append(ev)

        for alert_type in sorted(set(opened) - set(best)):
            alert = opened[alert_type]
            misses = self._misses.get(alert.alert_id, 0) + 1
            self._misses[alert.alert_id] = misses
            if misses >= int(self.cfg.resolve_after_ticks):
                self._resolve(alert, now)
                del opened[alert_type]
                events.append(AlertEvent("resolved", self._snapshot(alert)))

        touched = {ev.alert.type for ev in events}
        events.extend(self._escalate_overdue(subject_id, now, skip=touched))
        return events

    def open_alert(
        self,
        subject_id: str,
        cand: CandidateAlert,
        now: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AlertEvent]:
        """
        Create, escalate or suppress a single candidate without counting misses
        for the subject's other alert types. Returns the emitted event, if any.
        """
        opened = self._open.setdefault(subject_id, {})
        alert = opened.get(cand.type)
        if alert is None:
            if self._in_cooldown(subject_id, cand.type, now):
                self.stats["suppressed"] += 1
                return None
            alert = self._create(subject_id, cand, now, context)
            opened[cand.type] = alert
            return AlertEvent("created", self._snapshot(alert))

        self._misses[alert.alert_id] = 0
        if cand.severity > alert.severity:
            prev = alert.severity
            self._escalate(alert, cand, now)
            return AlertEvent("escalated", self._snapshot(alert), previous_severity=prev)
        self.stats["suppressed"] += 1
        return None

    def acknowledge(self, subject_id: str, alert_type: str, now: Optional[datetime] = None) -> Optional[AlertEvent]:
        """
        Operator acknowledgement. Changes status only; the alert still resolves
        on its own once the condition clears. Returns None if already acknowledged.
        """
        alert = self._open.get(subject_id, {}).get(alert_type)
        if alert is None:
            raise AlertNotFound(subject_id, alert_type)
        if alert.status == AlertStatus.ACKNOWLEDGED:
            return None

        ts = now or self._last_ts.get(subject_id) or alert.updated_at
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = ts
        alert.updated_at = ts
        self.stats["acknowledged"] += 1
        logger.info("Alert acknowledged: %s %s (%s)", subject_id, alert_type, alert.alert_id)
        return AlertEvent("acknowledged", self._snapshot(alert))

    def active_alerts(self, subject_id: Optional[str] = None) -> List[Alert]:
        if subject_id is not None:
            alerts = list(self._open.get(subject_id, {}).values())
        else:
            alerts = [a for per in self._open.values() for a in per.values()]
        return sorted(alerts, key=lambda a: (-a.priority, -int(a.severity), a.created_at, a.type))

    def _in_cooldown(self, subject_id: str, alert_type: str, now: datetime) -> bool:
        if self.cfg.cooldown_sec <= 0:
            return False
        resolved = self._last_resolved.get((subject_id, alert_type))
        return resolved is not None and (now - resolved).total_seconds() < self.cfg.cooldown_sec

    def _create(self, subject_id: str, cand: CandidateAlert, now: datetime, context=None) -> Alert:
        metadata = dict(context or {})
        metadata.update(cand.metadata)
        metadata.update({"value": cand.value, "threshold": cand.threshold})
        alert = Alert(
            alert_id=f"ALR-{next(self._ids):06d}",
            subject_id=subject_id,
            type=cand.type,
            severity=cand.severity,
            message=cand.message,
            priority=cand.priority,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        self._misses[alert.alert_id] = 0
        self.stats["created"] += 1
        logger.info("Alert created: %s %s [%s] %s", subject_id, cand.type, cand.severity.label, cand.message)
        return alert

    def _escalate(self, alert: Alert, cand: CandidateAlert, now: datetime) -> None:
        alert.severity = cand.severity
        alert.message = cand.message
        alert.priority = max(alert.priority, cand.priority)
        alert.escalated_at = now
        alert.updated_at = now
        alert.escalation_count += 1
        alert.metadata.update({"value": cand.value, "threshold": cand.threshold, "escalation_reason": "severity"})
        # a worse condition needs a fresh acknowledgement
        alert.status = AlertStatus.ACTIVE
        self.stats["escalated"] += 1
        logger.info("Alert escalated: %s %s -> %s", alert.subject_id, alert.type, cand.severity.label)

    def _escalate_overdue(self, subject_id: str, now: datetime, skip=()) -> List[AlertEvent]:
        events: List[AlertEvent] = []
        for alert_type, alert in sorted(self._open.get(subject_id, {}).items()):
            if alert_type in skip or alert.status != AlertStatus.ACTIVE or alert.alert_id in self._overdue:
                continue
            timeout = self.cfg.escalation_timeouts_sec.get(alert.severity)
            if timeout is None or timeout <= 0:
                continue
            # measured from the last time the alert needed a fresh acknowledgement
            since = alert.escalated_at or alert.created_at
            if (now - since).total_seconds() < timeout:
                continue
            self._overdue.add(alert.alert_id)
            alert.escalated_at = now
            alert.updated_at = now
            alert.escalation_count += 1
            alert.metadata["escalation_reason"] = "unacknowledged"
            self.stats["overdue"] += 1
            logger.warning(
                "Alert unacknowledged for %.0fs: %s %s [%s]",
                (now - since).total_seconds(), subject_id, alert_type, alert.severity.label,
            )
            events.append(AlertEvent("escalated", self._snapshot(alert), previous_severity=alert.severity))
        return events

    def _resolve(self, alert: Alert, now: datetime) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now
        alert.updated_at = now
        self._misses.pop(alert.alert_id, None)
        self._overdue.discard(alert.alert_id)
        self._last_resolved[(alert.subject_id, alert.type)] = now
        self.stats["resolved"] += 1
        logger.info("Alert resolved: %s %s (%s)", alert.subject_id, alert.type, alert.alert_id)

    @staticmethod
    def _snapshot(alert: Alert) -> Alert:
        return copy.deepcopy(alert)
