import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from realtime.alerting import Alert, AlertConfig, AlertEvent, AlertLifecycleManager
from realtime.errors import OutOfOrderSample, TransientSinkError
from realtime.evaluator import CandidateAlert, equipment_candidate, evaluate
from realtime.filtering import ScenarioAlertFilter
from realtime.processor import HistoryConfig, SubjectHistory
from realtime.sinks import MemorySink
from realtime.thresholds import ThresholdTable
from realtime.validation import ValidationConfig, sanitize_sample
from realtime.vitals import VitalSample

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    sample: Optional[VitalSample]
    candidates: List[CandidateAlert] = field(default_factory=list)
    events: List[AlertEvent] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


class MonitoringPipeline:
    """
    sanitize -> evaluate -> filter -> reconcile -> hand off.

    Shared by the simulation engine and the real sensor ingest path.
    Each call is synchronous; callers keep per-subject ordering.
    """

    def __init__(
        self,
        table: Optional[ThresholdTable] = None,
        vcfg: Optional[ValidationConfig] = None,
        history_cfg: Optional[HistoryConfig] = None,
        alert_cfg: Optional[AlertConfig] = None,
        sink=None,
    ):
        self.table = table or ThresholdTable.default()
        self.vcfg = vcfg or ValidationConfig()
        self.history = SubjectHistory(history_cfg)
        self.lifecycle = AlertLifecycleManager(alert_cfg)
        self.sink = sink if sink is not None else MemorySink()

        self.stats = {
            "in": 0,
            "dropped": 0,
            "late": 0,
            "corrected_fields": 0,
            "candidates": 0,
            "alerts_emitted": 0,
            "sink_errors": 0,
        }

    def ingest(self, event: Dict[str, Any], alert_filter: Optional[ScenarioAlertFilter] = None) -> PipelineResult:
        """Raw device event -> VitalSample -> process. Raises ValidationError on a malformed event."""
        return self.process(VitalSample.from_event(event), alert_filter=alert_filter)

    def process(
        self,
        sample: VitalSample,
        alert_filter: Optional[ScenarioAlertFilter] = None,
    ) -> PipelineResult:
        self.stats["in"] += 1

        clean, meta = sanitize_sample(sample, self.vcfg, self.table)
        self.stats["corrected_fields"] += int(meta["corrected_fields"])
        if clean is None:
            self.stats["dropped"] += 1
            logger.debug("Dropped sample for %s: %s", sample.subject_id, meta["reason"])
            return PipelineResult(sample=None, meta=meta)

        last = self.lifecycle.last_seen(clean.subject_id)
        if last is not None and clean.timestamp < last:
            self.stats["late"] += 1
            self.stats["dropped"] += 1
            meta.update({"dropped": True, "late": True, "reason": "out_of_order"})
            logger.debug("Late sample for %s at %s (last %s)", clean.subject_id, clean.timestamp, last)
            return PipelineResult(sample=None, meta=meta)

        candidates = evaluate(clean, self.history.recent(clean.subject_id), self.table)
        if alert_filter is not None:
            candidates = alert_filter.apply(candidates)
        self.stats["candidates"] += len(candidates)

        context = {"scenario_id": clean.scenario_id} if clean.scenario_id else None
        events = self.lifecycle.reconcile(clean.subject_id, candidates, clean.timestamp, context=context)
        self.history.push(clean)

        self._emit_sample(clean)
        for ev in events:
            self._emit_alert(clean.subject_id, ev)

        return PipelineResult(sample=clean, candidates=candidates, events=events, meta=meta)

    def present(
        self,
        subject_id: str,
        candidates: Sequence[CandidateAlert],
        now: datetime,
        alert_filter: Optional[ScenarioAlertFilter] = None,
        scenario_id: Optional[str] = None,
    ) -> List[AlertEvent]:
        """
        Reconcile candidates that do not come from a sample (e.g. a lost radio link).
        """
        if alert_filter is not None:
            candidates = alert_filter.apply(candidates)
        self.stats["candidates"] += len(candidates)
        context = {"scenario_id": scenario_id} if scenario_id else None
        try:
            events = self.lifecycle.reconcile(subject_id, candidates, now, context=context)
        except OutOfOrderSample:
            self.stats["late"] += 1
            raise
        for ev in events:
            self._emit_alert(subject_id, ev)
        return events

    def check_stale(self, now: datetime) -> List[AlertEvent]:
        """
        Report COMMUNICATION_LOST for every subject silent for at least
        `alert_cfg.stale_after_sec`. Other open alerts are left untouched and
        the subject's last-seen time is not advanced, so buffered samples that
        arrive later are still accepted and clear the alert once data flows again.
        """
        gap = float(self.lifecycle.cfg.stale_after_sec)
        events: List[AlertEvent] = []
        for subject_id, last in sorted(self.lifecycle.subjects_last_seen().items()):
            silent = (now - last).total_seconds()
            if silent < gap:
                continue
            cand = equipment_candidate("COMMUNICATION_LOST")
            cand.metadata.update({"last_seen": last.isoformat(), "silent_sec": silent})
            ev = self.lifecycle.open_alert(subject_id, cand, now)
            if ev is None:
                continue
            logger.warning("No data from %s for %.0fs", subject_id, silent)
            self._emit_alert(subject_id, ev)
            events.append(ev)
        return events

    def acknowledge(self, subject_id: str, alert_type: str, now: Optional[datetime] = None) -> Optional[AlertEvent]:
        ev = self.lifecycle.acknowledge(subject_id, alert_type, now=now)
        if ev is not None:
            self._emit_alert(subject_id, ev)
        return ev

    def active_alerts(self, subject_id: Optional[str] = None) -> List[Alert]:
        return self.lifecycle.active_alerts(subject_id)

    def _emit_sample(self, sample: VitalSample) -> None:
        try:
            self.sink.on_sample(sample.subject_id, sample)
        except TransientSinkError as e:
            self.stats["sink_errors"] += 1
            logger.warning("Sample sink failed for %s: %s", sample.subject_id, e)
        except Exception as e:
            # unexpected sink errors are counted the same way
            self.stats["sink_errors"] += 1
            logger.warning("Sample sink raised %s for %s: %s", type(e).__name__, sample.subject_id, e)

    def _emit_alert(self, subject_id: str, event: AlertEvent) -> None:
        self.stats["alerts_emitted"] += 1
        try:
            self.sink.on_alert(subject_id, event)
        except TransientSinkError as e:
            self.stats["sink_errors"] += 1
            logger.warning("Alert sink failed for %s (%s %s): %s", subject_id, event.kind, event.alert.type, e)
        except Exception as e:
            self.stats["sink_errors"] += 1
            logger.warning(
                "Alert sink raised %s for %s (%s %s): %s",
                type(e).__name__, subject_id, event.kind, event.alert.type, e,
            )
