from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional

from realtime.errors import InvariantViolation
from realtime.evaluator import CandidateAlert, sort_candidates
from realtime.thresholds import Severity, normalize_alert_type, priority_for


@dataclass(frozen=True)
class ScenarioAlertFilter:
    """
    Restricts evaluator output to what a scenario is meant to exercise.

    Types outside `targets` are dropped. Severities above `max_severity` are
    downgraded to the cap, never discarded.
    """
    targets: FrozenSet[str]
    max_severity: Optional[Severity] = None

    def __post_init__(self):
        if not self.targets:
            raise InvariantViolation("alert targets must not be empty")

    @classmethod
    def build(cls, targets: Iterable[str], max_severity=None) -> "ScenarioAlertFilter":
        cap = Severity.parse(max_severity) if max_severity is not None else None
        return cls(targets=frozenset(normalize_alert_type(t) for t in targets), max_severity=cap)

    def apply(self, candidates: Iterable[CandidateAlert]) -> List[CandidateAlert]:
        out: List[CandidateAlert] = []
        for c in candidates:
            if c.type not in self.targets:
                continue
            if self.max_severity is not None and c.severity > self.max_severity:
                c = c.with_severity(self.max_severity, min(c.priority, priority_for(self.max_severity)))
            out.append(c)
        return sort_candidates(out)
