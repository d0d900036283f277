# realtime/processor.py
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence

from realtime.vitals import VitalSample


def _mean(xs):
    return sum(xs) / len(xs) if xs else None


def _min(xs):
    return min(xs) if xs else None


def _max(xs):
    return max(xs) if xs else None


@dataclass
class HistoryConfig:
    window_sec: float = 600.0
    max_samples: int = 256


class SubjectHistory:
    """
    Per-subject trailing window of sanitized samples over event-time.

    The evaluator reads `recent(subject_id)` (samples strictly before the one
    being evaluated); the pipeline pushes the new sample after reconciling.
    """

    def __init__(self, cfg: Optional[HistoryConfig] = None):
        self.cfg = cfg or HistoryConfig()
        self.buffers: Dict[str, Deque[VitalSample]] = defaultdict(
            lambda: deque(maxlen=int(self.cfg.max_samples))
        )

    def push(self, sample: VitalSample) -> None:
        buf = self.buffers[sample.subject_id]
        buf.append(sample)

        # evict old by event-time
        cutoff = sample.epoch - float(self.cfg.window_sec)
        while buf and buf[0].epoch < cutoff:
            buf.popleft()

    def recent(self, subject_id: str) -> List[VitalSample]:
        buf = self.buffers.get(subject_id)
        return list(buf) if buf else []

    def clear(self, subject_id: str) -> None:
        self.buffers.pop(subject_id, None)

    def summary(self, subject_id: str) -> Dict[str, Optional[float]]:
        return window_summary(self.recent(subject_id))


def window_summary(samples: Sequence[VitalSample]) -> Dict[str, Optional[float]]:
    hrs = [float(s.heart_rate) for s in samples]
    temps = [float(s.core_temperature) for s in samples]
    airs = [float(s.air_quality) for s in samples]
    return {
        "n_samples": len(samples),
        "hr_mean": _mean(hrs),
        "hr_min": _min(hrs),
        "hr_max": _max(hrs),
        "temp_mean": _mean(temps),
        "temp_max": _max(temps),
        "air_min": _min(airs),
    }
