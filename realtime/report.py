import json
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd

from realtime.alerting import AlertEvent
from realtime.vitals import VitalSample


class RunReporter:
    """
    Collects and saves a final simulation run summary.
    """

    def __init__(self, out_path: str):
        self.out_path = Path(out_path)
        self.start_ts = time.time()

    def build(
        self,
        subjects: int,
        scenario_id: str,
        pipeline_stats: Dict,
        alert_stats: Dict,
        tick_stats: Dict,
        active_alerts: Optional[List[Dict]] = None,
    ) -> Dict:
        runtime_sec = time.time() - self.start_ts

        samples = pipeline_stats.get("in", 0)
        emitted = pipeline_stats.get("alerts_emitted", 0)
        alerts_per_sample = (emitted / samples) if samples > 0 else None

        return {
            "runtime_sec": runtime_sec,
            "subjects": subjects,
            "scenario_id": scenario_id,
            "pipeline": {
                **pipeline_stats,
                "alerts_per_sample": alerts_per_sample,
            },
            "alerts": alert_stats,
            "latency": {"tick": tick_stats},
            "active_alerts": active_alerts or [],
            "generated_at": time.time(),
        }

    def save(self, report: Dict) -> None:
        self.out_path.parent.mkdir(parents=True, exist_ok=True)
        with self.out_path.open("w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)


def samples_frame(samples: Iterable[VitalSample]) -> pd.DataFrame:
    rows = []
    for s in samples:
        acc = s.acceleration
        rows.append(
            {
                "subject_id": s.subject_id,
                "timestamp": s.timestamp.isoformat(),
                "scenario_id": s.scenario_id,
                "sample_index": s.sample_index,
                "heart_rate": s.heart_rate,
                "core_temperature": s.core_temperature,
                "acc_x": acc.x,
                "acc_y": acc.y,
                "acc_z": acc.z,
                "acc_magnitude": round(acc.magnitude, 2),
                "air_quality": s.air_quality,
                "air_quality_category": s.air_quality_category,
                "equipment_faults": "|".join(s.equipment_faults),
                "is_synthetic": s.is_synthetic,
            }
        )
    return pd.DataFrame(rows)


def alerts_frame(events: Iterable[AlertEvent]) -> pd.DataFrame:
    rows = []
    for e in events:
        a = e.alert
        rows.append(
            {
                "kind": e.kind,
                "alert_id": a.alert_id,
                "subject_id": a.subject_id,
                "type": a.type,
                "severity": a.severity.label,
                "priority": a.priority,
                "status": a.status.value,
                "message": a.message,
                "at": a.updated_at.isoformat(),
                "scenario_id": a.metadata.get("scenario_id"),
            }
        )
    return pd.DataFrame(rows)
