import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from realtime.alerting import AlertEvent
from realtime.errors import TransientSinkError
from realtime.stream import EventStream
from realtime.vitals import VitalSample

logger = logging.getLogger(__name__)


class MemorySink:
    """
    Keeps everything in lists. Used by offline runs and tests.
    """

    def __init__(self):
        self.samples: List[VitalSample] = []
        self.events: List[AlertEvent] = []

    def on_sample(self, subject_id: str, sample: VitalSample) -> None:
        self.samples.append(sample)

    def on_alert(self, subject_id: str, event: AlertEvent) -> None:
        self.events.append(event)

    def events_for(self, subject_id: str, kind: Optional[str] = None) -> List[AlertEvent]:
        return [
            e for e in self.events
            if e.alert.subject_id == subject_id and (kind is None or e.kind == kind)
        ]


class JsonlAlertSink:
    """
    Append-only JSON lines log of alert events (one record per event).
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def on_sample(self, subject_id: str, sample: VitalSample) -> None:
        return None

    def on_alert(self, subject_id: str, event: AlertEvent) -> None:
        record = {
            "ts": event.alert.updated_at.isoformat(),
            "subject_id": subject_id,
            **event.to_dict(),
        }
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            raise TransientSinkError(f"alert log write failed: {e}", path=str(self.path)) from e


class StreamSink:
    """
    Publishes samples and alert events onto an EventStream for async consumers.
    """

    def __init__(self, stream: EventStream, include_samples: bool = True):
        self.stream = stream
        self.include_samples = include_samples

    def _publish(self, record: Dict) -> None:
        try:
            self.stream.publish_nowait(record)
        except asyncio.QueueFull as e:
            raise TransientSinkError("event stream is full", kind=record.get("kind")) from e

    def on_sample(self, subject_id: str, sample: VitalSample) -> None:
        if self.include_samples:
            self._publish({"kind": "sample", "subject_id": subject_id, "sample": sample.to_dict()})

    def on_alert(self, subject_id: str, event: AlertEvent) -> None:
        self._publish({"kind": "alert", "subject_id": subject_id, "event": event.to_dict()})


class FanoutSink:
    """
    Forwards to several sinks. One failing sink does not starve the others;
    a TransientSinkError is raised afterwards if any of them failed.
    """

    def __init__(self, sinks: Sequence):
        self.sinks = list(sinks)

    def _each(self, method: str, *args) -> None:
        failures = []
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args)
            except Exception as e:
                logger.debug("%s.%s failed: %r", type(sink).__name__, method, e)
                failures.append(e)
        if failures:
            raise TransientSinkError(
                f"{len(failures)} sink(s) failed: " + "; ".join(str(f) for f in failures)
            )

    def on_sample(self, subject_id: str, sample: VitalSample) -> None:
        self._each("on_sample", subject_id, sample)

    def on_alert(self, subject_id: str, event: AlertEvent) -> None:
        self._each("on_alert", subject_id, event)
