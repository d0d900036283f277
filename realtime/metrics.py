import time
from collections import deque
from contextlib import contextmanager
from typing import Dict, Iterator
import numpy as np


class LatencyTracker:
    """
    Rolling window of per-tick processing times (ms) with summary statistics.
    """

    def __init__(self, size: int = 200):
        self.latencies = deque(maxlen=size)

    def add(self, latency_ms: float) -> None:
        self.latencies.append(float(latency_ms))

    @contextmanager
    def measure(self) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.add((time.perf_counter() - t0) * 1000.0)

    def stats(self) -> Dict[str, float]:
        if not self.latencies:
            return {}

        arr = np.array(self.latencies, dtype=float)
        return {
            "avg_ms": float(arr.mean()),
            "p50_ms": float(np.percentile(arr, 50)),
            "p95_ms": float(np.percentile(arr, 95)),
            "max_ms": float(arr.max()),
            "last_ms": float(arr[-1]),
            "count": int(arr.size),
        }


def merge_stats(trackers) -> Dict[str, float]:
    """Summary over several trackers, e.g. all simulation instances of a run."""
    values = [v for t in trackers for v in t.latencies]
    merged = LatencyTracker(size=max(1, len(values)))
    for v in values:
        merged.add(v)
    return merged.stats()
