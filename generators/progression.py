from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np


def progress_at(elapsed_sec: float, duration_sec: float) -> float:
    if duration_sec <= 0:
        return 1.0
    return float(np.clip(elapsed_sec / duration_sec, 0.0, 1.0))


def power_curve(baseline: float, peak: float, progress: float, exponent: float) -> float:
    """
    baseline + (peak - baseline) * progress ** exponent

    exponent in (0, 1]: smaller values front-load the change.
    """
    p = float(np.clip(progress, 0.0, 1.0))
    return float(baseline + (peak - baseline) * p ** float(exponent))


def step_boost(progress: float, boosts: Iterable[Tuple[float, float]]) -> float:
    """Sum of boost amounts whose boundary progress has been passed (strictly)."""
    return float(sum(amount for after, amount in boosts if progress > after))


def environment_offset(
    ambient_temp: float,
    humidity: float,
    ambient_coupling: float,
    humidity_coupling: float,
) -> float:
    return float(ambient_coupling * (ambient_temp - 20.0) + humidity_coupling * (humidity - 50.0))


def jitter(rng: np.random.Generator, amplitude: float) -> float:
    """Uniform noise in [-amplitude/2, amplitude/2)."""
    if amplitude <= 0:
        return 0.0
    return float((rng.random() - 0.5) * amplitude)


def clamp(value: float, lo: float, hi: float, ceiling: Optional[float] = None) -> float:
    if ceiling is not None:
        hi = min(hi, ceiling)
    return float(np.clip(value, lo, hi))
