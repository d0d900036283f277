from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from realtime.errors import InvariantViolation
from realtime.thresholds import ThresholdTable
from realtime.vitals import Acceleration, VitalSample


@dataclass
class ValidationConfig:
    """
    Sanitization rules for incoming telemetry.
    Out-of-range values are always clamped; only missing/NaN channels can drop a sample.
    """
    drop_on_invalid: bool = False     # if True -> drop samples with missing/NaN channels, else substitute


SCALAR_CHANNELS = ("heart_rate", "core_temperature", "air_quality")

# substituted for missing/NaN channels
FALLBACKS = {
    "heart_rate": 70.0,
    "core_temperature": 37.0,
    "air_quality": 100.0,
    "acceleration": 1.0,
}

_default_table: Optional[ThresholdTable] = None


def _table_or_default(table: Optional[ThresholdTable]) -> ThresholdTable:
    global _default_table
    if table is not None:
        return table
    if _default_table is None:
        _default_table = ThresholdTable.default()
    return _default_table


def _is_nan(x) -> bool:
    try:
        return math.isnan(float(x))
    except (TypeError, ValueError):
        return True


def _is_finite(x) -> bool:
    try:
        return math.isfinite(float(x))
    except (TypeError, ValueError):
        return False


def _clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def sanitize_sample(
    sample: VitalSample,
    cfg: ValidationConfig,
    table: Optional[ThresholdTable] = None,
) -> Tuple[Optional[VitalSample], Dict]:
    """
    Clamp and quantize every channel of a sample to the plausible ranges of `table`
    (the default threshold table if omitted).

    Returns:
      (sanitized_sample_or_none, meta)
    meta includes:
      - dropped: bool
      - corrected_fields: int
      - reason: str
    """
    table = _table_or_default(table)
    meta = {"dropped": False, "corrected_fields": 0, "reason": ""}
    values: Dict[str, float] = {}

    for field in SCALAR_CHANNELS:
        lo, hi = table.range_of(field)
        val = getattr(sample, field)
        if val is None or _is_nan(val):
            if cfg.drop_on_invalid:
                meta["dropped"] = True
                meta["reason"] = f"nan:{field}"
                return None, meta
            values[field] = _clamp(FALLBACKS[field], lo, hi)
            meta["corrected_fields"] += 1
            continue

        v = float(val)
        if v < lo or v > hi:
            v = _clamp(v, lo, hi)
            meta["corrected_fields"] += 1
        values[field] = v

    acc_lo, acc_hi = table.range_of("acceleration")
    acc = sample.acceleration
    # an infinite component has no usable direction either
    if not all(_is_finite(c) for c in (acc.x, acc.y, acc.z)):
        if cfg.drop_on_invalid:
            meta["dropped"] = True
            meta["reason"] = "nan:acceleration"
            return None, meta
        acc = Acceleration.from_magnitude(_clamp(FALLBACKS["acceleration"], acc_lo, acc_hi), (0.0, 0.0, 1.0))
        meta["corrected_fields"] += 1
    elif acc.magnitude > acc_hi:
        acc = Acceleration.from_magnitude(acc_hi, (acc.x, acc.y, acc.z))
        meta["corrected_fields"] += 1

    acc = Acceleration(x=round(acc.x, 2), y=round(acc.y, 2), z=round(acc.z, 2))
    # rounding the components can push the magnitude a hair past the limit
    if acc.magnitude > acc_hi:
        scale = acc_hi / acc.magnitude
        acc = Acceleration(
            x=math.trunc(acc.x * scale * 100) / 100,
            y=math.trunc(acc.y * scale * 100) / 100,
            z=math.trunc(acc.z * scale * 100) / 100,
        )

    clean = replace(
        sample,
        heart_rate=int(round(values["heart_rate"])),
        core_temperature=round(values["core_temperature"], 1),
        air_quality=int(round(values["air_quality"])),
        acceleration=acc,
        equipment_faults=tuple(sample.equipment_faults),
    )
    _check_ranges(clean, table)
    return clean, meta


def _check_ranges(sample: VitalSample, table: ThresholdTable) -> None:
    for field in SCALAR_CHANNELS:
        lo, hi = table.range_of(field)
        v = float(getattr(sample, field))
        # integer/one-decimal quantization may step just outside a fractional bound
        if not (lo - 0.5 <= v <= hi + 0.5):
            raise InvariantViolation(f"{field}={v} escaped [{lo}, {hi}] after sanitizing")
    lo, hi = table.range_of("acceleration")
    if not (lo <= sample.acceleration.magnitude <= hi):
        raise InvariantViolation(f"acceleration magnitude {sample.acceleration.magnitude} escaped [{lo}, {hi}]")
