from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterator, Optional, Tuple

import numpy as np

from generators.progression import clamp, environment_offset, jitter, power_curve, progress_at, step_boost
from generators.scenarios import ChannelProfile, ScenarioDefinition
from realtime.vitals import Acceleration, VitalSample

logger = logging.getLogger(__name__)

# simulated heart rate never drops below this
HR_FLOOR = 60.0
HR_MAX = 250.0
TEMP_RANGE = (35.0, 42.0)
ACCEL_RANGE = (0.1, 50.0)
FALL_IMPACT_RANGE = (22.0, 30.0)
POST_FALL_RANGE = (0.1, 0.7)


class VitalsSimulator:
    """
    Generates one VitalSample per tick for a scenario.

    Each channel is computed on its own; an error in one channel falls back to
    that channel's baseline and leaves the others untouched.
    """

    def __init__(self, scenario: ScenarioDefinition, rng: Optional[np.random.Generator] = None):
        self.scenario = scenario
        self.rng = rng if rng is not None else np.random.default_rng()

    def sample(
        self,
        subject_id: str,
        elapsed_sec: float,
        timestamp: datetime,
        sample_index: Optional[int] = None,
    ) -> VitalSample:
        s = self.scenario
        progress = progress_at(elapsed_sec, s.duration_sec)

        heart_rate = self._channel("heart_rate", lambda: self._heart_rate(progress), s.heart_rate.baseline)
        temperature = self._channel(
            "core_temperature", lambda: self._temperature(progress), s.core_temperature.baseline
        )
        accel = self._channel(
            "acceleration",
            lambda: self._acceleration(progress),
            Acceleration.from_magnitude(1.0, s.motion.base_acceleration),
        )
        air = self._channel("air_quality", self._air_quality, s.environment.air_quality)

        faults: Tuple[str, ...] = ()
        rule = s.equipment_failure
        if rule is not None and rule.probability > 0:
            values = {
                "heart_rate": heart_rate,
                "core_temperature": temperature,
                "air_quality": air,
                "acceleration": accel.magnitude,
                "elapsed_minutes": elapsed_sec / 60.0,
                "progress": progress,
            }
            if rule.when(values) and self.rng.random() < rule.probability:
                faults = (rule.alert_type,)

        return VitalSample(
            subject_id=subject_id,
            timestamp=timestamp,
            heart_rate=int(round(heart_rate)),
            core_temperature=round(float(temperature), 1),
            acceleration=accel,
            air_quality=int(round(air)),
            is_synthetic=True,
            scenario_id=s.id,
            sample_index=sample_index,
            equipment_faults=faults,
        )

    def _channel(self, name, compute, fallback):
        try:
            return compute()
        except (ArithmeticError, ValueError, TypeError) as e:
            logger.warning("Channel %s failed for scenario %s, using baseline: %s", name, self.scenario.id, e)
            return fallback

    def _progressed(self, prof: ChannelProfile, progress: float) -> float:
        v = power_curve(prof.baseline, prof.peak, progress, prof.exponent)
        v += step_boost(progress, prof.boosts)
        v += prof.fatigue * progress
        if prof.spike_probability > 0 and self.rng.random() < prof.spike_probability:
            v += prof.spike_magnitude
        v += jitter(self.rng, prof.variability)
        return v

    def _heart_rate(self, progress: float) -> float:
        prof = self.scenario.heart_rate
        v = self._progressed(prof, progress)
        return clamp(v, HR_FLOOR, HR_MAX, prof.ceiling)

    def _temperature(self, progress: float) -> float:
        prof = self.scenario.core_temperature
        env = self.scenario.environment
        v = self._progressed(prof, progress)
        v += environment_offset(env.ambient_temp, env.humidity, env.ambient_coupling, env.humidity_coupling)
        return clamp(v, TEMP_RANGE[0], TEMP_RANGE[1], prof.ceiling)

    def _acceleration(self, progress: float) -> Acceleration:
        motion = self.scenario.motion
        base = motion.base_acceleration
        base_mag = float(np.linalg.norm(base))
        direction = base

        if motion.pattern == "fall":
            if progress < motion.fall_phase:
                mag = base_mag + jitter(self.rng, motion.jitter)
            else:
                mag = clamp(0.3 + jitter(self.rng, 0.4), *POST_FALL_RANGE)
        elif motion.pattern == "activity":
            direction = tuple(np.abs(self.rng.normal(size=3)))
            if motion.fall_risk > 0 and self.rng.random() < motion.fall_risk:
                mag = float(self.rng.uniform(*FALL_IMPACT_RANGE))
            else:
                mag = 1.0 + float(self.rng.random()) * motion.activity_multiplier
        else:
            mag = base_mag + jitter(self.rng, motion.jitter)

        mag = clamp(mag, *ACCEL_RANGE)
        acc = Acceleration.from_magnitude(mag, direction)
        return Acceleration(x=round(acc.x, 2), y=round(acc.y, 2), z=round(acc.z, 2))

    def _air_quality(self) -> float:
        env = self.scenario.environment
        return clamp(env.air_quality + jitter(self.rng, env.air_variability), 0.0, 100.0)


def simulate_scenario_stream(
    scenario: ScenarioDefinition,
    subject_id: str,
    start: datetime,
    tick_interval_sec: float = 10.0,
    rng: Optional[np.random.Generator] = None,
) -> Iterator[VitalSample]:
    """
    Offline generator: one sample per tick until the scenario duration is reached.
    Communication-loss scenarios yield nothing.
    """
    if scenario.communication_failure:
        return
    sim = VitalsSimulator(scenario, rng=rng)
    tick = 0
    while True:
        tick += 1
        elapsed = tick * tick_interval_sec
        if elapsed >= scenario.duration_sec:
            return
        yield sim.sample(subject_id, elapsed, start + timedelta(seconds=elapsed), sample_index=tick - 1)
