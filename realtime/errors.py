from __future__ import annotations

from typing import Any, Dict, Optional


class MonitoringError(Exception):
    """
    Base error for the monitoring core.
    Every error carries a short machine-readable reason for the control surface.
    """
    reason = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"reason": self.reason, "message": self.message}
        out.update(self.details)
        return out


class ValidationError(MonitoringError):
    """Malformed request. Rejected synchronously, no state change."""
    reason = "invalid-request"


class ScenarioNotFound(ValidationError):
    reason = "not-found"

    def __init__(self, scenario_id: Optional[str]):
        if not scenario_id:
            super().__init__("scenario_id is required", scenario_id=scenario_id)
            self.reason = "invalid-scenario"
        else:
            super().__init__(f"Scenario not found: {scenario_id}", scenario_id=scenario_id)


class UnknownSubject(ValidationError):
    reason = "not-found"

    def __init__(self, subject_id: str):
        super().__init__(f"Unknown subject: {subject_id}", subject_id=subject_id)


class SimulationNotFound(ValidationError):
    reason = "not-found"

    def __init__(self, subject_id: str):
        super().__init__(f"No active simulation for subject {subject_id}", subject_id=subject_id)


class AlertNotFound(ValidationError):
    reason = "not-found"

    def __init__(self, subject_id: str, alert_type: str):
        super().__init__(
            f"No open {alert_type} alert for subject {subject_id}",
            subject_id=subject_id,
            alert_type=alert_type,
        )


class OutOfOrderSample(ValidationError):
    reason = "out-of-order"


class ConflictError(MonitoringError):
    reason = "conflict"


class SimulationAlreadyRunning(ConflictError):
    reason = "already-running"

    def __init__(self, subject_id: str):
        super().__init__(f"Simulation already running for subject {subject_id}", subject_id=subject_id)


class TransientSinkError(MonitoringError):
    """Raised by sinks; the core logs it and keeps ticking."""
    reason = "sink-failure"


class InvariantViolation(MonitoringError):
    """Configuration or programming error. Raised at load time, never per tick."""
    reason = "invariant-violation"
