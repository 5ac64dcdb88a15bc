"""Typed errors raised by the evaluation core."""
from __future__ import annotations


class PulseError(Exception):
    """Base class for evaluation, alerting and forecasting errors."""


class InvalidFrequencyError(PulseError):
    def __init__(self, frequency: str):
        super().__init__(f"Unknown reporting frequency: {frequency!r}")
        self.frequency = frequency


class InvalidThresholdError(PulseError):
    """Threshold triple is incomplete or ordered against the KPI polarity."""


class DivisionByZeroError(PulseError):
    """Target value of zero with a nonzero actual."""


class InsufficientHistoryError(PulseError):
    """Not enough per-period history to fit a forecast."""
    def __init__(self, kpi_id: int, points: int, required: int):
        super().__init__(
            f"Insufficient historical data for forecasting KPI {kpi_id}: "
            f"{points} period(s) available, {required} required"
        )
        self.kpi_id = kpi_id
        self.points = points
        self.required = required


class NotFoundError(PulseError):
    def __init__(self, label: str, entity_id: int | None):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


class AlertStateError(PulseError):
    """Illegal alert lifecycle transition."""


class ReviewError(PulseError):
    """Illegal review transition for a submission."""


class SubmissionError(PulseError):
    """Submission references a target of another KPI or carries bad data."""
