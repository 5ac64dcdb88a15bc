"""Threshold evaluation: classify an actual against its period target.

Thresholds are percent-of-target cutoffs ``{green, amber, red}``. For
higher-is-better KPIs the cutoffs descend (green >= amber >= red) and a value
must reach a cutoff to earn the band. For lower-is-better KPIs (days to close,
error rates) the cutoffs ascend and a value must stay at or under them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from pulse.errors import DivisionByZeroError, InvalidThresholdError
from pulse.utils import round_half_up

HIGHER_IS_BETTER = "higher_is_better"
LOWER_IS_BETTER = "lower_is_better"

STATUS_RANK = {"red": 0, "amber": 1, "green": 2}


@dataclass(frozen=True)
class Threshold:
    green: float
    amber: float
    red: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | Threshold) -> Threshold:
        if isinstance(raw, Threshold):
            return raw
        try:
            return cls(green=float(raw["green"]), amber=float(raw["amber"]), red=float(raw["red"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidThresholdError(f"Threshold needs numeric green/amber/red: {raw!r}") from exc

    def check(self, polarity: str) -> None:
        if polarity == LOWER_IS_BETTER:
            if not self.green <= self.amber <= self.red:
                raise InvalidThresholdError(
                    f"lower-is-better thresholds must ascend (green <= amber <= red): {self}")
        elif polarity == HIGHER_IS_BETTER:
            if not self.green >= self.amber >= self.red:
                raise InvalidThresholdError(
                    f"higher-is-better thresholds must descend (green >= amber >= red): {self}")
        else:
            raise InvalidThresholdError(f"Unknown polarity: {polarity!r}")

    def cutoff(self, band: str, target_value: float) -> float:
        """Absolute value of a band cutoff for *target_value*."""
        return getattr(self, band) * target_value / 100


@dataclass(frozen=True)
class Evaluation:
    status: str  # green | amber | red
    progress: int  # 0-100


def evaluate(
    actual_value: float,
    target_value: float,
    threshold: Mapping[str, Any] | Threshold,
    polarity: str = HIGHER_IS_BETTER,
) -> Evaluation:
    """Classify *actual_value* into a band and compute progress toward target."""
    th = Threshold.from_mapping(threshold)
    th.check(polarity)

    if target_value == 0:
        if actual_value == 0:
            return Evaluation(status="green", progress=100)
        raise DivisionByZeroError(f"Cannot evaluate actual {actual_value} against a zero target")

    green = th.cutoff("green", target_value)
    amber = th.cutoff("amber", target_value)

    if polarity == LOWER_IS_BETTER:
        if actual_value <= green:
            status = "green"
        elif actual_value <= amber:
            status = "amber"
        else:
            status = "red"
        percent = 100.0 if actual_value <= 0 else target_value * 100 / actual_value
    else:
        if actual_value >= green:
            status = "green"
        elif actual_value >= amber:
            status = "amber"
        else:
            status = "red"
        percent = actual_value * 100 / target_value

    progress = int(max(0, min(100, round_half_up(percent))))
    return Evaluation(status=status, progress=progress)
