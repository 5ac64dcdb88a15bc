"""Statistical outlier detection over a KPI's per-period history.

The latest period is compared against the two periods before it. A value is
anomalous when it sits more than ``sigma`` population standard deviations from
the baseline mean *and* the swing is material (more than
``min_deviation`` of the baseline mean). The materiality floor keeps a
near-flat baseline from flagging ordinary noise and gives the zero-variance
case a defined answer.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date

from pulse.alerts import emit_alert
from pulse.config import Settings, get_settings
from pulse.notifier import Notifier
from pulse.store import Store, period_series
from pulse.utils import round_half_up

log = logging.getLogger(__name__)

MIN_POINTS = 3
BASELINE_SIZE = 2


@dataclass
class AnomalyResult:
    kpi_id: int
    is_anomaly: bool
    points: int = 0
    recent: float | None = None
    baseline_mean: float | None = None
    baseline_stddev: float | None = None
    period: str | None = None
    alert_id: int | None = None


def mean_stddev(values: list[float]) -> tuple[float, float]:
    """Mean and population standard deviation."""
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def is_anomalous(recent: float, baseline: list[float], sigma: float = 2.0,
                 min_deviation: float = 0.05) -> bool:
    mean, stddev = mean_stddev(baseline)
    deviation = abs(recent - mean)
    if deviation <= sigma * stddev:
        return False
    if mean == 0:
        return deviation > 0
    return deviation > min_deviation * abs(mean)


class AnomalyDetector:
    def __init__(self, store: Store, notifier: Notifier | None = None, settings: Settings | None = None):
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()

    def detect(self, kpi_id: int, as_of: date) -> AnomalyResult:
        kpi = self.store.get_kpi(kpi_id)
        if kpi is None:
            log.warning("Anomaly detection skipped: KPI %s not found", kpi_id)
            return AnomalyResult(kpi_id=kpi_id, is_anomaly=False)

        series = period_series(self.store, kpi, as_of, self.settings.history_years)
        if len(series) < MIN_POINTS:
            return AnomalyResult(kpi_id=kpi_id, is_anomaly=False, points=len(series))

        period, recent = series[-1]
        baseline = [v for _, v in series[-(BASELINE_SIZE + 1):-1]]
        mean, stddev = mean_stddev(baseline)
        result = AnomalyResult(
            kpi_id=kpi_id,
            is_anomaly=is_anomalous(recent, baseline, self.settings.anomaly_sigma,
                                    self.settings.anomaly_min_deviation),
            points=len(series), recent=recent,
            baseline_mean=mean, baseline_stddev=stddev, period=period.label,
        )
        if not result.is_anomaly:
            return result

        for existing in self.store.get_alerts(kpi_id=kpi_id, type="anomaly_detected", is_resolved=False):
            details = existing.details
            if details.get("period") == period.label and details.get("recent") == recent:
                result.alert_id = existing.id
                return result

        alert = emit_alert(
            self.store, self.notifier,
            type="anomaly_detected", severity="medium",
            title=f"Anomaly Detected: {kpi.name}",
            description=(
                f"Unusual performance detected for {kpi.name}. Current value ({recent:g}) "
                f"significantly differs from recent trend (avg: {round_half_up(mean, 2):g})"
            ),
            kpi_id=kpi.id, department_id=kpi.department_id,
            details={"period": period.label, "recent": recent,
                     "baseline_mean": mean, "baseline_stddev": stddev},
        )
        result.alert_id = alert.id
        return result
