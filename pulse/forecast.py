"""Linear trend forecasting over a KPI's per-period history."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from pulse.config import Settings, get_settings
from pulse.errors import InsufficientHistoryError, NotFoundError
from pulse.store import Store, period_series
from pulse.utils import round_half_up

log = logging.getLogger(__name__)

MIN_POINTS = 2
TREND_SLOPE = 0.5  # native KPI units per period

RECOMMENDATIONS = {
    "decreasing": (
        "Performance is trending downward. Consider implementing corrective "
        "measures to improve KPI performance."
    ),
    "increasing": (
        "Performance is trending upward. Continue current strategies and "
        "consider scaling successful initiatives."
    ),
    "stable": (
        "Performance is stable. Monitor for any changes and consider "
        "optimization opportunities."
    ),
}


@dataclass
class ForecastPoint:
    period: str
    predicted_value: float
    confidence: float


@dataclass
class ForecastResult:
    kpi_id: int
    points: list[ForecastPoint]
    trend: str
    recommendation: str
    slope: float
    intercept: float
    history: list[tuple[str, float]]


def fit_line(values: list[float]) -> tuple[float, float]:
    """Ordinary least squares of value against index 0..n-1. Returns (slope, intercept)."""
    n = len(values)
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def trend_label(slope: float) -> str:
    if slope > TREND_SLOPE:
        return "increasing"
    if slope < -TREND_SLOPE:
        return "decreasing"
    return "stable"


def step_confidence(step: int) -> float:
    """1.0 for the next period, 0.1 less per step after, never below 0.6."""
    return round_half_up(max(0.6, 1 - step * 0.1), 2)


class ForecastEngine:
    def __init__(self, store: Store, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def forecast(self, kpi_id: int, as_of: date) -> ForecastResult:
        kpi = self.store.get_kpi(kpi_id)
        if kpi is None:
            raise NotFoundError("KPI", kpi_id)

        series = period_series(self.store, kpi, as_of, self.settings.history_years)
        if len(series) < MIN_POINTS:
            raise InsufficientHistoryError(kpi_id, len(series), MIN_POINTS)

        values = [v for _, v in series]
        slope, intercept = fit_line(values)
        n = len(values)

        points: list[ForecastPoint] = []
        period = series[-1][0]
        for step in range(self.settings.forecast_horizon):
            period = period.next()
            predicted = max(0.0, intercept + slope * (n + step))
            points.append(ForecastPoint(
                period=period.label,
                predicted_value=predicted,
                confidence=step_confidence(step),
            ))

        trend = trend_label(slope)
        log.debug("Forecast for KPI %s: slope=%.3f intercept=%.3f trend=%s", kpi_id, slope, intercept, trend)
        return ForecastResult(
            kpi_id=kpi_id, points=points, trend=trend,
            recommendation=RECOMMENDATIONS[trend],
            slope=slope, intercept=intercept,
            history=[(p.label, v) for p, v in series],
        )
