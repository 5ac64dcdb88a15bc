"""Roll KPI evaluations up into department and organisation views.

Department score is the equal-weight mean of the progress (0-100) of every
active KPI that has both a target and a live submission for the period. The
department status re-runs the threshold evaluator on that composite against a
target of 100 using the configured department threshold.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pulse.config import Settings, get_settings
from pulse.errors import PulseError
from pulse.evaluator import STATUS_RANK, Evaluation, evaluate
from pulse.models import KPI, Department
from pulse.periods import Period
from pulse.store import Store, current_actual
from pulse.utils import round_half_up

log = logging.getLogger(__name__)


@dataclass
class KPIStatus:
    kpi_id: int
    name: str
    department_id: int
    period: str
    target_value: float
    actual_value: float
    status: str
    progress: int


@dataclass
class DepartmentScore:
    id: int
    name: str
    code: str
    score: float
    status: str | None
    kpi_count: int
    evaluated_count: int
    trend: float | None
    kpis: list[KPIStatus] = field(default_factory=list)


def kpi_period(kpi: KPI, year: int, quarter: int | None) -> Period:
    return Period(year) if kpi.frequency == "yearly" else Period(year, quarter)


class Aggregator:
    def __init__(self, store: Store, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def kpi_status(self, kpi: KPI, year: int, quarter: int | None) -> KPIStatus | None:
        """Evaluation of *kpi* for the period, or None when there is no data."""
        return self.period_status(kpi, kpi_period(kpi, year, quarter))

    def period_status(self, kpi: KPI, period: Period) -> KPIStatus | None:
        target = self.store.get_period_target(kpi.id, period)
        if target is None:
            return None
        actual = current_actual(self.store.get_period_actuals(kpi.id, period))
        if actual is None:
            return None
        try:
            ev: Evaluation = evaluate(actual.actual_value, target.target_value, target.threshold, kpi.polarity)
        except PulseError as exc:
            log.warning("Cannot evaluate KPI %s for %s: %s", kpi.name, period.label, exc)
            return None
        return KPIStatus(
            kpi_id=kpi.id, name=kpi.name, department_id=kpi.department_id,
            period=period.label, target_value=target.target_value,
            actual_value=actual.actual_value, status=ev.status, progress=ev.progress,
        )

    def _composite(self, periods: dict[KPI, Period]) -> tuple[float | None, list[KPIStatus]]:
        statuses = [s for s in (self.period_status(k, p) for k, p in periods.items()) if s is not None]
        if not statuses:
            return None, []
        return round_half_up(sum(s.progress for s in statuses) / len(statuses), 1), statuses

    def department_score(self, dept: Department, year: int, quarter: int) -> DepartmentScore:
        kpis = self.store.get_kpis(department_id=dept.id)
        current = {k: kpi_period(k, year, quarter) for k in kpis}
        score, statuses = self._composite(current)
        # each KPI against its own previous period, so yearly KPIs compare year on year
        prev_score, _ = self._composite({k: p.previous() for k, p in current.items()})

        status = None
        if score is not None:
            status = evaluate(score, 100, self.settings.department_threshold).status
        trend = None
        if score is not None and prev_score is not None:
            trend = round_half_up(score - prev_score, 1)

        return DepartmentScore(
            id=dept.id, name=dept.name, code=dept.code,
            score=score if score is not None else 0.0,
            status=status, kpi_count=len(kpis), evaluated_count=len(statuses),
            trend=trend, kpis=statuses,
        )

    def _active_kpis(self) -> list[KPI]:
        """Active KPIs whose department is active too."""
        departments = {d.id for d in self.store.get_departments()}
        return [k for k in self.store.get_kpis() if k.department_id in departments]

    def department_performance(self, year: int, quarter: int) -> list[DepartmentScore]:
        return [self.department_score(d, year, quarter) for d in self.store.get_departments()]

    def critical_kpis(self, year: int, quarter: int) -> list[KPIStatus]:
        """Red KPIs for the period, worst progress first."""
        statuses = [self.kpi_status(k, year, quarter) for k in self._active_kpis()]
        red = [s for s in statuses if s is not None and s.status == "red"]
        return sorted(red, key=lambda s: (s.progress, s.kpi_id))

    def organization_summary(self, year: int, quarter: int) -> dict:
        departments = self.department_performance(year, quarter)
        scored = [d for d in departments if d.status is not None]
        trended = [d.trend for d in scored if d.trend is not None]
        statuses = [k for d in departments for k in d.kpis]
        open_alerts = self.store.get_alerts(is_resolved=False)

        on_track = sum(1 for s in statuses if s.status == "green")
        return {
            "year": year,
            "quarter": quarter,
            "overall_performance": round_half_up(sum(d.score for d in scored) / len(scored), 1) if scored else 0.0,
            "active_kpis": sum(d.kpi_count for d in departments),
            "departments": len(departments),
            "alerts": len(open_alerts),
            "trends": {
                "overall_trend": round_half_up(sum(trended) / len(trended), 1) if trended else 0.0,
                "on_track_percentage": round_half_up(on_track / len(statuses) * 100, 1) if statuses else 0.0,
                "need_attention_count": sum(1 for s in statuses if s.status == "amber"),
                "critical_alerts_count": sum(1 for a in open_alerts if a.severity == "critical"),
            },
            "worst_status": min((d.status for d in scored), key=STATUS_RANK.__getitem__, default=None),
        }
