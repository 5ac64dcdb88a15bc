"""Alert engine: turn a submission into at most one alert, and manage the
alert lifecycle (unread -> read -> resolved).

Decision order for a higher-is-better KPI (first match wins):

1. below the red cutoff            -> critical threshold_breach
2. below the green cutoff          -> high threshold_breach
3. above target by the margin (10%) -> low target_exceeded
4. otherwise                        -> no alert

Lower-is-better KPIs mirror each comparison.

Rule 2 uses the green cutoff, not amber, so the whole amber band raises a
high alert (70 against a 100 target with 80/60/40 bands is high, not silent).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pulse.config import Settings, get_settings
from pulse.errors import AlertStateError, NotFoundError
from pulse.evaluator import LOWER_IS_BETTER, Evaluation, Threshold, evaluate
from pulse.models import KPI, Actual, Alert, Target
from pulse.notifier import Notifier, dispatch
from pulse.periods import Period, resolve_period
from pulse.store import Store, current_actual

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertDecision:
    type: str
    severity: str
    cutoff: str | None = None  # threshold band that was crossed


def classify_alert(
    actual_value: float,
    target_value: float,
    threshold: Threshold,
    polarity: str,
    exceeded_margin: float = 0.10,
) -> AlertDecision | None:
    """Pick the alert (if any) a submitted value warrants."""
    red = threshold.cutoff("red", target_value)
    green = threshold.cutoff("green", target_value)

    if polarity == LOWER_IS_BETTER:
        if actual_value > red:
            return AlertDecision("threshold_breach", "critical", "red")
        if actual_value > green:
            return AlertDecision("threshold_breach", "high", "green")
        if actual_value < target_value * (1 - exceeded_margin):
            return AlertDecision("target_exceeded", "low")
        return None

    if actual_value < red:
        return AlertDecision("threshold_breach", "critical", "red")
    if actual_value < green:
        return AlertDecision("threshold_breach", "high", "green")
    if actual_value > target_value * (1 + exceeded_margin):
        return AlertDecision("target_exceeded", "low")
    return None


def _fmt(value: float) -> str:
    return f"{value:g}"


def _alert_text(kpi: KPI, decision: AlertDecision, value: float, target_value: float,
                threshold: Threshold) -> tuple[str, str]:
    lower = kpi.polarity == LOWER_IS_BETTER
    if decision.type == "target_exceeded":
        beat = abs(value - target_value) / target_value * 100 if target_value else 0
        return (
            f"Success: {kpi.name} Exceeded Target",
            f"{kpi.name} value ({_fmt(value)}) has {'beaten' if lower else 'exceeded'} "
            f"target ({_fmt(target_value)}) by {round(beat)}%",
        )
    direction = "risen above" if lower else "fallen below"
    if decision.severity == "critical":
        return (
            f"Critical: {kpi.name} {'Above' if lower else 'Below'} Red Threshold",
            f"{kpi.name} value ({_fmt(value)}) has {direction} critical threshold "
            f"({_fmt(threshold.red)}% of target: {_fmt(target_value)})",
        )
    return (
        f"Warning: {kpi.name} Outside Green Threshold",
        f"{kpi.name} value ({_fmt(value)}) has {direction} target threshold "
        f"({_fmt(threshold.green)}% of target: {_fmt(target_value)})",
    )


def emit_alert(store: Store, notifier: Notifier | None, **fields: Any) -> Alert:
    """Persist an alert, commit it, then hand it to the notifier."""
    alert = store.create_alert(**fields)
    store.commit()
    log.info("Alert created (%s/%s): %s", alert.type, alert.severity, alert.title)
    dispatch(notifier, alert)
    return alert


class AlertEngine:
    def __init__(self, store: Store, notifier: Notifier | None = None, settings: Settings | None = None):
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()

    # -- submission evaluation ----------------------------------------------

    def on_submission(self, kpi: KPI, target: Target, actual: Actual) -> Alert | None:
        """Evaluate one recorded actual; emit at most one alert.

        Threshold/zero-target problems raise; the submission workflow decides
        whether that fails anything.
        """
        threshold = Threshold.from_mapping(target.threshold)
        value = float(actual.actual_value)
        target_value = float(target.target_value)
        evaluation: Evaluation = evaluate(value, target_value, threshold, kpi.polarity)

        decision = classify_alert(value, target_value, threshold, kpi.polarity,
                                  self.settings.exceeded_margin)
        if decision is None:
            return None

        title, description = _alert_text(kpi, decision, value, target_value, threshold)
        return emit_alert(
            self.store, self.notifier,
            type=decision.type, severity=decision.severity,
            title=title, description=description,
            kpi_id=kpi.id, department_id=kpi.department_id,
            triggered_by=actual.submitted_by,
            details={
                "actual_id": actual.id, "actual_value": value,
                "target_id": target.id, "target_value": target_value,
                "period": Period(target.year, target.quarter).label,
                "status": evaluation.status, "progress": evaluation.progress,
                "cutoff": decision.cutoff,
            },
        )

    def evaluate_submission(self, actual_id: int) -> Alert | None:
        """Look up the actual's KPI and target, then run :meth:`on_submission`.

        Missing rows mean there is nothing to evaluate against.
        """
        actual = self.store.get_actual(actual_id)
        if actual is None:
            log.warning("Threshold check skipped: actual %s not found", actual_id)
            return None
        kpi = self.store.get_kpi(actual.kpi_id)
        if kpi is None:
            log.warning("Threshold check skipped: KPI %s not found", actual.kpi_id)
            return None
        target = self.store.get_target(actual.target_id)
        if target is None:
            log.info("Threshold check skipped: no target %s for KPI %s", actual.target_id, kpi.name)
            return None
        return self.on_submission(kpi, target, actual)

    # -- overdue submissions --------------------------------------------------

    def check_overdue(self, as_of: date) -> list[Alert]:
        """Flag KPIs whose previous period closed without a live submission."""
        grace = timedelta(days=self.settings.overdue_grace_days)
        created: list[Alert] = []
        for kpi in self.store.get_kpis():
            period = resolve_period(as_of, kpi.frequency).previous()
            if as_of <= period.end + grace:
                continue
            target = self.store.get_period_target(kpi.id, period)
            if target is None:
                continue
            if current_actual(self.store.get_period_actuals(kpi.id, period)) is not None:
                continue
            open_alerts = self.store.get_alerts(kpi_id=kpi.id, type="overdue_submission", is_resolved=False)
            if any(a.details.get("period") == period.label for a in open_alerts):
                continue
            created.append(emit_alert(
                self.store, self.notifier,
                type="overdue_submission", severity="medium",
                title=f"Overdue: {kpi.name} Submission for {period.label}",
                description=(
                    f"No submission recorded for {kpi.name} for {period.label} "
                    f"(period ended {period.end.isoformat()})"
                ),
                kpi_id=kpi.id, department_id=kpi.department_id,
                details={"period": period.label, "target_id": target.id,
                         "due": (period.end + grace).isoformat()},
            ))
        return created

    # -- lifecycle --------------------------------------------------------------

    def get(self, alert_id: int) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    def mark_read(self, alert_id: int) -> Alert:
        alert = self.get(alert_id)
        if not alert.is_read:
            alert.is_read = True
            self.store.commit()
        return alert

    def mark_resolved(self, alert_id: int, resolver_id: int | None, at: datetime | None = None) -> Alert:
        alert = self.get(alert_id)
        if alert.is_resolved:
            raise AlertStateError(f"Alert {alert_id} is already resolved")
        alert.is_resolved = True
        alert.resolved_by = resolver_id
        alert.resolved_at = at or datetime.now(UTC)
        self.store.commit()
        return alert

    def list_alerts(self, **filters: Any) -> list[Alert]:
        return self.store.get_alerts(**filters)
