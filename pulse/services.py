"""Shared business logic for the Pulse API and MCP server.

:class:`Analytics` wires the evaluation components to one session-backed
store, so callers construct it per request instead of sharing singletons.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from pulse.aggregation import Aggregator
from pulse.alerts import AlertEngine
from pulse.anomaly import AnomalyDetector
from pulse.config import Settings, get_settings
from pulse.errors import NotFoundError, ReviewError, SubmissionError
from pulse.forecast import ForecastEngine
from pulse.models import KPI, Actual, Alert, AuditLog, Target
from pulse.notifier import Notifier, build_notifier
from pulse.periods import Period
from pulse.scenario import ScenarioEngine
from pulse.store import SqlStore

log = logging.getLogger(__name__)

REVIEW_STATUSES = ("approved", "rejected")


class Analytics:
    def __init__(self, session: Session, notifier: Notifier | None = None, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.notifier = notifier if notifier is not None else build_notifier(self.settings)
        self.store = SqlStore(session)
        self.alerts = AlertEngine(self.store, self.notifier, self.settings)
        self.anomalies = AnomalyDetector(self.store, self.notifier, self.settings)
        self.forecasts = ForecastEngine(self.store, self.settings)
        self.scenarios = ScenarioEngine(self.store)
        self.aggregator = Aggregator(self.store, self.settings)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def alert_dict(alert: Alert) -> dict:
    return {
        "id": alert.id, "type": alert.type, "severity": alert.severity,
        "title": alert.title, "description": alert.description,
        "kpi_id": alert.kpi_id, "department_id": alert.department_id,
        "triggered_by": alert.triggered_by,
        "is_read": alert.is_read, "is_resolved": alert.is_resolved,
        "resolved_by": alert.resolved_by, "resolved_at": _iso(alert.resolved_at),
        "metadata": alert.details, "created_at": _iso(alert.created_at),
    }


def actual_dict(actual: Actual) -> dict:
    target = actual.target
    return {
        "id": actual.id, "kpi_id": actual.kpi_id, "target_id": actual.target_id,
        "period": Period(target.year, target.quarter).label if target else None,
        "actual_value": actual.actual_value, "submitted_by": actual.submitted_by,
        "submitted_at": _iso(actual.submitted_at),
        "evidence_files": actual.evidence_files, "comments": actual.comments,
        "status": actual.status, "reviewed_by": actual.reviewed_by,
        "reviewed_at": _iso(actual.reviewed_at), "review_comments": actual.review_comments,
    }


def audit_dict(entry: AuditLog) -> dict:
    return {
        "id": entry.id, "user_id": entry.user_id, "action": entry.action,
        "resource_type": entry.resource_type, "resource_id": entry.resource_id,
        "old_values": entry.old_values, "new_values": entry.new_values,
        "created_at": _iso(entry.created_at),
    }


def result_dict(result: Any) -> dict:
    """Plain dict of a forecast/scenario/anomaly/aggregation dataclass."""
    return dataclasses.asdict(result)


# ---------------------------------------------------------------------------
# Submission workflow
# ---------------------------------------------------------------------------


def _evaluate_best_effort(analytics: Analytics, kpi: KPI, target: Target, actual: Actual) -> Alert | None:
    """Alerting never fails the submission that triggered it."""
    try:
        return analytics.alerts.on_submission(kpi, target, actual)
    except Exception as exc:
        analytics.session.rollback()
        log.warning("Alert evaluation failed for actual %s (%s): %s", actual.id, kpi.name, exc)
        return None


def submit_actual(
    analytics: Analytics, *, kpi_id: int, target_id: int, actual_value: float,
    submitted_by: int | None = None, evidence_files: list[str] | None = None,
    comments: str = "", submitted_at: datetime | None = None,
) -> tuple[Actual, Alert | None]:
    """Record a pending actual, commit it, then run threshold alerting if the
    alert policy evaluates on submission."""
    store = analytics.store
    kpi = store.get_kpi(kpi_id)
    if kpi is None:
        raise NotFoundError("KPI", kpi_id)
    target = store.get_target(target_id)
    if target is None:
        raise NotFoundError("Target", target_id)
    if target.kpi_id != kpi.id:
        raise SubmissionError(f"Target {target_id} does not belong to KPI {kpi_id}")

    actual = Actual(
        kpi_id=kpi.id, target_id=target.id, actual_value=float(actual_value),
        submitted_by=submitted_by,
        submitted_at=submitted_at or datetime.now(UTC),
        evidence_files_json=json.dumps(evidence_files or []),
        comments=comments or "", status="pending",
    )
    analytics.session.add(actual)
    analytics.session.flush()
    analytics.store.create_audit_log(
        action="submit", resource_type="actual", resource_id=actual.id, user_id=submitted_by,
        new_values={
            "kpi_id": kpi.id, "target_id": target.id, "actual_value": actual.actual_value,
            "evidence_files": evidence_files or [], "comments": actual.comments,
        },
    )
    analytics.session.commit()

    alert = None
    if analytics.settings.alert_policy == "submission":
        alert = _evaluate_best_effort(analytics, kpi, target, actual)
    return actual, alert


def review_actual(
    analytics: Analytics, actual_id: int, *, status: str, reviewer_id: int | None,
    review_comments: str = "", at: datetime | None = None,
) -> tuple[Actual, Alert | None]:
    """Approve or reject a pending actual. Under the ``approval`` policy an
    approval triggers threshold alerting."""
    actual = analytics.store.get_actual(actual_id)
    if actual is None:
        raise NotFoundError("Actual", actual_id)
    if status not in REVIEW_STATUSES:
        raise ReviewError(f"Review status must be one of {', '.join(REVIEW_STATUSES)}, got {status!r}")
    if actual.status != "pending":
        raise ReviewError(f"Actual {actual_id} was already {actual.status}")

    previous = actual.status
    actual.status = status
    actual.reviewed_by = reviewer_id
    actual.reviewed_at = at or datetime.now(UTC)
    actual.review_comments = review_comments or ""
    analytics.store.create_audit_log(
        action="review", resource_type="actual", resource_id=actual.id, user_id=reviewer_id,
        old_values={"status": previous},
        new_values={"status": status, "review_comments": actual.review_comments},
    )
    analytics.session.commit()

    alert = None
    if status == "approved" and analytics.settings.alert_policy == "approval":
        kpi = analytics.store.get_kpi(actual.kpi_id)
        target = analytics.store.get_target(actual.target_id)
        if kpi is not None and target is not None:
            alert = _evaluate_best_effort(analytics, kpi, target, actual)
    return actual, alert


def update_alert(
    analytics: Analytics, alert_id: int, *, is_read: bool | None = None,
    is_resolved: bool | None = None, user_id: int | None = None,
) -> Alert:
    """Apply read/resolve flags. Flags can only move forward."""
    alert = analytics.alerts.get(alert_id)
    before = {"is_read": alert.is_read, "is_resolved": alert.is_resolved}
    if is_read:
        alert = analytics.alerts.mark_read(alert_id)
    if is_resolved:
        alert = analytics.alerts.mark_resolved(alert_id, user_id)
    after = {"is_read": alert.is_read, "is_resolved": alert.is_resolved}
    if after != before:
        analytics.store.create_audit_log(
            action="update", resource_type="alert", resource_id=alert.id, user_id=user_id,
            old_values=before, new_values=after,
        )
        analytics.session.commit()
    return alert