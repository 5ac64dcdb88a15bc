"""Storage collaborators for the evaluation core.

Engines depend on the :class:`Store` protocol only, so tests can hand them a
fake. :class:`SqlStore` is the SQLAlchemy-backed implementation used by the
API, the MCP server and the submission workflow.
"""
from __future__ import annotations

import json
from datetime import UTC, date, datetime
from typing import Any, Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.models import KPI, Actual, Alert, AuditLog, Department, Target
from pulse.periods import Period, history_periods
from pulse.utils import as_utc


class Store(Protocol):
    def get_kpi(self, kpi_id: int) -> KPI | None: ...
    def get_kpis(self, department_id: int | None = None) -> list[KPI]: ...
    def get_departments(self) -> list[Department]: ...
    def get_target(self, target_id: int) -> Target | None: ...
    def get_targets(self, kpi_id: int, year: int, quarter: int | None = None) -> list[Target]: ...
    def get_period_target(self, kpi_id: int, period: Period) -> Target | None: ...
    def get_actual(self, actual_id: int) -> Actual | None: ...
    def get_actuals(self, kpi_id: int, year: int, quarter: int | None = None) -> list[Actual]: ...
    def get_period_actuals(self, kpi_id: int, period: Period) -> list[Actual]: ...
    def create_alert(self, **fields: Any) -> Alert: ...
    def get_alert(self, alert_id: int) -> Alert | None: ...
    def get_alerts(self, **filters: Any) -> list[Alert]: ...
    def create_audit_log(self, **fields: Any) -> AuditLog: ...
    def get_audit_logs(self, **filters: Any) -> list[AuditLog]: ...
    def commit(self) -> None: ...


def current_actual(actuals: Iterable[Actual]) -> Actual | None:
    """The most recent non-rejected submission, ties broken by id."""
    live = [a for a in actuals if a.status != "rejected"]
    if not live:
        return None
    return max(live, key=lambda a: (as_utc(a.submitted_at), a.id or 0))


class SqlStore:
    """:class:`Store` over a SQLAlchemy session. Caller owns the session."""

    def __init__(self, session: Session):
        self.session = session

    # -- reference data -----------------------------------------------------

    def get_kpi(self, kpi_id: int) -> KPI | None:
        return self.session.get(KPI, kpi_id)

    def get_kpis(self, department_id: int | None = None) -> list[KPI]:
        query = select(KPI).where(KPI.is_active.is_(True))
        if department_id is not None:
            query = query.where(KPI.department_id == department_id)
        return list(self.session.execute(query.order_by(KPI.id)).scalars().all())

    def get_departments(self) -> list[Department]:
        query = select(Department).where(Department.is_active.is_(True)).order_by(Department.id)
        return list(self.session.execute(query).scalars().all())

    # -- targets ------------------------------------------------------------

    def get_target(self, target_id: int) -> Target | None:
        return self.session.get(Target, target_id)

    def get_targets(self, kpi_id: int, year: int, quarter: int | None = None) -> list[Target]:
        query = select(Target).where(Target.kpi_id == kpi_id, Target.year == year)
        if quarter is not None:
            query = query.where(Target.quarter == quarter)
        return list(self.session.execute(query.order_by(Target.id)).scalars().all())

    def get_period_target(self, kpi_id: int, period: Period) -> Target | None:
        query = select(Target).where(Target.kpi_id == kpi_id, Target.year == period.year)
        if period.quarter is None:
            query = query.where(Target.quarter.is_(None))
        else:
            query = query.where(Target.quarter == period.quarter)
        return self.session.execute(query).scalars().first()

    # -- actuals ------------------------------------------------------------

    def get_actual(self, actual_id: int) -> Actual | None:
        return self.session.get(Actual, actual_id)

    def get_actuals(self, kpi_id: int, year: int, quarter: int | None = None) -> list[Actual]:
        query = (
            select(Actual).join(Target, Actual.target_id == Target.id)
            .where(Actual.kpi_id == kpi_id, Target.year == year)
        )
        if quarter is not None:
            query = query.where(Target.quarter == quarter)
        return self._ordered(self.session.execute(query).scalars().all())

    def get_period_actuals(self, kpi_id: int, period: Period) -> list[Actual]:
        query = (
            select(Actual).join(Target, Actual.target_id == Target.id)
            .where(Actual.kpi_id == kpi_id, Target.year == period.year)
        )
        if period.quarter is None:
            query = query.where(Target.quarter.is_(None))
        else:
            query = query.where(Target.quarter == period.quarter)
        return self._ordered(self.session.execute(query).scalars().all())

    @staticmethod
    def _ordered(actuals: Iterable[Actual]) -> list[Actual]:
        return sorted(actuals, key=lambda a: (as_utc(a.submitted_at), a.id or 0))

    # -- alerts -------------------------------------------------------------

    def create_alert(self, **fields: Any) -> Alert:
        """Persist a new alert. Always starts unread and unresolved."""
        details = fields.pop("details", None) or {}
        fields.setdefault("created_at", datetime.now(UTC))
        alert = Alert(**fields, metadata_json=json.dumps(details, default=str))
        alert.is_read = False
        alert.is_resolved = False
        self.session.add(alert)
        self.session.flush()
        return alert

    def get_alert(self, alert_id: int) -> Alert | None:
        return self.session.get(Alert, alert_id)

    def get_alerts(
        self, *, is_read: bool | None = None, is_resolved: bool | None = None,
        department_id: int | None = None, kpi_id: int | None = None,
        type: str | None = None, severity: str | None = None,
    ) -> list[Alert]:
        query = select(Alert)
        if is_read is not None:
            query = query.where(Alert.is_read.is_(is_read))
        if is_resolved is not None:
            query = query.where(Alert.is_resolved.is_(is_resolved))
        if department_id is not None:
            query = query.where(Alert.department_id == department_id)
        if kpi_id is not None:
            query = query.where(Alert.kpi_id == kpi_id)
        if type is not None:
            query = query.where(Alert.type == type)
        if severity is not None:
            query = query.where(Alert.severity == severity)
        return list(self.session.execute(query.order_by(Alert.id.desc())).scalars().all())

    # -- audit trail --------------------------------------------------------

    def create_audit_log(
        self, *, action: str, resource_type: str, resource_id: int, user_id: int | None = None,
        old_values: dict | None = None, new_values: dict | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id, action=action, resource_type=resource_type, resource_id=resource_id,
            old_values_json=json.dumps(old_values or {}, default=str),
            new_values_json=json.dumps(new_values or {}, default=str),
            created_at=datetime.now(UTC),
        )
        self.session.add(entry)
        return entry

    def get_audit_logs(
        self, *, resource_type: str | None = None, resource_id: int | None = None,
        user_id: int | None = None,
    ) -> list[AuditLog]:
        """Newest first."""
        query = select(AuditLog)
        if resource_type is not None:
            query = query.where(AuditLog.resource_type == resource_type)
        if resource_id is not None:
            query = query.where(AuditLog.resource_id == resource_id)
        if user_id is not None:
            query = query.where(AuditLog.user_id == user_id)
        return list(self.session.execute(query.order_by(AuditLog.id.desc())).scalars().all())

    def commit(self) -> None:
        self.session.commit()


def period_series(store: Store, kpi: KPI, as_of: date, years: int = 2) -> list[tuple[Period, float]]:
    """One current value per period over the trailing window, skipping empty periods."""
    series: list[tuple[Period, float]] = []
    for period in history_periods(as_of, kpi.frequency, years):
        actual = current_actual(store.get_period_actuals(kpi.id, period))
        if actual is not None:
            series.append((period, float(actual.actual_value)))
    return series
