"""Shared fixtures: in-memory SQLite plus small factories for seeding KPI data."""
from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from pulse.config import Settings
from pulse.models import KPI, Actual, Base, Department, Target
from pulse.notifier import NullNotifier
from pulse.services import Analytics


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        db_path=":memory:", alert_policy="submission", webhook_url="",
        exceeded_margin=0.10, overdue_grace_days=15, anomaly_sigma=2.0,
        anomaly_min_deviation=0.05, history_years=2, forecast_horizon=4,
        department_threshold={"green": 80, "amber": 60, "red": 40},
    )


@pytest.fixture()
def analytics(session: Session, settings: Settings) -> Analytics:
    return Analytics(session, notifier=NullNotifier(), settings=settings)


@pytest.fixture()
def department(session: Session) -> Department:
    dept = Department(name="Finance", code="FIN")
    session.add(dept)
    session.commit()
    return dept


class Factory:
    """Seed helpers bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def department(self, name: str, code: str) -> Department:
        dept = Department(name=name, code=code)
        self.session.add(dept)
        self.session.commit()
        return dept

    def kpi(self, department: Department, name: str = "Revenue", **fields) -> KPI:
        kpi = KPI(name=name, department_id=department.id, **fields)
        self.session.add(kpi)
        self.session.commit()
        return kpi

    def target(self, kpi: KPI, year: int, quarter: int | None, value: float = 100,
               threshold: dict | None = None) -> Target:
        target = Target(
            kpi_id=kpi.id, year=year, quarter=quarter, target_value=value,
            threshold_json=json.dumps(threshold or {"green": 100, "amber": 80, "red": 60}),
        )
        self.session.add(target)
        self.session.commit()
        return target

    def actual(self, target: Target, value: float, status: str = "approved",
               submitted_at: datetime | None = None) -> Actual:
        actual = Actual(
            kpi_id=target.kpi_id, target_id=target.id, actual_value=value, status=status,
            submitted_at=submitted_at or datetime(target.year, 1, 1, tzinfo=UTC),
        )
        self.session.add(actual)
        self.session.commit()
        return actual

    def series(self, kpi: KPI, periods: list[tuple[int, int | None]], values: list[float]) -> None:
        for (year, quarter), value in zip(periods, values):
            self.actual(self.target(kpi, year, quarter), value)


@pytest.fixture()
def factory(session: Session) -> Factory:
    return Factory(session)
