from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pulse import services
from pulse.db import get_session, init_db
from pulse.errors import InsufficientHistoryError, NotFoundError, PulseError
from pulse.importer import import_workbook
from pulse.periods import Period, resolve_period
from pulse.schemas import (
    ActualOut,
    ActualReview,
    ActualSubmit,
    AlertOut,
    AlertUpdate,
    AnomalyOut,
    AuditLogOut,
    DepartmentScoreOut,
    ForecastOut,
    ImportResult,
    KPIStatusOut,
    OrganizationSummaryOut,
    ScenarioOut,
    ScenarioRequest,
    SubmissionOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Pulse",
    version="0.1.0",
    description=(
        "KPI performance API: record period actuals against targets, evaluate "
        "them into green/amber/red, raise alerts, and forecast trends. "
        "All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Actuals", "description": "Submit and review KPI actuals."},
        {"name": "Alerts", "description": "Threshold, anomaly and overdue alerts."},
        {"name": "Analytics", "description": "Forecasts, scenarios and anomaly checks."},
        {"name": "Dashboard", "description": "Department and organisation roll-ups."},
        {"name": "Audit", "description": "Read-only trail of submissions, reviews and alert updates."},
        {"name": "Import", "description": "Bulk import reference data from XLSX."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InsufficientHistoryError)
async def insufficient_history_handler(request: Request, exc: InsufficientHistoryError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "points": exc.points})


@app.exception_handler(PulseError)
async def pulse_error_handler(request: Request, exc: PulseError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_analytics(session: Session = Depends(db_session)) -> services.Analytics:
    return services.Analytics(session)


def _submission(actual, alert) -> dict:
    return {
        "actual": services.actual_dict(actual),
        "alert": services.alert_dict(alert) if alert is not None else None,
    }


def _check_quarter(quarter: int) -> None:
    if not 1 <= quarter <= 4:
        raise HTTPException(400, "quarter must be between 1 and 4")


# ---------------------------------------------------------------------------
# Routes: Actuals
# ---------------------------------------------------------------------------


@app.post("/api/actuals", response_model=SubmissionOut, status_code=201,
          tags=["Actuals"], summary="Submit an actual value against a period target")
def submit_actual(body: ActualSubmit, analytics: services.Analytics = Depends(get_analytics)):
    actual, alert = services.submit_actual(
        analytics, kpi_id=body.kpi_id, target_id=body.target_id,
        actual_value=body.actual_value, submitted_by=body.submitted_by,
        evidence_files=body.evidence_files, comments=body.comments,
    )
    return _submission(actual, alert)


@app.get("/api/actuals/{kpi_id}/{year}", response_model=list[ActualOut],
         tags=["Actuals"], summary="List actuals for a KPI in a year (optionally one quarter)")
def list_actuals(
    kpi_id: int, year: int,
    quarter: int | None = Query(None, ge=1, le=4),
    analytics: services.Analytics = Depends(get_analytics),
):
    return [services.actual_dict(a) for a in analytics.store.get_actuals(kpi_id, year, quarter)]


@app.patch("/api/actuals/{actual_id}/review", response_model=SubmissionOut,
           tags=["Actuals"], summary="Approve or reject a pending actual")
def review_actual(actual_id: int, body: ActualReview,
                        analytics: services.Analytics = Depends(get_analytics)):
    actual, alert = services.review_actual(
        analytics, actual_id, status=body.status,
        reviewer_id=body.reviewer_id, review_comments=body.review_comments,
    )
    return _submission(actual, alert)


# ---------------------------------------------------------------------------
# Routes: Alerts (batch before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/alerts", response_model=list[AlertOut], tags=["Alerts"], summary="List alerts")
def list_alerts(
    is_read: bool | None = Query(None),
    is_resolved: bool | None = Query(None),
    department_id: int | None = Query(None),
    kpi_id: int | None = Query(None),
    analytics: services.Analytics = Depends(get_analytics),
):
    alerts = analytics.alerts.list_alerts(
        is_read=is_read, is_resolved=is_resolved, department_id=department_id, kpi_id=kpi_id,
    )
    return [services.alert_dict(a) for a in alerts]


@app.post("/api/alerts/overdue", response_model=list[AlertOut], tags=["Alerts"],
          summary="Raise overdue-submission alerts for periods closed without data")
def check_overdue(as_of: date | None = Query(None),
                        analytics: services.Analytics = Depends(get_analytics)):
    return [services.alert_dict(a) for a in analytics.alerts.check_overdue(as_of or date.today())]


@app.patch("/api/alerts/{alert_id}", response_model=AlertOut, tags=["Alerts"],
           summary="Mark an alert read and/or resolved")
def update_alert(alert_id: int, body: AlertUpdate,
                       analytics: services.Analytics = Depends(get_analytics)):
    alert = services.update_alert(
        analytics, alert_id, is_read=body.is_read, is_resolved=body.is_resolved, user_id=body.user_id,
    )
    return services.alert_dict(alert)


# ---------------------------------------------------------------------------
# Routes: Audit
# ---------------------------------------------------------------------------


@app.get("/api/audit-logs", response_model=list[AuditLogOut], tags=["Audit"],
         summary="List audit entries, newest first")
def list_audit_logs(
    resource_type: str | None = Query(None),
    resource_id: int | None = Query(None),
    user_id: int | None = Query(None),
    analytics: services.Analytics = Depends(get_analytics),
):
    entries = analytics.store.get_audit_logs(
        resource_type=resource_type, resource_id=resource_id, user_id=user_id,
    )
    return [services.audit_dict(e) for e in entries]


# ---------------------------------------------------------------------------
# Routes: Analytics
# ---------------------------------------------------------------------------


@app.get("/api/analytics/forecast/{kpi_id}", response_model=ForecastOut,
         tags=["Analytics"], summary="Forecast the next periods from the KPI's trend")
def forecast(kpi_id: int, as_of: date | None = Query(None),
                   analytics: services.Analytics = Depends(get_analytics)):
    return services.result_dict(analytics.forecasts.forecast(kpi_id, as_of or date.today()))


@app.post("/api/analytics/scenario", response_model=ScenarioOut,
          tags=["Analytics"], summary="Project hypothetical values against current performance")
def scenario(body: ScenarioRequest, analytics: services.Analytics = Depends(get_analytics)):
    result = analytics.scenarios.run_scenario(
        body.kpi_id, [s.model_dump() for s in body.scenarios], body.as_of or date.today(),
    )
    return services.result_dict(result)


@app.post("/api/analytics/anomaly/{kpi_id}", response_model=AnomalyOut,
          tags=["Analytics"], summary="Check the latest period for an anomalous swing")
def anomaly(kpi_id: int, as_of: date | None = Query(None),
                  analytics: services.Analytics = Depends(get_analytics)):
    return services.result_dict(analytics.anomalies.detect(kpi_id, as_of or date.today()))


# ---------------------------------------------------------------------------
# Routes: Dashboard
# ---------------------------------------------------------------------------


@app.get("/api/dashboard/departments/{year}/{quarter}", response_model=list[DepartmentScoreOut],
         tags=["Dashboard"], summary="Composite performance per active department")
def department_performance(year: int, quarter: int,
                                 analytics: services.Analytics = Depends(get_analytics)):
    _check_quarter(quarter)
    return [services.result_dict(d) for d in analytics.aggregator.department_performance(year, quarter)]


@app.get("/api/dashboard/summary/{year}/{quarter}", response_model=OrganizationSummaryOut,
         tags=["Dashboard"], summary="Organisation-wide quick stats")
def organization_summary(year: int, quarter: int,
                               analytics: services.Analytics = Depends(get_analytics)):
    _check_quarter(quarter)
    return analytics.aggregator.organization_summary(year, quarter)


@app.get("/api/dashboard/critical/{year}/{quarter}", response_model=list[KPIStatusOut],
         tags=["Dashboard"], summary="KPIs in the red band, worst first")
def critical_kpis(year: int, quarter: int,
                        analytics: services.Analytics = Depends(get_analytics)):
    _check_quarter(quarter)
    return [services.result_dict(k) for k in analytics.aggregator.critical_kpis(year, quarter)]


@app.get("/api/periods/current", tags=["Dashboard"], summary="Resolve today's reporting period")
def current_period(frequency: str = Query("quarterly"), on: date | None = Query(None)):
    period: Period = resolve_period(on or date.today(), frequency)
    return {"year": period.year, "quarter": period.quarter, "label": period.label}


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import departments, pillars, KPIs and targets from XLSX")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_workbook(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("pulse.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
