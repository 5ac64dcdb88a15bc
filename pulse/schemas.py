"""Pydantic request/response schemas for the Pulse API."""
from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field, field_validator


class ActualSubmit(BaseModel):
    kpi_id: int
    target_id: int
    actual_value: float
    submitted_by: int | None = None
    evidence_files: list[str] = []
    comments: str = ""


class ActualReview(BaseModel):
    status: str
    reviewer_id: int | None = None
    review_comments: str = ""

    @field_validator("status")
    @classmethod
    def status_must_be_final(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("approved", "rejected"):
            raise ValueError("status must be 'approved' or 'rejected'")
        return v


class ActualOut(BaseModel):
    id: int
    kpi_id: int
    target_id: int
    period: str | None = None
    actual_value: float
    submitted_by: int | None = None
    submitted_at: str | None = None
    evidence_files: list[str] = []
    comments: str = ""
    status: str
    reviewed_by: int | None = None
    reviewed_at: str | None = None
    review_comments: str = ""


class AlertOut(BaseModel):
    id: int
    type: str
    severity: str
    title: str
    description: str
    kpi_id: int | None = None
    department_id: int | None = None
    triggered_by: int | None = None
    is_read: bool
    is_resolved: bool
    resolved_by: int | None = None
    resolved_at: str | None = None
    metadata: dict = {}
    created_at: str | None = None


class AlertUpdate(BaseModel):
    is_read: bool | None = None
    is_resolved: bool | None = None
    user_id: int | None = None


class SubmissionOut(BaseModel):
    actual: ActualOut
    alert: AlertOut | None = None


class AuditLogOut(BaseModel):
    id: int
    user_id: int | None = None
    action: str
    resource_type: str
    resource_id: int
    old_values: dict = {}
    new_values: dict = {}
    created_at: str | None = None


class ForecastPointOut(BaseModel):
    period: str
    predicted_value: float
    confidence: float


class ForecastOut(BaseModel):
    kpi_id: int
    points: list[ForecastPointOut]
    trend: str
    recommendation: str
    slope: float
    intercept: float
    history: list[tuple[str, float]] = []


class ScenarioInput(BaseModel):
    name: str | None = None
    value: float = 0


class ScenarioRequest(BaseModel):
    kpi_id: int
    scenarios: list[ScenarioInput] = Field(default_factory=list)
    as_of: date | None = None


class ScenarioOutcomeOut(BaseModel):
    name: str
    input_value: float
    change_percent: float
    projected_outcome: float
    impact: str
    confidence: float


class ScenarioOut(BaseModel):
    kpi_id: int
    current_value: float
    scenarios: list[ScenarioOutcomeOut]
    recommendations: list[str]


class AnomalyOut(BaseModel):
    kpi_id: int
    is_anomaly: bool
    points: int = 0
    recent: float | None = None
    baseline_mean: float | None = None
    baseline_stddev: float | None = None
    period: str | None = None
    alert_id: int | None = None


class KPIStatusOut(BaseModel):
    kpi_id: int
    name: str
    department_id: int
    period: str
    target_value: float
    actual_value: float
    status: str
    progress: int


class DepartmentScoreOut(BaseModel):
    id: int
    name: str
    code: str
    score: float
    status: str | None = None
    kpi_count: int
    evaluated_count: int
    trend: float | None = None
    kpis: list[KPIStatusOut] = []


class SummaryTrends(BaseModel):
    overall_trend: float
    on_track_percentage: float
    need_attention_count: int
    critical_alerts_count: int


class OrganizationSummaryOut(BaseModel):
    year: int
    quarter: int
    overall_performance: float
    active_kpis: int
    departments: int
    alerts: int
    trends: SummaryTrends
    worst_status: str | None = None


class ImportResult(BaseModel):
    departments: int
    pillars: int
    kpis: int
    targets: int
    updated: int
