from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from datetime import date

from mcp.server.fastmcp import FastMCP

from pulse import services
from pulse.db import current_db_path, get_session, init_db
from pulse.errors import PulseError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def pulse_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Pulse",
    instructions=(
        "Pulse tracks organisational KPIs against period targets. "
        "Use these tools to read department performance, forecast KPI trends, "
        "test what-if scenarios and review open alerts. "
        "Start with get_organization_summary(year, quarter) for an overview, then "
        "get_department_performance(year, quarter) to drill down."
    ),
    lifespan=pulse_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _analytics():
    session = get_session()
    try:
        yield services.Analytics(session)
    finally:
        session.close()


def _as_of(value: str | None) -> date:
    return date.fromisoformat(value) if value else date.today()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("pulse://overview")
def pulse_overview() -> str:
    """Overview of Pulse: data model, status bands and alert types."""
    return json.dumps({
        "system": "Pulse: KPI performance evaluation, alerting and forecasting",
        "database": str(current_db_path() or ""),
        "data_model": {
            "department": "Organisational unit owning KPIs. Identified by a short unique code.",
            "pillar": "Strategic grouping of KPIs across departments.",
            "kpi": "A measured indicator with a reporting frequency (monthly, quarterly, yearly) and polarity.",
            "target": "Goal value for a KPI in one year (and quarter), with green/amber/red cutoffs in percent of target.",
            "actual": "A submitted value against a target. Pending until approved or rejected.",
            "alert": "Raised on threshold breaches, exceeded targets, anomalies and overdue submissions.",
        },
        "status_bands": {
            "green": "At or beyond the green cutoff.",
            "amber": "Between the amber and green cutoffs.",
            "red": "Short of the amber cutoff.",
        },
        "alert_types": {
            "threshold_breach": "critical below the red cutoff, high below the green cutoff.",
            "target_exceeded": "low severity, more than 10% beyond target.",
            "anomaly_detected": "medium severity, latest period far outside the two before it.",
            "overdue_submission": "medium severity, previous period closed without data.",
        },
        "workflow": [
            "1. get_organization_summary(year, quarter) for quick stats.",
            "2. get_department_performance(year, quarter) for per-department composites.",
            "3. forecast_kpi(kpi_id) to project the next periods.",
            "4. run_kpi_scenario(kpi_id, values) to test hypothetical outcomes.",
            "5. list_alerts(is_resolved=False) to review what needs attention.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Dashboard
# ---------------------------------------------------------------------------


@mcp.tool()
def get_organization_summary(year: int, quarter: int) -> dict:
    """Organisation-wide performance, KPI counts, open alerts and trend for a quarter."""
    with _analytics() as analytics:
        return analytics.aggregator.organization_summary(year, quarter)


@mcp.tool()
def get_department_performance(year: int, quarter: int) -> list[dict]:
    """Composite score, status and quarter-on-quarter trend for every active department."""
    with _analytics() as analytics:
        return [services.result_dict(d) for d in analytics.aggregator.department_performance(year, quarter)]


@mcp.tool()
def get_critical_kpis(year: int, quarter: int) -> list[dict]:
    """KPIs currently in the red band, lowest progress first."""
    with _analytics() as analytics:
        return [services.result_dict(k) for k in analytics.aggregator.critical_kpis(year, quarter)]


# ---------------------------------------------------------------------------
# Tools: Analytics
# ---------------------------------------------------------------------------


@mcp.tool()
def forecast_kpi(kpi_id: int, as_of: str | None = None) -> dict:
    """Forecast the next four periods of a KPI from its linear trend.

    Args:
        kpi_id: KPI to forecast.
        as_of: ISO date the history ends at (default today).
    """
    with _analytics() as analytics:
        try:
            return services.result_dict(analytics.forecasts.forecast(kpi_id, _as_of(as_of)))
        except (PulseError, ValueError) as exc:
            return {"error": str(exc)}


@mcp.tool()
def run_kpi_scenario(kpi_id: int, values: list[float], as_of: str | None = None) -> dict:
    """Project hypothetical values for a KPI against its current actual.

    Args:
        kpi_id: KPI to test.
        values: Hypothetical actual values, one scenario each.
        as_of: ISO date whose period supplies the current value (default today).
    """
    with _analytics() as analytics:
        try:
            result = analytics.scenarios.run_scenario(
                kpi_id, [{"value": v} for v in values], _as_of(as_of),
            )
            return services.result_dict(result)
        except (PulseError, ValueError) as exc:
            return {"error": str(exc)}


@mcp.tool()
def check_kpi_anomaly(kpi_id: int, as_of: str | None = None) -> dict:
    """Check whether a KPI's latest period is a statistical outlier; raises an alert if so."""
    with _analytics() as analytics:
        try:
            return services.result_dict(analytics.anomalies.detect(kpi_id, _as_of(as_of)))
        except (PulseError, ValueError) as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Tools: Alerts
# ---------------------------------------------------------------------------


@mcp.tool()
def list_alerts(
    is_read: bool | None = None, is_resolved: bool | None = None,
    department_id: int | None = None, kpi_id: int | None = None, limit: int = 50,
) -> list[dict]:
    """List alerts, newest first.

    Args:
        is_read: Filter by read flag.
        is_resolved: Filter by resolved flag.
        department_id: Only alerts for this department.
        kpi_id: Only alerts for this KPI.
        limit: Max results (default 50, max 500).
    """
    with _analytics() as analytics:
        alerts = analytics.alerts.list_alerts(
            is_read=is_read, is_resolved=is_resolved, department_id=department_id, kpi_id=kpi_id,
        )
        return [services.alert_dict(a) for a in alerts[:max(1, min(limit, 500))]]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Pulse MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
