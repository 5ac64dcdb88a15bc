from __future__ import annotations

import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from pulse import services
from pulse.config import get_settings
from pulse.db import init_db, session_scope
from pulse.errors import PulseError
from pulse.importer import import_workbook

app = typer.Typer(help="Pulse KPI performance evaluation, alerting and forecasting")
console = Console()

STATUS_STYLE = {"green": "green", "amber": "yellow", "red": "red", None: "dim"}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db-path", help="SQLite database file (overrides PULSE_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_path:
        os.environ["PULSE_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    scalars = [(k, _format_scalar(v)) for k, v in payload.items() if not isinstance(v, (dict, list))]
    _render_table(title, scalars)
    for key, value in payload.items():
        if isinstance(value, dict):
            _render_table(f"{title} · {key}", [(k, _format_scalar(v)) for k, v in value.items()],
                          border_style="magenta")


def _print_rows(title: str, columns: list[str], rows: list[dict[str, Any]], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in columns:
        table.add_column(column)
    for row in rows:
        cells = [_format_scalar(row.get(c)) for c in columns]
        if "status" in row:
            style = STATUS_STYLE.get(row["status"], "")
            cells = [f"[{style}]{c}[/{style}]" if style else c for c in cells]
        table.add_row(*cells)
    console.print(Panel(table, title=f"{title} ({len(rows)})", border_style="cyan"))


def _parse_date(value: str | None) -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter("Date must be YYYY-MM-DD") from exc


def _fail(exc: PulseError) -> None:
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create the database and tables."""
    init_db()
    _print("init-db", {"db_path": str(get_settings().db_path)}, ctx)


@app.command("import-xlsx")
def import_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Workbook with Departments/Pillars/KPIs/Targets sheets."),
) -> None:
    """Upsert reference data from an XLSX workbook."""
    init_db()
    with session_scope() as session:
        try:
            counts = import_workbook(path, session)
        except PulseError as exc:
            _fail(exc)
    _print("import-xlsx", counts, ctx)


@app.command("check-overdue")
def check_overdue_command(
    ctx: typer.Context,
    as_of: str | None = typer.Option(None, help="Reference date YYYY-MM-DD (default today)."),
) -> None:
    """Raise alerts for KPIs whose previous period closed without a submission."""
    on = _parse_date(as_of)
    init_db()
    with session_scope() as session:
        created = services.Analytics(session).alerts.check_overdue(on)
        rows = [services.alert_dict(a) for a in created]
    _print_rows("overdue alerts", ["id", "kpi_id", "severity", "title"], rows, ctx)


@app.command("alerts")
def alerts_command(
    ctx: typer.Context,
    unresolved: bool = typer.Option(False, "--unresolved", help="Only unresolved alerts."),
    kpi_id: int | None = typer.Option(None, help="Only alerts for this KPI."),
) -> None:
    """List alerts, newest first."""
    init_db()
    with session_scope() as session:
        alerts = services.Analytics(session).alerts.list_alerts(
            is_resolved=False if unresolved else None, kpi_id=kpi_id,
        )
        rows = [services.alert_dict(a) for a in alerts]
    _print_rows("alerts", ["id", "type", "severity", "title", "is_read", "is_resolved"], rows, ctx)


@app.command("departments")
def departments_command(ctx: typer.Context, year: int, quarter: int) -> None:
    """Composite performance per active department."""
    init_db()
    with session_scope() as session:
        scores = services.Analytics(session).aggregator.department_performance(year, quarter)
        rows = [services.result_dict(d) for d in scores]
    _print_rows(f"departments Q{quarter} {year}", ["code", "name", "score", "status", "trend", "evaluated_count"], rows, ctx)


@app.command("summary")
def summary_command(ctx: typer.Context, year: int, quarter: int) -> None:
    """Organisation-wide quick stats."""
    init_db()
    with session_scope() as session:
        summary = services.Analytics(session).aggregator.organization_summary(year, quarter)
    _print(f"summary Q{quarter} {year}", summary, ctx)


@app.command("forecast")
def forecast_command(
    ctx: typer.Context,
    kpi_id: int,
    as_of: str | None = typer.Option(None, help="History ends at this date YYYY-MM-DD (default today)."),
) -> None:
    """Forecast the next periods of a KPI from its linear trend."""
    on = _parse_date(as_of)
    init_db()
    with session_scope() as session:
        try:
            result = services.Analytics(session).forecasts.forecast(kpi_id, on)
        except PulseError as exc:
            _fail(exc)
    payload = services.result_dict(result)
    if _wants_json(ctx):
        _print("forecast", payload, ctx)
        return
    _render_table(f"forecast KPI {kpi_id}", [
        ("trend", result.trend), ("slope", _format_scalar(round(result.slope, 3))),
        ("recommendation", result.recommendation),
    ])
    _print_rows("points", ["period", "predicted_value", "confidence"], payload["points"], ctx)


@app.command("anomaly")
def anomaly_command(
    ctx: typer.Context,
    kpi_id: int,
    as_of: str | None = typer.Option(None, help="Reference date YYYY-MM-DD (default today)."),
) -> None:
    """Check a KPI's latest period for an outlier; raises an alert if so."""
    on = _parse_date(as_of)
    init_db()
    with session_scope() as session:
        result = services.Analytics(session).anomalies.detect(kpi_id, on)
    _print(f"anomaly KPI {kpi_id}", services.result_dict(result), ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
