from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.evaluator import Threshold
from pulse.models import FREQUENCIES, KPI, POLARITIES, Department, Pillar, Target

log = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "higher_is_better": {"green": 100.0, "amber": 80.0, "red": 60.0},
    "lower_is_better": {"green": 100.0, "amber": 120.0, "red": 140.0},
}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    """Safely get a column value from a row tuple."""
    return row[idx] if idx < len(row) else None


def _i(value: object) -> int | None:
    """Safely coerce cell value to int, None if missing."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _key(value: str) -> str:
    return value.strip().casefold()


def _rows(ws) -> list[dict[str, object]]:
    """Rows of a sheet keyed by its (case-folded) header row."""
    it = ws.iter_rows(values_only=True)
    header = next(it, None)
    if not header:
        return []
    names = [_key(_s(h)) for h in header]
    out = []
    for row in it:
        if not row or all(v is None for v in row):
            continue
        out.append({name: _col(row, idx) for idx, name in enumerate(names) if name})
    return out


# ---------------------------------------------------------------------------
# Sheet importers
# ---------------------------------------------------------------------------


def _import_departments(session: Session, rows: list[dict], counts: dict[str, int]) -> dict[str, Department]:
    existing = {_key(d.code): d for d in session.execute(select(Department)).scalars().all()}
    for row in rows:
        code = _s(row.get("code"))
        name = _s(row.get("name"))
        if not code or not name:
            continue
        dept = existing.get(_key(code))
        if dept is None:
            dept = Department(code=code, name=name, description=_s(row.get("description")))
            session.add(dept)
            existing[_key(code)] = dept
            counts["departments"] += 1
        else:
            dept.name = name
            dept.description = _s(row.get("description")) or dept.description
            counts["updated"] += 1
    session.flush()
    return existing


def _import_pillars(session: Session, rows: list[dict], counts: dict[str, int]) -> dict[str, Pillar]:
    existing = {_key(p.name): p for p in session.execute(select(Pillar)).scalars().all()}
    for row in rows:
        name = _s(row.get("name"))
        if not name:
            continue
        pillar = existing.get(_key(name))
        order = _i(row.get("order")) or 0
        if pillar is None:
            pillar = Pillar(name=name, description=_s(row.get("description")), order_index=order)
            session.add(pillar)
            existing[_key(name)] = pillar
            counts["pillars"] += 1
        else:
            pillar.description = _s(row.get("description")) or pillar.description
            pillar.order_index = order
            counts["updated"] += 1
    session.flush()
    return existing


def _import_kpis(
    session: Session, rows: list[dict], departments: dict[str, Department],
    pillars: dict[str, Pillar], counts: dict[str, int],
) -> dict[tuple[str, str], KPI]:
    """KPIs are keyed by (department code, KPI name)."""
    existing = {
        (_key(k.department.code), _key(k.name)): k
        for k in session.execute(select(KPI)).scalars().all()
    }
    for row in rows:
        name = _s(row.get("name"))
        dept = departments.get(_key(_s(row.get("department"))))
        if not name or dept is None:
            if name:
                log.warning("Skipping KPI %r: unknown department %r", name, row.get("department"))
            continue
        frequency = _s(row.get("frequency")).lower() or "quarterly"
        if frequency not in FREQUENCIES:
            log.warning("Skipping KPI %r: unknown frequency %r", name, frequency)
            continue
        polarity = _s(row.get("polarity")).lower() or "higher_is_better"
        if polarity not in POLARITIES:
            log.warning("Skipping KPI %r: unknown polarity %r", name, polarity)
            continue
        pillar = pillars.get(_key(_s(row.get("pillar"))))
        fields = {
            "description": _s(row.get("description")),
            "unit": _s(row.get("unit")) or "count",
            "frequency": frequency,
            "polarity": polarity,
            "pillar_id": pillar.id if pillar else None,
        }
        key = (_key(dept.code), _key(name))
        kpi = existing.get(key)
        if kpi is None:
            kpi = KPI(name=name, department_id=dept.id, **fields)
            session.add(kpi)
            existing[key] = kpi
            counts["kpis"] += 1
        else:
            for field, value in fields.items():
                setattr(kpi, field, value)
            counts["updated"] += 1
    session.flush()
    return existing


def _import_targets(
    session: Session, rows: list[dict], kpis: dict[tuple[str, str], KPI], counts: dict[str, int],
) -> None:
    """Targets are keyed by (KPI, year, quarter); a blank quarter is a yearly target."""
    for row in rows:
        kpi = kpis.get((_key(_s(row.get("department"))), _key(_s(row.get("kpi")))))
        year = _i(row.get("year"))
        value = _f(row.get("target"))
        if kpi is None or year is None or value is None:
            log.warning("Skipping target row %s: unknown KPI or missing year/target", row)
            continue
        quarter = _i(row.get("quarter"))
        threshold = Threshold(**{
            band: _f(row.get(band)) if _f(row.get(band)) is not None else default
            for band, default in DEFAULT_THRESHOLDS[kpi.polarity].items()
        })
        threshold.check(kpi.polarity)

        query = select(Target).where(Target.kpi_id == kpi.id, Target.year == year)
        query = query.where(Target.quarter.is_(None) if quarter is None else Target.quarter == quarter)
        target = session.execute(query).scalars().first()
        threshold_json = json.dumps(asdict(threshold))
        if target is None:
            session.add(Target(kpi_id=kpi.id, year=year, quarter=quarter,
                               target_value=value, threshold_json=threshold_json))
            counts["targets"] += 1
        else:
            target.target_value = value
            target.threshold_json = threshold_json
            counts["updated"] += 1
    session.flush()


def import_workbook(file_path: str | Path, session: Session) -> dict[str, int]:
    """Import reference data from an XLSX workbook. Upserts by natural key.

    Recognised sheets (matched case-insensitively): ``Departments``,
    ``Pillars``, ``KPIs`` and ``Targets``. Sheets are imported in dependency
    order so KPI rows can name departments created in the same file.
    """
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    sheets: dict[str, list[dict]] = {}
    for sheet_name in wb.sheetnames:
        lower = sheet_name.casefold()
        if lower in ("departments", "pillars", "kpis", "targets"):
            sheets[lower] = _rows(wb[sheet_name])
    wb.close()

    counts = {"departments": 0, "pillars": 0, "kpis": 0, "targets": 0, "updated": 0}
    try:
        departments = _import_departments(session, sheets.get("departments", []), counts)
        pillars = _import_pillars(session, sheets.get("pillars", []), counts)
        kpis = _import_kpis(session, sheets.get("kpis", []), departments, pillars, counts)
        _import_targets(session, sheets.get("targets", []), kpis, counts)
        session.commit()
    except Exception:
        session.rollback()
        raise

    log.info("Imported %s from %s", counts, file_path.name)
    return counts
