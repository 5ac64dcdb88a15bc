"""Reporting periods: map calendar dates onto (year, quarter) buckets."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta

from pulse.errors import InvalidFrequencyError
from pulse.models import FREQUENCIES


@dataclass(frozen=True, order=True)
class Period:
    """A reporting period. ``quarter`` is None for yearly KPIs."""
    year: int
    quarter: int | None = None

    @property
    def label(self) -> str:
        return f"Q{self.quarter} {self.year}" if self.quarter else str(self.year)

    @property
    def start(self) -> date:
        if self.quarter is None:
            return date(self.year, 1, 1)
        return date(self.year, (self.quarter - 1) * 3 + 1, 1)

    @property
    def end(self) -> date:
        return self.next().start - timedelta(days=1)

    def next(self) -> Period:
        if self.quarter is None:
            return Period(self.year + 1)
        if self.quarter == 4:
            return Period(self.year + 1, 1)
        return Period(self.year, self.quarter + 1)

    def previous(self) -> Period:
        if self.quarter is None:
            return Period(self.year - 1)
        if self.quarter == 1:
            return Period(self.year - 1, 4)
        return Period(self.year, self.quarter - 1)


def resolve_period(on: date, frequency: str) -> Period:
    """Return the period *on* falls in for a KPI reported at *frequency*.

    Monthly KPIs are targeted per quarter, so they resolve like quarterly ones.
    """
    if frequency not in FREQUENCIES:
        raise InvalidFrequencyError(frequency)
    if frequency == "yearly":
        return Period(on.year)
    return Period(on.year, math.ceil(on.month / 3))


def history_periods(as_of: date, frequency: str, years: int = 2) -> list[Period]:
    """Ordered periods from the start of ``as_of.year - (years - 1)`` up to and
    including the period containing *as_of*."""
    current = resolve_period(as_of, frequency)
    first_year = as_of.year - (years - 1)
    period = Period(first_year) if current.quarter is None else Period(first_year, 1)
    out: list[Period] = []
    while period <= current:
        out.append(period)
        period = period.next()
    return out
