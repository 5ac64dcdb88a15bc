"""What-if testing: project hypothetical KPI values against current performance."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping

from pulse.errors import NotFoundError
from pulse.periods import resolve_period
from pulse.store import Store, current_actual
from pulse.utils import round_half_up

AMPLIFICATION = 0.1
IMPACT_BAND = 5.0  # percent change either side of neutral


@dataclass
class ScenarioOutcome:
    name: str
    input_value: float
    change_percent: float
    projected_outcome: float
    impact: str  # positive | negative | neutral
    confidence: float


@dataclass
class ScenarioResult:
    kpi_id: int
    current_value: float
    scenarios: list[ScenarioOutcome] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def project(name: str, input_value: float, current_value: float) -> ScenarioOutcome:
    change = 0.0 if current_value == 0 else (input_value - current_value) / current_value * 100
    projected = input_value * (1 + change / 100 * AMPLIFICATION)
    if change > IMPACT_BAND:
        impact = "positive"
    elif change < -IMPACT_BAND:
        impact = "negative"
    else:
        impact = "neutral"
    return ScenarioOutcome(
        name=name,
        input_value=input_value,
        change_percent=round_half_up(change, 2),
        projected_outcome=round_half_up(projected, 2),
        impact=impact,
        confidence=round_half_up(max(0.5, 1 - abs(change) / 100), 2),
    )


def recommend(outcomes: list[ScenarioOutcome]) -> list[str]:
    positive = [o.name for o in outcomes if o.impact == "positive"]
    negative = [o.name for o in outcomes if o.impact == "negative"]
    recs: list[str] = []
    if positive:
        recs.append(f"Consider implementing strategies similar to: {', '.join(positive)}")
    if negative:
        recs.append(f"Avoid strategies that could lead to: {', '.join(negative)}")
    if not recs:
        recs.append("All scenarios show neutral impact. Consider more aggressive strategies for improvement.")
    return recs


class ScenarioEngine:
    def __init__(self, store: Store):
        self.store = store

    def current_value(self, kpi_id: int, as_of: date) -> float:
        kpi = self.store.get_kpi(kpi_id)
        if kpi is None:
            raise NotFoundError("KPI", kpi_id)
        period = resolve_period(as_of, kpi.frequency)
        actual = current_actual(self.store.get_period_actuals(kpi.id, period))
        return float(actual.actual_value) if actual is not None else 0.0

    def run_scenario(self, kpi_id: int, scenarios: Iterable[Mapping[str, Any]], as_of: date) -> ScenarioResult:
        """Each scenario is a mapping with an optional ``name`` and a ``value``."""
        current = self.current_value(kpi_id, as_of)
        outcomes = [
            project(s.get("name") or f"Scenario {i + 1}", float(s.get("value") or 0), current)
            for i, s in enumerate(scenarios)
        ]
        return ScenarioResult(
            kpi_id=kpi_id, current_value=current,
            scenarios=outcomes, recommendations=recommend(outcomes),
        )
