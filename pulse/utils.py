"""Shared utility functions used across Pulse modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves toward +inf: 2.5 -> 3, -2.5 -> -2, 0.125 -> 0.13 at 2 digits."""
    # str() keeps the shortest repr, so 0.125 stays 0.125 instead of 0.12499...
    scaled = Decimal(str(value)).scaleb(digits) + Decimal("0.5")
    return float(scaled.to_integral_value(rounding=ROUND_FLOOR).scaleb(-digits))


def as_utc(value: datetime | None) -> datetime:
    """Normalize a datetime for comparison. SQLite hands back naive values."""
    if value is None:
        return datetime.min.replace(tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
