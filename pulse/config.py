from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _env(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


class Settings(BaseModel):
    # env values arrive through default_factory, so defaults must be validated too
    model_config = ConfigDict(validate_default=True)

    db_path: Path = Field(default_factory=lambda: Path(_env("PULSE_DB_PATH", str(Path(__file__).parent / "data" / "pulse.db"))))

    # "submission" evaluates every new actual, "approval" waits for the reviewer
    alert_policy: str = Field(default_factory=lambda: _env("PULSE_ALERT_POLICY", "submission"))
    exceeded_margin: float = Field(default_factory=lambda: float(_env("PULSE_EXCEEDED_MARGIN", "0.10")))
    overdue_grace_days: int = Field(default_factory=lambda: int(_env("PULSE_OVERDUE_GRACE_DAYS", "15")))

    anomaly_sigma: float = Field(default_factory=lambda: float(_env("PULSE_ANOMALY_SIGMA", "2.0")))
    anomaly_min_deviation: float = Field(default_factory=lambda: float(_env("PULSE_ANOMALY_MIN_DEVIATION", "0.05")))
    history_years: int = Field(default_factory=lambda: int(_env("PULSE_HISTORY_YEARS", "2")))
    forecast_horizon: int = Field(default_factory=lambda: int(_env("PULSE_FORECAST_HORIZON", "4")))

    department_threshold: dict[str, float] = Field(default_factory=lambda: {
        "green": float(_env("PULSE_DEPT_GREEN", "80")),
        "amber": float(_env("PULSE_DEPT_AMBER", "60")),
        "red": float(_env("PULSE_DEPT_RED", "40")),
    })

    webhook_url: str = Field(default_factory=lambda: os.getenv("PULSE_WEBHOOK_URL", "").strip())
    webhook_timeout_seconds: float = Field(default_factory=lambda: float(_env("PULSE_WEBHOOK_TIMEOUT", "10")))

    @field_validator("alert_policy")
    @classmethod
    def policy_must_be_known(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("submission", "approval"):
            raise ValueError("alert_policy must be 'submission' or 'approval'")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
