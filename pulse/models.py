from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pulse.utils import json_parse

FREQUENCIES = ("monthly", "quarterly", "yearly")
POLARITIES = ("higher_is_better", "lower_is_better")
ACTUAL_STATUSES = ("pending", "approved", "rejected")
ALERT_TYPES = ("threshold_breach", "target_exceeded", "anomaly_detected", "overdue_submission")
SEVERITIES = ("low", "medium", "high", "critical")


class Base(DeclarativeBase):
    pass


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    kpis: Mapped[list[KPI]] = relationship("KPI", back_populates="department")


class Pillar(Base):
    __tablename__ = "pillars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    kpis: Mapped[list[KPI]] = relationship("KPI", back_populates="pillar")


class KPI(Base):
    __tablename__ = "kpis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    unit: Mapped[str] = mapped_column(String(50), default="count")  # percentage | count | ratio | days
    data_type: Mapped[str] = mapped_column(String(20), default="numeric")  # numeric | boolean
    frequency: Mapped[str] = mapped_column(String(20), default="quarterly")  # monthly | quarterly | yearly
    polarity: Mapped[str] = mapped_column(String(20), default="higher_is_better")
    department_id: Mapped[int] = mapped_column(Integer, ForeignKey("departments.id"), nullable=False)
    pillar_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("pillars.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    department: Mapped[Department] = relationship("Department", back_populates="kpis")
    pillar: Mapped[Pillar | None] = relationship("Pillar", back_populates="kpis")
    targets: Mapped[list[Target]] = relationship("Target", back_populates="kpi", cascade="all, delete-orphan")


class Target(Base):
    __tablename__ = "targets"
    __table_args__ = (UniqueConstraint("kpi_id", "year", "quarter", name="uq_target_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kpi_id: Mapped[int] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None for yearly targets
    target_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_json: Mapped[str] = mapped_column(Text, default='{"green": 100, "amber": 80, "red": 60}')
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    kpi: Mapped[KPI] = relationship("KPI", back_populates="targets")
    actuals: Mapped[list[Actual]] = relationship("Actual", back_populates="target", cascade="all, delete-orphan")

    @property
    def threshold(self) -> dict[str, float]:
        return json_parse(self.threshold_json, {})


class Actual(Base):
    __tablename__ = "actuals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kpi_id: Mapped[int] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=False)
    target_id: Mapped[int] = mapped_column(Integer, ForeignKey("targets.id"), nullable=False)
    actual_value: Mapped[float] = mapped_column(Float, nullable=False)
    submitted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    evidence_files_json: Mapped[str] = mapped_column(Text, default="[]")
    comments: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | approved | rejected
    reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_comments: Mapped[str] = mapped_column(Text, default="")

    target: Mapped[Target] = relationship("Target", back_populates="actuals")

    @property
    def evidence_files(self) -> list[str]:
        return json_parse(self.evidence_files_json, [])


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # low | medium | high | critical
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    kpi_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=True)
    department_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("departments.id"), nullable=True)
    triggered_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def details(self) -> dict:
        return json_parse(self.metadata_json, {})


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # submit | review | update
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)  # actual | alert
    resource_id: Mapped[int] = mapped_column(Integer, nullable=False)
    old_values_json: Mapped[str] = mapped_column(Text, default="{}")
    new_values_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def old_values(self) -> dict:
        return json_parse(self.old_values_json, {})

    @property
    def new_values(self) -> dict:
        return json_parse(self.new_values_json, {})
