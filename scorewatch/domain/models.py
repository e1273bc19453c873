from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")

DISCOVER_STATUS_COMPLETED = "completed"

ALERT_TYPE_NARRATIVE_DRIFT = "narrative_drift"
ALERT_SEVERITY_WARNING = "warning"
ALERT_SEVERITY_CRITICAL = "critical"
ALERT_STATUS_NEW = "new"


def _utc_now() -> datetime:
    # Assign timestamps in Python so runs written in one transaction still order deterministically.
    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    name: Mapped[str] = mapped_column(String)
    # Set once by the first completed recalculation, never overwritten.
    baseline_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DiscoverRun(Base):
    __tablename__ = "discover_runs"
    __table_args__ = (
        Index("ix_discover_runs_tenant_status_created", "tenant_id", "status", "created_at"),
    )

    # Upstream data-collection artifact; a tenant is only scored once one has completed.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class ScoreRun(Base):
    __tablename__ = "score_runs"
    __table_args__ = (
        Index("ix_score_runs_tenant_run_date", "tenant_id", "run_date"),
    )

    # Append-only; rows are never updated after insert.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"))
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    components: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    # Control band computed from prior runs: mean, stddev, ucl, lcl.
    stats: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    run_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id", ondelete="CASCADE"))
    type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    trigger_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Lifecycle after "new" (acknowledged/resolved) is owned by the dashboard.
    status: Mapped[str] = mapped_column(String, default=ALERT_STATUS_NEW)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
