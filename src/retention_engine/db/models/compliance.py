"""Compliance violation model."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.models.base import Base, TimestampTZ, UUIDPrimaryKey


class ComplianceViolationRecord(Base):
    """A disposal that happened before the statutory minimum retention."""

    __tablename__ = "compliance_violations"

    violation_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    record_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    legal_basis_code: Mapped[str] = mapped_column(String(100), nullable=False)
    certificate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    required_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    days_early: Mapped[int] = mapped_column(Integer, nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
