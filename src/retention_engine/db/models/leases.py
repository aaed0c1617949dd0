"""Scheduler lease model.

A lease is an expiring token granting one scheduler instance exclusive
ownership of a named recurring run. A crashed holder loses the lease once
``expires_at`` passes.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.models.base import Base, TimestampTZ


class SchedulerLeaseRecord(Base):
    """Named lease held by one scheduler instance."""

    __tablename__ = "scheduler_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[TimestampTZ]

    def __repr__(self) -> str:
        return f"<SchedulerLeaseRecord(name={self.name}, holder={self.holder})>"
