"""Audit entry model.

Append-only, hash-chained per tenant. The engine writes exactly one BEFORE
and one AFTER entry per disposal attempt, enforced by the unique
(job_id, attempt, phase) constraint.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, DateTime, Enum, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.models.base import AuditPhase, Base, UUIDPrimaryKey


class AuditEntryRecord(Base):
    """Immutable audit entry surrounding a destructive action."""

    __tablename__ = "audit_entries"

    entry_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Chain position within the tenant stream
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[AuditPhase] = mapped_column(
        Enum(AuditPhase, name="audit_phase", create_constraint=True),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(100), nullable=False)

    record_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    pre_disposal_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    certificate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "seq_no", name="uq_audit_entries_tenant_seq"),
        UniqueConstraint("job_id", "attempt", "phase", name="uq_audit_entries_job_attempt_phase"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntryRecord(tenant_id={self.tenant_id}, seq_no={self.seq_no}, "
            f"phase={self.phase.value})>"
        )
