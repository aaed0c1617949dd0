"""Retention job model.

One row per disposal of one record. Jobs are claimed by workers with
SELECT ... FOR UPDATE SKIP LOCKED and every state change is a conditional
UPDATE guarded by the expected current state, so two workers can never
both advance the same job.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, Enum, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.models.base import (
    Base,
    DisposalMethod,
    FailureReason,
    JobState,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class RetentionJobRecord(Base):
    """Persisted disposal job for a single record."""

    __tablename__ = "retention_jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    record_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    legal_basis_code: Mapped[str] = mapped_column(String(100), nullable=False)

    disposal_method: Mapped[DisposalMethod] = mapped_column(
        Enum(DisposalMethod, name="disposal_method", create_constraint=True),
        nullable=False,
    )
    status: Mapped[JobState] = mapped_column(
        Enum(JobState, name="retention_job_state", create_constraint=True),
        nullable=False,
        default=JobState.QUEUED,
    )

    # Durable retry/deferral time; a job is not claimable before it
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Lease held by the worker currently owning the job
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[OptionalTimestampTZ]

    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[FailureReason | None] = mapped_column(
        Enum(FailureReason, name="retention_failure_reason", create_constraint=True),
        nullable=True,
    )

    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Progress captured between phases so a resumed job never repeats work
    pre_disposal_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    archive_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Written just before the destructive call: {"started_at", "source_timestamp"}
    disposal_intent: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    disposal_result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    disposed_at: Mapped[OptionalTimestampTZ]
    certificate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_retention_jobs_claim", "status", "run_at"),
        Index("ix_retention_jobs_tenant_status", "tenant_id", "status"),
        # At most one unfinished job per record and mode
        Index(
            "uq_retention_jobs_active_record",
            "record_type",
            "record_id",
            "dry_run",
            unique=True,
            postgresql_where=text("status NOT IN ('COMPLETED', 'FAILED')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RetentionJobRecord(job_id={self.job_id}, record={self.record_type}/"
            f"{self.record_id}, status={self.status.value})>"
        )
