"""Initial schema for the retention engine.

Creates:
- retention_jobs: durable per-record disposal jobs
- disposal_certificates / archive_manifests: append-only evidence
- audit_entries: per-tenant hash-chained audit trail
- scheduler_leases: expiring run ownership tokens
- compliance_violations: disposals earlier than the statutory minimum

Enum labels are the Python member names, which is what SQLAlchemy stores.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    disposal_method = postgresql.ENUM(
        "SOFT_DELETE",
        "ANONYMIZE",
        "PERMANENT_DELETE",
        "ARCHIVE",
        "REDACT",
        name="disposal_method",
        create_type=False,
    )
    disposal_method.create(op.get_bind(), checkfirst=True)

    retention_job_state = postgresql.ENUM(
        "QUEUED",
        "VERIFYING",
        "ARCHIVING",
        "DISPOSING",
        "CERTIFYING",
        "COMPLETED",
        "FAILED",
        "RETRY_SCHEDULED",
        name="retention_job_state",
        create_type=False,
    )
    retention_job_state.create(op.get_bind(), checkfirst=True)

    retention_failure_reason = postgresql.ENUM(
        "LEGAL_HOLD_ACTIVE",
        "POLICY_UNRESOLVED",
        "RECORD_NOT_DUE",
        "RECORD_NOT_FOUND",
        "ARCHIVAL_FAILED",
        "DISPOSAL_EXECUTION_FAILED",
        "CERTIFICATION_FAILED",
        name="retention_failure_reason",
        create_type=False,
    )
    retention_failure_reason.create(op.get_bind(), checkfirst=True)

    audit_phase = postgresql.ENUM("BEFORE", "AFTER", name="audit_phase", create_type=False)
    audit_phase.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # Jobs
    # =========================================================================
    op.create_table(
        "retention_jobs",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("legal_basis_code", sa.String(100), nullable=False),
        sa.Column("disposal_method", disposal_method, nullable=False),
        sa.Column("status", retention_job_state, nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_reason", retention_failure_reason, nullable=True),
        sa.Column("dry_run", sa.Boolean(), nullable=False),
        sa.Column("pre_disposal_hash", sa.String(64), nullable=True),
        sa.Column("archive_id", sa.String(100), nullable=True),
        sa.Column("disposal_result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("disposed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("certificate_id", sa.String(100), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_retention_jobs")),
    )
    op.create_index("ix_retention_jobs_claim", "retention_jobs", ["status", "run_at"], unique=False)
    op.create_index(
        "ix_retention_jobs_tenant_status",
        "retention_jobs",
        ["tenant_id", "status"],
        unique=False,
    )
    op.create_index(
        "uq_retention_jobs_active_record",
        "retention_jobs",
        ["record_type", "record_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('COMPLETED', 'FAILED')"),
    )

    # =========================================================================
    # Evidence
    # =========================================================================
    op.create_table(
        "disposal_certificates",
        sa.Column("certificate_id", sa.String(100), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("legal_basis_code", sa.String(100), nullable=False),
        sa.Column("disposal_method", disposal_method, nullable=False),
        sa.Column("pre_disposal_hash", sa.String(64), nullable=True),
        sa.Column("archive_id", sa.String(100), nullable=True),
        sa.Column(
            "compliance_references", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column("system_version", sa.String(50), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("certificate_hash", sa.String(64), nullable=False),
        sa.Column("signature", sa.Text(), nullable=True),
        sa.Column("signing_key_id", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("certificate_id", name=op.f("pk_disposal_certificates")),
        sa.UniqueConstraint("job_id", name=op.f("uq_disposal_certificates_job_id")),
    )
    op.create_index(
        op.f("ix_disposal_certificates_tenant_id"),
        "disposal_certificates",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_disposal_certificates_record_id"),
        "disposal_certificates",
        ["record_id"],
        unique=False,
    )

    op.create_table(
        "archive_manifests",
        sa.Column("archive_id", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(100), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("file_hash", sa.String(64), nullable=False),
        sa.Column("storage_location", sa.String(1000), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("record_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("simulated", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("archive_id", name=op.f("pk_archive_manifests")),
    )

    # =========================================================================
    # Audit trail
    # =========================================================================
    op.create_table(
        "audit_entries",
        sa.Column(
            "entry_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("seq_no", sa.BigInteger(), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("prev_entry_hash", sa.String(64), nullable=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("phase", audit_phase, nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("outcome", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("pre_disposal_hash", sa.String(64), nullable=True),
        sa.Column("certificate_id", sa.String(100), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_audit_entries")),
        sa.UniqueConstraint("tenant_id", "seq_no", name="uq_audit_entries_tenant_seq"),
        sa.UniqueConstraint(
            "job_id", "attempt", "phase", name="uq_audit_entries_job_attempt_phase"
        ),
    )
    op.create_index(op.f("ix_audit_entries_job_id"), "audit_entries", ["job_id"], unique=False)

    # =========================================================================
    # Scheduling and compliance
    # =========================================================================
    op.create_table(
        "scheduler_leases",
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("name", name=op.f("pk_scheduler_leases")),
    )

    op.create_table(
        "compliance_violations",
        sa.Column(
            "violation_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("legal_basis_code", sa.String(100), nullable=False),
        sa.Column("certificate_id", sa.String(100), nullable=True),
        sa.Column("required_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("days_early", sa.Integer(), nullable=False),
        sa.Column("operation_id", sa.String(100), nullable=True),
        sa.PrimaryKeyConstraint("violation_id", name=op.f("pk_compliance_violations")),
    )
    op.create_index(
        op.f("ix_compliance_violations_tenant_id"),
        "compliance_violations",
        ["tenant_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("compliance_violations")
    op.drop_table("scheduler_leases")
    op.drop_table("audit_entries")
    op.drop_table("archive_manifests")
    op.drop_table("disposal_certificates")
    op.drop_table("retention_jobs")

    op.execute("DROP TYPE IF EXISTS audit_phase")
    op.execute("DROP TYPE IF EXISTS retention_failure_reason")
    op.execute("DROP TYPE IF EXISTS retention_job_state")
    op.execute("DROP TYPE IF EXISTS disposal_method")
