"""Record disposal intent and separate real from dry-run jobs.

Revision ID: 002
Revises: 001
Create Date: 2026-11-01 00:00:00.000000

- retention_jobs.disposal_intent: written just before the destructive call,
  so a job reclaimed after a crash in DISPOSING can tell whether the host
  may already have been changed
- retention_failure_reason gains DISPOSAL_INTERRUPTED
- uq_retention_jobs_active_record now includes dry_run: a pending dry-run
  job no longer blocks a real job for the same record, and the reverse
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

UNFINISHED = sa.text("status NOT IN ('COMPLETED', 'FAILED')")


def upgrade() -> None:
    op.add_column(
        "retention_jobs",
        sa.Column("disposal_intent", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.execute("ALTER TYPE retention_failure_reason ADD VALUE IF NOT EXISTS 'DISPOSAL_INTERRUPTED'")

    op.drop_index("uq_retention_jobs_active_record", table_name="retention_jobs")
    op.create_index(
        "uq_retention_jobs_active_record",
        "retention_jobs",
        ["record_type", "record_id", "dry_run"],
        unique=True,
        postgresql_where=UNFINISHED,
    )


def downgrade() -> None:
    # PostgreSQL cannot drop an enum label; DISPOSAL_INTERRUPTED stays defined
    op.drop_index("uq_retention_jobs_active_record", table_name="retention_jobs")
    op.execute("DELETE FROM retention_jobs WHERE dry_run AND status NOT IN ('COMPLETED', 'FAILED')")
    op.create_index(
        "uq_retention_jobs_active_record",
        "retention_jobs",
        ["record_type", "record_id"],
        unique=True,
        postgresql_where=UNFINISHED,
    )
    op.drop_column("retention_jobs", "disposal_intent")
