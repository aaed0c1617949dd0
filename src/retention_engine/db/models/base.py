"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column type annotations
- Enum types shared by models and services
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all retention engine models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class JobState(enum.Enum):
    """Disposal job lifecycle states.

    States:
        QUEUED: Waiting to be claimed by a worker
        VERIFYING: Re-checking legal hold and due-ness
        ARCHIVING: Writing the pre-disposal archive
        DISPOSING: Executing the disposal method
        CERTIFYING: Sealing the disposal certificate
        COMPLETED: Disposal certified (terminal)
        FAILED: Disposal abandoned (terminal)
        RETRY_SCHEDULED: Waiting for a durable backoff to elapse
    """

    QUEUED = "queued"
    VERIFYING = "verifying"
    ARCHIVING = "archiving"
    DISPOSING = "disposing"
    CERTIFYING = "certifying"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in IN_FLIGHT_STATES


IN_FLIGHT_STATES = frozenset(
    {JobState.VERIFYING, JobState.ARCHIVING, JobState.DISPOSING, JobState.CERTIFYING}
)


class DisposalMethod(enum.Enum):
    """Disposal actions applied to a due record.

    Values:
        SOFT_DELETE: Flag and metadata only, content retained
        ANONYMIZE: Strip identifying fields, retain structure
        PERMANENT_DELETE: Irreversible removal
        ARCHIVE: Move to cold storage and mark archived
        REDACT: Remove sensitive sub-fields only
    """

    SOFT_DELETE = "soft_delete"
    ANONYMIZE = "anonymize"
    PERMANENT_DELETE = "permanent_delete"
    ARCHIVE = "archive"
    REDACT = "redact"

    @property
    def requires_archive(self) -> bool:
        """Whether a pre-disposal archive must exist before this method runs."""
        return self in (DisposalMethod.PERMANENT_DELETE, DisposalMethod.ARCHIVE)

    @property
    def removes_record(self) -> bool:
        """Whether the host record is gone once the method has been applied."""
        return self == DisposalMethod.PERMANENT_DELETE


class FailureReason(enum.Enum):
    """Reason codes recorded on failed disposal attempts."""

    LEGAL_HOLD_ACTIVE = "legal_hold_active"
    POLICY_UNRESOLVED = "policy_unresolved"
    RECORD_NOT_DUE = "record_not_due"
    RECORD_NOT_FOUND = "record_not_found"
    ARCHIVAL_FAILED = "archival_failed"
    DISPOSAL_EXECUTION_FAILED = "disposal_execution_failed"
    CERTIFICATION_FAILED = "certification_failed"
    DISPOSAL_INTERRUPTED = "disposal_interrupted"

    @property
    def is_retryable(self) -> bool:
        return self in (
            FailureReason.DISPOSAL_EXECUTION_FAILED,
            FailureReason.CERTIFICATION_FAILED,
        )


class AuditPhase(enum.Enum):
    """Position of an audit entry relative to the destructive action."""

    BEFORE = "before"
    AFTER = "after"
