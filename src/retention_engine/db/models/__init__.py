"""Retention engine database models.

Importing this package registers every table on ``Base.metadata`` for
Alembic autogeneration.
"""

from retention_engine.db.models.audit import AuditEntryRecord
from retention_engine.db.models.base import (
    AuditPhase,
    Base,
    DisposalMethod,
    FailureReason,
    JobState,
)
from retention_engine.db.models.certificates import (
    ArchiveManifestRecord,
    DisposalCertificateRecord,
)
from retention_engine.db.models.compliance import ComplianceViolationRecord
from retention_engine.db.models.jobs import RetentionJobRecord
from retention_engine.db.models.leases import SchedulerLeaseRecord

__all__ = [
    "ArchiveManifestRecord",
    "AuditEntryRecord",
    "AuditPhase",
    "Base",
    "ComplianceViolationRecord",
    "DisposalCertificateRecord",
    "DisposalMethod",
    "FailureReason",
    "JobState",
    "RetentionJobRecord",
    "SchedulerLeaseRecord",
]
