"""Error taxonomy of the retention engine.

Each disposal failure maps to one of these exceptions. Whether a failure is
retried is decided by the executor from the matching ``FailureReason``;
legal-hold and policy conditions are surfaced, never retried blindly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from retention_engine.db.models.base import FailureReason

if TYPE_CHECKING:
    from retention_engine.services.compliance import ComplianceViolation


class RetentionEngineError(Exception):
    """Base exception for retention engine errors."""

    pass


class DisposalFailure(RetentionEngineError):
    """Base for failures that end a disposal attempt.

    Attributes:
        reason: Reason code persisted on the job.
    """

    reason: FailureReason = FailureReason.DISPOSAL_EXECUTION_FAILED


class PolicyUnresolvedError(DisposalFailure):
    """Raised when a legal-basis code has no registered policy.

    Such records are never disposed automatically.
    """

    reason = FailureReason.POLICY_UNRESOLVED

    def __init__(self, legal_basis_code: str) -> None:
        super().__init__(f"No retention policy registered for legal basis {legal_basis_code!r}")
        self.legal_basis_code = legal_basis_code


class LegalHoldActiveError(DisposalFailure):
    """Raised when a legal hold forbids disposal. Never retried automatically."""

    reason = FailureReason.LEGAL_HOLD_ACTIVE

    def __init__(self, record_type: str, record_id: str, detail: str | None = None) -> None:
        message = f"Legal hold active on {record_type}/{record_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.record_type = record_type
        self.record_id = record_id


class RecordNotDueError(DisposalFailure):
    """Raised when a queued record is no longer due at verification time."""

    reason = FailureReason.RECORD_NOT_DUE


class RecordNotFoundError(DisposalFailure):
    """Raised when the host no longer returns the record."""

    reason = FailureReason.RECORD_NOT_FOUND


class ArchivalFailedError(DisposalFailure):
    """Raised when the pre-disposal archive cannot be written.

    Fatal in production; degraded to a warning elsewhere.
    """

    reason = FailureReason.ARCHIVAL_FAILED


class DisposalExecutionFailedError(DisposalFailure):
    """Raised when a disposal method fails. Retried with backoff."""

    reason = FailureReason.DISPOSAL_EXECUTION_FAILED


class CertificationFailedError(DisposalFailure):
    """Raised when a disposal certificate cannot be sealed or stored.

    The record is not considered disposed until certification succeeds.
    """

    reason = FailureReason.CERTIFICATION_FAILED


class DisposalInterruptedError(DisposalFailure):
    """Raised when a disposal cut short by a crash cannot be completed safely.

    The destructive call may have reached the host, so the job is never
    retried automatically and an emergency alert is raised.
    """

    reason = FailureReason.DISPOSAL_INTERRUPTED


class ComplianceViolationDetectedError(RetentionEngineError):
    """Raised when a disposal happened before the statutory minimum.

    Non-blocking: the disposal already happened, the violation is recorded
    and surfaced in the run report.
    """

    def __init__(self, violation: ComplianceViolation) -> None:
        super().__init__(
            f"{violation.record_type}/{violation.record_id} disposed "
            f"{violation.days_early} day(s) before the {violation.legal_basis_code} minimum"
        )
        self.violation = violation


class ConcurrentRunDetectedError(RetentionEngineError):
    """Raised when another scheduler instance holds the run lease."""

    def __init__(self, lease_name: str, holder: str | None = None) -> None:
        message = f"Lease {lease_name!r} is held by another instance"
        if holder:
            message = f"{message} ({holder})"
        super().__init__(message)
        self.lease_name = lease_name
        self.holder = holder


class LeaseLostError(RetentionEngineError):
    """Raised inside a held lease block when the lease could not be renewed."""

    def __init__(self, lease_name: str) -> None:
        super().__init__(f"Lease {lease_name!r} was lost while held; the guarded run was stopped")
        self.lease_name = lease_name


class InvalidTransitionError(RetentionEngineError):
    """Raised when a job is not in the state a transition expects."""

    pass


class ProductionGuardError(RetentionEngineError):
    """Raised when a real destructive run in production lacks an explicit override."""

    pass


class StoreError(RetentionEngineError):
    """Raised when a persistence operation fails."""

    pass


class JobNotFoundError(StoreError):
    """Raised when a job cannot be found."""

    pass


class JobStoreError(StoreError):
    """Raised when the job store cannot complete an operation."""

    pass


class AuditStoreError(StoreError):
    """Raised when the audit store cannot complete an operation."""

    pass


class CertificateStoreError(StoreError):
    """Raised when certificates, manifests or violations cannot be stored."""

    pass
