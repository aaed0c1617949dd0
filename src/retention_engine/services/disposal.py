"""Disposal executor.

Drives one disposal job through its lifecycle:

    QUEUED -> VERIFYING -> (ARCHIVING) -> DISPOSING -> CERTIFYING -> COMPLETED

Any phase can end the attempt in FAILED, or in RETRY_SCHEDULED when the
failure is retryable and attempts remain. Every state change is a
conditional update in the job store; a worker that lost its job (lease
expired and reclaimed elsewhere) gets an InvalidTransitionError and walks
away without touching the record.

The destructive result and ``disposed_at`` are persisted before the job
enters CERTIFYING. A job claimed again with ``disposed_at`` set skips
straight to certification and reuses the certificate already issued for it.

Just before the destructive call the job records a ``disposal_intent``
(start time and source timestamp). A reclaimed job carrying an intent but
no ``disposed_at`` crashed somewhere around that call. It is verified again
against the pre-disposal hash it already holds. If the record is gone and
the method removes records, the disposal is certified as done. If the
record is gone for any other method, the job fails with
DISPOSAL_INTERRUPTED and an emergency alert.

Each attempt writes exactly one BEFORE and one AFTER audit entry. An attempt
cut short by a crash gets its AFTER entry ("INTERRUPTED") when the job is
next picked up.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from retention_engine.db.models.base import FailureReason, JobState
from retention_engine.services.disposal_methods import execute_disposal
from retention_engine.services.domain import DisposableRecord, DisposalResult
from retention_engine.services.errors import (
    ArchivalFailedError,
    CertificationFailedError,
    ComplianceViolationDetectedError,
    DisposalExecutionFailedError,
    DisposalFailure,
    DisposalInterruptedError,
    InvalidTransitionError,
    LegalHoldActiveError,
    PolicyUnresolvedError,
    RecordNotDueError,
    RecordNotFoundError,
    StoreError,
)
from retention_engine.services.job_store import retry_delay
from retention_engine.services.notifications import EmergencyAlert
from retention_engine.services.policy import DecisionStatus

if TYPE_CHECKING:
    from retention_engine.core.config import Settings
    from retention_engine.services.archival import ArchivalService
    from retention_engine.services.audit_trail import AuditTrail
    from retention_engine.services.certificates import CertificateService, DisposalCertificate
    from retention_engine.services.compliance import ComplianceViolation, ComplianceViolationDetector
    from retention_engine.services.domain import RetentionJob
    from retention_engine.services.interfaces import (
        EvidenceStore,
        JobStore,
        NotificationGateway,
        RecordSourceAdapter,
    )
    from retention_engine.services.legal_hold import LegalHoldGuard
    from retention_engine.services.policy import RetentionPolicyEvaluator

logger = logging.getLogger(__name__)

# Failures that page a human
CRITICAL_REASONS = frozenset(
    {
        FailureReason.ARCHIVAL_FAILED,
        FailureReason.CERTIFICATION_FAILED,
        FailureReason.DISPOSAL_INTERRUPTED,
    }
)

StopPredicate = Callable[[], bool]


class RunOutcome(str, Enum):
    """How an executor run ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    STOPPED = "stopped"
    LOST = "lost"


@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    """Retry and environment settings of the executor.

    Attributes:
        max_attempts: Attempts before a retryable failure becomes final.
        retry_base_seconds: Backoff base; doubles on every attempt.
        production: Archival failures are fatal in production.
    """

    max_attempts: int = 3
    retry_base_seconds: int = 300
    production: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ExecutorConfig:
        return cls(
            max_attempts=settings.scheduler.max_attempts,
            retry_base_seconds=settings.scheduler.retry_base_seconds,
            production=settings.is_production,
        )


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Result of running one job.

    Attributes:
        job: Job snapshot after the run.
        outcome: How the run ended.
        certificate: Certificate issued (or reused) for the disposal.
        violation: Compliance violation detected after the disposal.
        gaps: Degraded-evidence notes (unsigned certificate, missing archive).
        failure: Reason of a failed or rescheduled attempt.
        critical: Whether the failure raised an emergency alert.
    """

    job: RetentionJob
    outcome: RunOutcome
    certificate: DisposalCertificate | None = None
    violation: ComplianceViolation | None = None
    gaps: tuple[str, ...] = ()
    failure: FailureReason | None = None
    critical: bool = False

    @property
    def simulated(self) -> bool:
        return self.job.dry_run


@dataclass
class _Attempt:
    """Mutable progress of the attempt in flight."""

    job: RetentionJob
    owner: str | None
    record: DisposableRecord | None = None
    pre_hash: str | None = None
    gaps: list[str] = field(default_factory=list)


class _StopRequested(Exception):
    pass


class DisposalExecutor:
    """Runs claimed disposal jobs to a terminal or rescheduled state.

    Example:
        executor = DisposalExecutor(jobs=job_store, records=adapter, ...)
        result = await executor.run(job, should_stop=shutdown_event.is_set)
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        records: RecordSourceAdapter,
        evaluator: RetentionPolicyEvaluator,
        hold_guard: LegalHoldGuard,
        archival: ArchivalService,
        certificates: CertificateService,
        audit: AuditTrail,
        compliance: ComplianceViolationDetector,
        evidence: EvidenceStore,
        notifier: NotificationGateway,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._jobs = jobs
        self._records = records
        self._evaluator = evaluator
        self._hold_guard = hold_guard
        self._archival = archival
        self._certificates = certificates
        self._audit = audit
        self._compliance = compliance
        self._evidence = evidence
        self._notifier = notifier
        self.config = config or ExecutorConfig()

    async def run(
        self,
        job: RetentionJob,
        *,
        should_stop: StopPredicate | None = None,
        operation_id: str | None = None,
    ) -> ExecutionResult:
        """Run one attempt of a QUEUED job.

        A stop request is honoured at phase boundaries only: the job goes
        back to QUEUED and resumes from its persisted progress later.

        Args:
            job: Job in QUEUED state, normally claimed by the caller.
            should_stop: Polled between phases.
            operation_id: Run identifier carried into alerts and violations.

        Returns:
            ExecutionResult describing how the attempt ended.

        Raises:
            StoreError: If the job, audit or evidence store is unavailable.
        """
        attempt = _Attempt(job=job, owner=job.lease_owner)
        try:
            await self._audit.close_interrupted(job)
            try:
                if job.disposed_at is not None:
                    await self._resume(attempt)
                else:
                    await self._verify(attempt)
                    if attempt.record is None:
                        await self._complete_interrupted(attempt)
                        return await self._certify(attempt, operation_id)
                    self._checkpoint(should_stop)
                    if job.disposal_method.requires_archive:
                        await self._archive(attempt)
                        self._checkpoint(should_stop)
                    else:
                        await self._advance(attempt, JobState.DISPOSING, pre_disposal_hash=attempt.pre_hash)
                    await self._dispose(attempt)
                    self._checkpoint(should_stop)
                return await self._certify(attempt, operation_id)
            except _StopRequested:
                return await self._stop(attempt)
            except DisposalFailure as e:
                return await self._fail(attempt, e, operation_id)
        except InvalidTransitionError as e:
            logger.warning("Job %s no longer belongs to this run: %s", job.job_id, e)
            return ExecutionResult(job=attempt.job, outcome=RunOutcome.LOST)

    @staticmethod
    def _checkpoint(should_stop: StopPredicate | None) -> None:
        if should_stop is not None and should_stop():
            raise _StopRequested

    async def _advance(self, attempt: _Attempt, new: JobState, **changes: object) -> None:
        attempt.job = await self._jobs.transition(
            attempt.job.job_id,
            expected=attempt.job.status,
            new=new,
            owner=attempt.owner,
            **changes,
        )

    async def _read_record(self, job: RetentionJob) -> DisposableRecord | None:
        try:
            return await self._records.get_record(job.record_type, job.record_id)
        except Exception as e:
            msg = f"Cannot read {job.record_type}/{job.record_id}: {e}"
            raise DisposalExecutionFailedError(msg) from e

    async def _require_no_hold(self, job: RetentionJob) -> None:
        try:
            check = await self._hold_guard.check_hold(job.record_type, job.record_id)
        except Exception as e:
            msg = f"Hold check for {job.record_type}/{job.record_id} failed: {e}"
            raise DisposalExecutionFailedError(msg) from e

        if not check.record_found:
            msg = f"{job.record_type}/{job.record_id} disappeared before disposal"
            raise RecordNotFoundError(msg)
        if not check.allowed:
            raise LegalHoldActiveError(job.record_type, job.record_id, check.reason)

    async def _verify(self, attempt: _Attempt) -> None:
        await self._advance(
            attempt,
            JobState.VERIFYING,
            attempts=attempt.job.attempts + 1,
            last_error=None,
            failure_reason=None,
        )
        job = attempt.job
        logger.info(
            "Job %s attempt %d: verifying %s/%s",
            job.job_id,
            job.attempts,
            job.record_type,
            job.record_id,
        )

        interrupted = job.disposal_intent is not None and not job.dry_run
        if interrupted:
            logger.warning(
                "Job %s: previous attempt crashed after starting the destructive call at %s",
                job.job_id,
                job.disposal_intent.get("started_at"),
            )

        record = await self._read_record(job)
        attempt.record = record
        if interrupted and job.pre_disposal_hash is not None:
            # The host may already be partly changed; keep the hash taken before
            attempt.pre_hash = job.pre_disposal_hash
        else:
            attempt.pre_hash = record.compute_state_hash() if record is not None else None
        details = {"method": job.disposal_method.value, "dry_run": job.dry_run}
        if interrupted:
            details["resumed_disposal"] = True
        await self._audit.record_before(job, pre_disposal_hash=attempt.pre_hash, details=details)

        if record is None and interrupted:
            if job.disposal_method.removes_record and attempt.pre_hash is not None:
                return
            msg = (
                f"{job.record_type}/{job.record_id} vanished after an interrupted "
                f"{job.disposal_method.name}; the disposal cannot be certified"
            )
            raise DisposalInterruptedError(msg)
        if record is None:
            msg = f"{job.record_type}/{job.record_id} not returned by the host"
            raise RecordNotFoundError(msg)

        await self._require_no_hold(job)

        decision = self._evaluator.evaluate(record)
        if decision.status == DecisionStatus.UNEVALUABLE:
            raise PolicyUnresolvedError(record.legal_basis_code)
        if decision.status == DecisionStatus.ON_HOLD:
            raise LegalHoldActiveError(job.record_type, job.record_id, decision.reason)
        if decision.status == DecisionStatus.NOT_YET_DUE:
            msg = f"{job.record_type}/{job.record_id} not due until {decision.due_date.isoformat()}"
            raise RecordNotDueError(msg)
        if decision.status == DecisionStatus.ALREADY_DISPOSED:
            msg = f"{job.record_type}/{job.record_id} already disposed"
            raise RecordNotDueError(msg)

    async def _archive(self, attempt: _Attempt) -> None:
        await self._advance(attempt, JobState.ARCHIVING, pre_disposal_hash=attempt.pre_hash)
        job = attempt.job
        if job.disposal_intent is not None and job.archive_id is not None and not job.dry_run:
            logger.info("Job %s: keeping archive %s from the interrupted attempt", job.job_id, job.archive_id)
            await self._advance(attempt, JobState.DISPOSING)
            return

        archive_id = None
        try:
            manifest = await self._archival.archive([attempt.record], simulate=job.dry_run)
            archive_id = manifest.archive_id
        except ArchivalFailedError as e:
            if self.config.production and not job.dry_run:
                raise
            gap = f"Disposal of {job.record_type}/{job.record_id} proceeded without archive: {e}"
            logger.warning("%s", gap)
            attempt.gaps.append(gap)

        await self._advance(attempt, JobState.DISPOSING, archive_id=archive_id)

    async def _dispose(self, attempt: _Attempt) -> None:
        job = attempt.job
        # Hold state may have changed since VERIFYING
        await self._require_no_hold(job)

        location = None
        if job.archive_id is not None:
            manifest = await self._evidence.get_manifest(job.archive_id)
            location = manifest.storage_location if manifest is not None else None

        if not job.dry_run:
            # Persisted before the destructive call so a crash is detectable on reclaim
            await self._advance(
                attempt,
                JobState.DISPOSING,
                disposal_intent={
                    "started_at": datetime.now(UTC).isoformat(),
                    "source_timestamp": attempt.record.source_timestamp.isoformat(),
                },
            )

        result = await execute_disposal(
            self._records,
            attempt.record,
            job.disposal_method,
            archive_location=location,
            dry_run=job.dry_run,
        )
        await self._advance(
            attempt,
            JobState.CERTIFYING,
            disposal_result={
                **result.to_dict(),
                "source_timestamp": attempt.record.source_timestamp.isoformat(),
            },
            disposed_at=datetime.now(UTC),
        )

    async def _complete_interrupted(self, attempt: _Attempt) -> None:
        """Record a crashed delete whose record is already gone as disposed."""
        job = attempt.job
        intent = job.disposal_intent
        gap = (
            f"Interrupted disposal of {job.record_type}/{job.record_id} found the record "
            f"already removed; certified from the hash taken before {intent['started_at']}"
        )
        logger.warning("Job %s: %s", job.job_id, gap)
        attempt.gaps.append(gap)

        result = DisposalResult(
            method=job.disposal_method,
            applied=True,
            detail="record absent when the interrupted disposal was resumed",
        )
        await self._advance(attempt, JobState.DISPOSING)
        await self._advance(
            attempt,
            JobState.CERTIFYING,
            disposal_result={**result.to_dict(), "source_timestamp": intent["source_timestamp"]},
            disposed_at=datetime.fromisoformat(intent["started_at"]),
        )
        attempt.record = _record_from_job(attempt.job)

    async def _resume(self, attempt: _Attempt) -> None:
        await self._advance(attempt, JobState.CERTIFYING, attempts=attempt.job.attempts + 1)
        job = attempt.job
        logger.info(
            "Job %s attempt %d: resuming certification of %s/%s disposed at %s",
            job.job_id,
            job.attempts,
            job.record_type,
            job.record_id,
            job.disposed_at.isoformat(),
        )
        attempt.pre_hash = job.pre_disposal_hash
        await self._audit.record_before(
            job,
            pre_disposal_hash=attempt.pre_hash,
            details={"method": job.disposal_method.value, "dry_run": job.dry_run, "resumed": True},
        )
        attempt.record = _record_from_job(job)

    async def _certify(self, attempt: _Attempt, operation_id: str | None) -> ExecutionResult:
        job = attempt.job
        result = DisposalResult.from_dict(job.disposal_result)
        policy = self._evaluator.registry.resolve(job.legal_basis_code)
        references = policy.compliance_references if policy is not None else ()

        sealed = await self._certificates.seal_disposal(
            job,
            attempt.pre_hash,
            result,
            references,
            persist=not job.dry_run,
        )
        certificate = sealed.certificate
        if sealed.signing_gap:
            attempt.gaps.append(sealed.signing_gap)

        if not job.dry_run:
            try:
                await self._records.mark_disposed(
                    job.record_type, job.record_id, result.method, certificate.certificate_id
                )
            except Exception as e:
                msg = f"Cannot mark {job.record_type}/{job.record_id} disposed: {e}"
                raise CertificationFailedError(msg) from e

        violation = await self._check_compliance(attempt, certificate, operation_id)

        certificate_id = None if job.dry_run else certificate.certificate_id
        await self._audit.record_after(
            job,
            outcome="SIMULATED" if job.dry_run else "COMPLETED",
            pre_disposal_hash=attempt.pre_hash,
            certificate_id=certificate_id,
            details={
                "method": result.method.value,
                "applied": result.applied,
                "certificate_reused": sealed.reused,
                "violation": violation is not None,
            },
        )
        await self._advance(attempt, JobState.COMPLETED, certificate_id=certificate_id)

        logger.info(
            "Job %s completed: %s/%s %s (certificate=%s, simulated=%s)",
            job.job_id,
            job.record_type,
            job.record_id,
            result.method.name,
            certificate.certificate_id,
            job.dry_run,
        )
        return ExecutionResult(
            job=attempt.job,
            outcome=RunOutcome.COMPLETED,
            certificate=certificate,
            violation=violation,
            gaps=tuple(attempt.gaps),
        )

    async def _check_compliance(
        self,
        attempt: _Attempt,
        certificate: DisposalCertificate,
        operation_id: str | None,
    ) -> ComplianceViolation | None:
        job = attempt.job
        try:
            self._compliance.assert_compliant(attempt.record, certificate.certificate_id, job.disposed_at)
        except ComplianceViolationDetectedError as e:
            logger.error("Compliance violation on job %s: %s", job.job_id, e)
            if not job.dry_run:
                try:
                    await self._evidence.record_violation(e.violation, operation_id=operation_id)
                except StoreError as store_error:
                    logger.error("Violation for job %s not stored: %s", job.job_id, store_error)
            return e.violation
        return None

    async def _stop(self, attempt: _Attempt) -> ExecutionResult:
        job = attempt.job
        logger.info("Job %s stopped in %s; returning to queue", job.job_id, job.status.name)
        await self._audit.record_after(
            job,
            outcome="STOPPED",
            pre_disposal_hash=attempt.pre_hash,
            details={"stopped_in": job.status.name},
        )
        await self._advance(attempt, JobState.QUEUED, lease_owner=None, lease_expires_at=None)
        return ExecutionResult(job=attempt.job, outcome=RunOutcome.STOPPED, gaps=tuple(attempt.gaps))

    async def _fail(
        self,
        attempt: _Attempt,
        error: DisposalFailure,
        operation_id: str | None,
    ) -> ExecutionResult:
        job = attempt.job
        reason = error.reason
        retry = reason.is_retryable and job.attempts < self.config.max_attempts
        outcome = RunOutcome.RETRY_SCHEDULED if retry else RunOutcome.FAILED
        failed_in = job.status

        logger.log(
            logging.WARNING if retry else logging.ERROR,
            "Job %s attempt %d failed in %s (%s): %s",
            job.job_id,
            job.attempts,
            failed_in.name,
            reason.value,
            error,
        )
        # No-op unless the attempt failed before its BEFORE entry was written
        await self._audit.record_before(job, pre_disposal_hash=attempt.pre_hash)
        await self._audit.record_after(
            job,
            outcome=outcome.name,
            pre_disposal_hash=attempt.pre_hash,
            details={"reason": reason.value, "error": str(error), "failed_in": failed_in.name},
        )

        if retry:
            run_at = datetime.now(UTC) + retry_delay(job.attempts, self.config.retry_base_seconds)
            await self._advance(
                attempt,
                JobState.RETRY_SCHEDULED,
                run_at=run_at,
                last_error=str(error),
                failure_reason=reason,
            )
            logger.info("Job %s retry scheduled at %s", job.job_id, run_at.isoformat())
        else:
            await self._advance(attempt, JobState.FAILED, last_error=str(error), failure_reason=reason)

        critical = reason in CRITICAL_REASONS
        if critical:
            await self._notifier.send_emergency_alert(
                EmergencyAlert(
                    alert_type=reason.value,
                    message=str(error),
                    operation_id=operation_id,
                    tenant_id=job.tenant_id,
                    job_id=str(job.job_id),
                    record_type=job.record_type,
                    record_id=job.record_id,
                    details={
                        "failed_in": failed_in.name,
                        "attempt": job.attempts,
                        "will_retry": retry,
                        "disposed": job.disposed_at is not None,
                    },
                )
            )

        return ExecutionResult(
            job=attempt.job,
            outcome=outcome,
            failure=reason,
            critical=critical,
            gaps=tuple(attempt.gaps),
        )


def _record_from_job(job: RetentionJob) -> DisposableRecord:
    """Rebuild the record view needed for certification of a resumed job.

    The host record may already be gone, so it is not read again.
    """
    stored = job.disposal_result or {}
    source_timestamp = stored.get("source_timestamp")
    if source_timestamp is None:
        msg = f"Job {job.job_id} has no persisted disposal result to certify"
        raise CertificationFailedError(msg)

    return DisposableRecord(
        record_type=job.record_type,
        record_id=job.record_id,
        tenant_id=job.tenant_id,
        legal_basis_code=job.legal_basis_code,
        source_timestamp=datetime.fromisoformat(source_timestamp),
    )
