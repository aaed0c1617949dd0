"""One retention run: scan, queue, dispose, report.

A run holds the scheduler-wide lease for its whole duration, so a second
instance fails fast with ConcurrentRunDetectedError instead of racing. It
scans tenants in small parallel batches, queues a job per due record, lets
the worker pool drain the queue and finishes with a hashed compliance
report that is persisted and sent through the notification gateway. Only
jobs of the run's own mode are drained, so a dry run never executes a real
job left over from an earlier run.

A real (non dry-run) run in production is refused unless explicitly forced.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from retention_engine.db.models.base import FailureReason
from retention_engine.services.disposal import RunOutcome
from retention_engine.services.errors import ProductionGuardError
from retention_engine.services.policy import DecisionStatus
from retention_engine.services.reporting import RunReportBuilder

if TYPE_CHECKING:
    from collections.abc import Sequence

    from retention_engine.core.config import Settings
    from retention_engine.services.disposal import ExecutionResult
    from retention_engine.services.domain import DisposableRecord, RetentionJob
    from retention_engine.services.interfaces import (
        JobStore,
        NotificationGateway,
        RecordSourceAdapter,
        ReportStore,
    )
    from retention_engine.services.lease import LeaseLock
    from retention_engine.services.policy import PolicyDecision, RetentionPolicyEvaluator
    from retention_engine.services.reporting import RunReport
    from retention_engine.worker.pool import DisposalWorkerPool

logger = logging.getLogger(__name__)

RUN_LEASE_NAME = "retention-run"


def generate_operation_id(now: datetime | None = None) -> str:
    """Generate a run identifier: RUN-<YYYYmmddHHMMSS>-<8 hex>."""
    now = now or datetime.now(UTC)
    return f"RUN-{now:%Y%m%d%H%M%S}-{secrets.token_hex(4).upper()}"


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    """Scope and environment of retention runs.

    Attributes:
        record_types: Host record types scanned for due records.
        environment: Deployment environment name, copied into reports.
        production: Whether the production guard applies.
        tenant_batch_size: Tenants scanned in parallel.
        batch_size: Records fetched per tenant, record type and policy.
    """

    record_types: tuple[str, ...]
    environment: str = "dev"
    production: bool = False
    tenant_batch_size: int = 3
    batch_size: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> RunnerConfig:
        return cls(
            record_types=tuple(settings.policy.record_types),
            environment=settings.environment.value,
            production=settings.is_production,
            tenant_batch_size=settings.scheduler.tenant_batch_size,
            batch_size=settings.scheduler.batch_size,
        )


class RetentionRunner:
    """Runs complete retention passes over all (or selected) tenants."""

    def __init__(
        self,
        *,
        records: RecordSourceAdapter,
        evaluator: RetentionPolicyEvaluator,
        jobs: JobStore,
        pool: DisposalWorkerPool,
        lease_lock: LeaseLock,
        notifier: NotificationGateway,
        reports: ReportStore,
        config: RunnerConfig,
    ) -> None:
        self._records = records
        self._evaluator = evaluator
        self._jobs = jobs
        self._pool = pool
        self._lease_lock = lease_lock
        self._notifier = notifier
        self._reports = reports
        self.config = config

    async def run(
        self,
        *,
        dry_run: bool = False,
        force_production: bool = False,
        tenant_ids: Sequence[str] | None = None,
    ) -> RunReport:
        """Execute one retention run.

        Args:
            dry_run: Skip destructive calls and certificate persistence.
            force_production: Permit a real run in production.
            tenant_ids: Restrict the run to these tenants.

        Returns:
            The persisted compliance report.

        Raises:
            ProductionGuardError: If a real production run is not forced.
            ConcurrentRunDetectedError: If another instance holds the run lease.
            StoreError: If the job store fails while queueing.
        """
        if self.config.production and not dry_run and not force_production:
            msg = "Refusing a destructive run in production without --force-production"
            raise ProductionGuardError(msg)

        operation_id = generate_operation_id()
        builder = RunReportBuilder(
            operation_id, environment=self.config.environment, dry_run=dry_run
        )
        logger.info(
            "Retention run %s starting (environment=%s, dry_run=%s, tenants=%s)",
            operation_id,
            self.config.environment,
            dry_run,
            ",".join(tenant_ids) if tenant_ids else "all",
        )

        async with self._lease_lock.hold(RUN_LEASE_NAME):
            tenants = list(tenant_ids) if tenant_ids else await self._records.list_tenants()
            queued = await self._queue_due_records(tenants, builder, dry_run=dry_run)
            logger.info("Run %s queued %d job(s) for %d tenant(s)", operation_id, queued, len(tenants))

            deferred = await self._pool.drain(
                operation_id=operation_id,
                tenant_ids=tenants,
                dry_run=dry_run,
                on_result=lambda result: record_result(builder, result),
                on_error=lambda job, error: record_crash(builder, job, error),
            )
            for _ in range(deferred):
                builder.record_deferred()

        report = builder.build()
        location = await self._reports.persist(report)
        await self._notifier.send_compliance_report(report)

        logger.info(
            "Retention run %s finished: succeeded=%s, report=%s",
            operation_id,
            report.succeeded,
            location,
        )
        return report

    async def _queue_due_records(
        self,
        tenants: list[str],
        builder: RunReportBuilder,
        *,
        dry_run: bool,
    ) -> int:
        queued = 0
        now = datetime.now(UTC)
        step = self.config.tenant_batch_size
        for start in range(0, len(tenants), step):
            batch = tenants[start : start + step]
            scans = await asyncio.gather(*(self._scan_tenant(tenant, now, builder) for tenant in batch))
            for decisions in scans:
                for decision in decisions:
                    record = decision.record
                    job = await self._jobs.create_job(
                        tenant_id=record.tenant_id,
                        record_type=record.record_type,
                        record_id=record.record_id,
                        legal_basis_code=record.legal_basis_code,
                        disposal_method=decision.disposal_method,
                        dry_run=dry_run,
                        run_at=now,
                    )
                    if job is not None:
                        queued += 1
        return queued

    async def _scan_tenant(
        self,
        tenant_id: str,
        now: datetime,
        builder: RunReportBuilder,
    ) -> list[PolicyDecision]:
        """Return the due decisions of one tenant and count the exclusions."""
        found: dict[tuple[str, str], DisposableRecord] = {}
        try:
            for record_type in self.config.record_types:
                for policy in self._evaluator.registry:
                    records = await self._records.query_due(
                        tenant_id,
                        record_type,
                        policy,
                        as_of=now,
                        limit=self.config.batch_size,
                    )
                    for record in records:
                        found.setdefault((record.record_type, record.record_id), record)
        except Exception as e:
            logger.exception("Scan of tenant %s failed: %s", tenant_id, e)
            builder.record_critical("tenant_scan_failed", str(e), tenant_id=tenant_id)
            return []

        due, excluded = self._evaluator.partition(found.values(), now)
        builder.record_on_hold(sum(1 for d in excluded if d.status == DecisionStatus.ON_HOLD))
        builder.record_unevaluable(sum(1 for d in excluded if d.status == DecisionStatus.UNEVALUABLE))
        logger.info(
            "Tenant %s: %d candidate(s), %d due, %d excluded",
            tenant_id,
            len(found),
            len(due),
            len(excluded),
        )
        return due


def record_result(builder: RunReportBuilder, result: ExecutionResult) -> None:
    """Fold one executor result into the run report."""
    for gap in result.gaps:
        builder.record_gap(gap)

    if result.outcome == RunOutcome.COMPLETED:
        builder.record_completed(result.job.disposal_method, simulated=result.simulated)
        if result.violation is not None:
            builder.record_violation(result.violation)
    elif result.outcome in (RunOutcome.FAILED, RunOutcome.RETRY_SCHEDULED):
        builder.record_failed(on_hold=result.failure == FailureReason.LEGAL_HOLD_ACTIVE)
        if result.critical:
            builder.record_critical(
                result.failure.value,
                result.job.last_error or "",
                job_id=str(result.job.job_id),
                tenant_id=result.job.tenant_id,
                record=f"{result.job.record_type}/{result.job.record_id}",
            )
    elif result.outcome == RunOutcome.STOPPED:
        builder.record_deferred()


def record_crash(builder: RunReportBuilder, job: RetentionJob, error: Exception) -> None:
    builder.record_failed()
    builder.record_critical(
        "job_crashed",
        str(error),
        job_id=str(job.job_id),
        tenant_id=job.tenant_id,
        record=f"{job.record_type}/{job.record_id}",
    )
