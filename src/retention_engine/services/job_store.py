"""PostgreSQL-backed disposal job store.

Jobs are claimed with SELECT ... FOR UPDATE SKIP LOCKED, and every state
change is a conditional UPDATE guarded by the expected current state (and
the claiming worker when given). A worker that lost its job to a crash
recovery can therefore never advance it.

Claimable jobs:
- QUEUED or RETRY_SCHEDULED jobs whose ``run_at`` has passed and that no
  live worker holds. RETRY_SCHEDULED jobs re-enter QUEUED when claimed.
- In-flight jobs (VERIFYING .. CERTIFYING) whose worker lease expired.
  These are crash anomalies; they are reset to QUEUED with their progress
  fields intact, so the executor resumes without repeating finished work.


Real and dry-run jobs never mix: a run only claims jobs of its own mode,
and the one-unfinished-job-per-record rule applies per mode.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from retention_engine.db.models.base import IN_FLIGHT_STATES, JobState
from retention_engine.db.models.jobs import RetentionJobRecord
from retention_engine.services.domain import RetentionJob
from retention_engine.services.errors import InvalidTransitionError, JobStoreError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Collection

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from retention_engine.db.models.base import DisposalMethod

logger = logging.getLogger(__name__)

TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


def retry_delay(attempts: int, base_seconds: int) -> timedelta:
    """Backoff before the next attempt: base * 2^(attempts-1).

    With the default base of 300 seconds this yields 5, 10 and 20 minutes.
    """
    return timedelta(seconds=base_seconds * (2 ** (max(attempts, 1) - 1)))


def to_job(record: RetentionJobRecord) -> RetentionJob:
    """Snapshot a job row."""
    return RetentionJob(
        job_id=record.job_id,
        tenant_id=record.tenant_id,
        record_type=record.record_type,
        record_id=record.record_id,
        legal_basis_code=record.legal_basis_code,
        disposal_method=record.disposal_method,
        status=record.status,
        attempts=record.attempts,
        created_at=record.created_at,
        run_at=record.run_at,
        last_error=record.last_error,
        failure_reason=record.failure_reason,
        dry_run=record.dry_run,
        lease_owner=record.lease_owner,
        lease_expires_at=record.lease_expires_at,
        pre_disposal_hash=record.pre_disposal_hash,
        archive_id=record.archive_id,
        disposal_intent=record.disposal_intent,
        disposal_result=record.disposal_result,
        disposed_at=record.disposed_at,
        certificate_id=record.certificate_id,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
    )


class SqlJobStore:
    """Durable job store on the shared session factory.

    Each method runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_job(
        self,
        *,
        tenant_id: str,
        record_type: str,
        record_id: str,
        legal_basis_code: str,
        disposal_method: DisposalMethod,
        dry_run: bool,
        run_at: datetime,
    ) -> RetentionJob | None:
        """Queue a job for a record.

        Returns:
            The new job, or None when the record already has an unfinished
            job of the same mode (real or dry run).
        """
        stmt = (
            insert(RetentionJobRecord)
            .values(
                tenant_id=tenant_id,
                record_type=record_type,
                record_id=record_id,
                legal_basis_code=legal_basis_code,
                disposal_method=disposal_method,
                status=JobState.QUEUED,
                run_at=run_at,
                attempts=0,
                dry_run=dry_run,
            )
            .on_conflict_do_nothing()
            .returning(RetentionJobRecord)
        )
        try:
            async with self._session_factory() as session, session.begin():
                record = (await session.scalars(stmt)).first()
                job = to_job(record) if record is not None else None
        except SQLAlchemyError as e:
            logger.error("Failed to create job for %s/%s: %s", record_type, record_id, e)
            raise JobStoreError(f"Failed to create job: {e}") from e

        if job is None:
            logger.debug(
                "Unfinished %s job already exists for %s/%s",
                "dry-run" if dry_run else "real",
                record_type,
                record_id,
            )
        else:
            logger.info(
                "Job queued: job_id=%s, record=%s/%s, method=%s, dry_run=%s",
                job.job_id,
                record_type,
                record_id,
                disposal_method.value,
                dry_run,
            )
        return job

    async def get_job(self, job_id: uuid.UUID) -> RetentionJob | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(RetentionJobRecord, job_id)
                return to_job(record) if record is not None else None
        except SQLAlchemyError as e:
            raise JobStoreError(f"Failed to load job {job_id}: {e}") from e

    async def claim_jobs(
        self,
        *,
        worker_id: str,
        now: datetime,
        lease_until: datetime,
        limit: int,
        tenant_ids: Collection[str] | None = None,
        exclude_tenants: Collection[str] = (),
        dry_run: bool | None = None,
    ) -> list[RetentionJob]:
        """Claim up to ``limit`` runnable jobs for a worker.

        Args:
            worker_id: Owner recorded on the claimed jobs.
            now: Claim time; also the reference for expired leases.
            lease_until: Lease expiry written on the claimed jobs.
            limit: Maximum jobs to claim.
            tenant_ids: Only claim jobs of these tenants.
            exclude_tenants: Never claim jobs of these tenants (quota full).
            dry_run: Only claim real (False) or simulated (True) jobs.
        """
        unowned = or_(
            RetentionJobRecord.lease_owner.is_(None),
            RetentionJobRecord.lease_expires_at < now,
        )
        stmt = (
            select(RetentionJobRecord)
            .where(
                or_(
                    and_(
                        RetentionJobRecord.status.in_((JobState.QUEUED, JobState.RETRY_SCHEDULED)),
                        RetentionJobRecord.run_at <= now,
                        unowned,
                    ),
                    and_(
                        RetentionJobRecord.status.in_(tuple(IN_FLIGHT_STATES)),
                        RetentionJobRecord.lease_expires_at < now,
                    ),
                )
            )
            .order_by(RetentionJobRecord.run_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if tenant_ids is not None:
            stmt = stmt.where(RetentionJobRecord.tenant_id.in_(tuple(tenant_ids)))
        if exclude_tenants:
            stmt = stmt.where(RetentionJobRecord.tenant_id.not_in(tuple(exclude_tenants)))
        if dry_run is not None:
            stmt = stmt.where(RetentionJobRecord.dry_run.is_(dry_run))

        claimed: list[RetentionJob] = []
        try:
            async with self._session_factory() as session, session.begin():
                records = (await session.scalars(stmt)).all()
                for record in records:
                    if record.status in IN_FLIGHT_STATES:
                        logger.warning(
                            "Reclaiming job %s stuck in %s (lease of %s expired at %s)",
                            record.job_id,
                            record.status.name,
                            record.lease_owner,
                            record.lease_expires_at,
                        )
                    record.status = JobState.QUEUED
                    record.lease_owner = worker_id
                    record.lease_expires_at = lease_until
                    record.updated_at = now
                await session.flush()
                claimed = [to_job(record) for record in records]
        except SQLAlchemyError as e:
            logger.error("Failed to claim jobs: %s", e)
            raise JobStoreError(f"Failed to claim jobs: {e}") from e

        if claimed:
            logger.debug("Worker %s claimed %d job(s)", worker_id, len(claimed))
        return claimed

    async def transition(
        self,
        job_id: uuid.UUID,
        *,
        expected: JobState,
        new: JobState,
        owner: str | None = None,
        **changes: Any,
    ) -> RetentionJob:
        """Move a job from ``expected`` to ``new``, applying ``changes``.

        Raises:
            InvalidTransitionError: If the job is terminal, not in ``expected``
                or no longer owned by ``owner``.
            JobStoreError: If the update fails.
        """
        if expected in TERMINAL_STATES:
            raise InvalidTransitionError(f"Job {job_id} is {expected.name}; terminal jobs are immutable")

        now = datetime.now(UTC)
        values: dict[str, Any] = {"status": new, "updated_at": now, **changes}
        if new in TERMINAL_STATES or new == JobState.RETRY_SCHEDULED:
            values.setdefault("lease_owner", None)
            values.setdefault("lease_expires_at", None)
        if new in TERMINAL_STATES:
            values.setdefault("completed_at", now)

        conditions = [RetentionJobRecord.job_id == job_id, RetentionJobRecord.status == expected]
        if owner is not None:
            conditions.append(RetentionJobRecord.lease_owner == owner)

        stmt = update(RetentionJobRecord).where(*conditions).values(**values).returning(RetentionJobRecord)
        try:
            async with self._session_factory() as session, session.begin():
                record = (await session.scalars(stmt)).first()
                job = to_job(record) if record is not None else None
        except SQLAlchemyError as e:
            logger.error("Failed to transition job %s: %s", job_id, e)
            raise JobStoreError(f"Failed to transition job {job_id}: {e}") from e

        if job is None:
            raise InvalidTransitionError(
                f"Job {job_id} is not in state {expected.name} (or not owned by {owner})"
            )

        logger.debug("Job %s: %s -> %s", job_id, expected.name, new.name)
        return job

    async def defer(self, job_id: uuid.UUID, *, owner: str, run_at: datetime) -> bool:
        """Give a claimed job back with a later ``run_at``."""
        return await self._unclaim(job_id, owner=owner, run_at=run_at)

    async def release(self, job_id: uuid.UUID, *, owner: str) -> bool:
        """Give a claimed job back unchanged."""
        return await self._unclaim(job_id, owner=owner, run_at=None)

    async def _unclaim(self, job_id: uuid.UUID, *, owner: str, run_at: datetime | None) -> bool:
        values: dict[str, Any] = {
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": datetime.now(UTC),
        }
        if run_at is not None:
            values["run_at"] = run_at

        stmt = (
            update(RetentionJobRecord)
            .where(
                RetentionJobRecord.job_id == job_id,
                RetentionJobRecord.status == JobState.QUEUED,
                RetentionJobRecord.lease_owner == owner,
            )
            .values(**values)
            .returning(RetentionJobRecord.job_id)
        )
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise JobStoreError(f"Failed to release job {job_id}: {e}") from e

    async def list_jobs(
        self,
        *,
        statuses: list[JobState] | None = None,
        tenant_id: str | None = None,
        limit: int = 1000,
    ) -> list[RetentionJob]:
        stmt = select(RetentionJobRecord).order_by(RetentionJobRecord.created_at).limit(limit)
        if statuses:
            stmt = stmt.where(RetentionJobRecord.status.in_(statuses))
        if tenant_id is not None:
            stmt = stmt.where(RetentionJobRecord.tenant_id == tenant_id)
        try:
            async with self._session_factory() as session:
                return [to_job(record) for record in (await session.scalars(stmt)).all()]
        except SQLAlchemyError as e:
            raise JobStoreError(f"Failed to list jobs: {e}") from e

    async def purge_finished(self, *, before: datetime) -> int:
        """Delete terminal jobs last updated before ``before``.

        Audit entries and certificates are separate tables and are never
        touched.
        """
        stmt = (
            delete(RetentionJobRecord)
            .where(
                RetentionJobRecord.status.in_(TERMINAL_STATES),
                RetentionJobRecord.updated_at < before,
            )
            .returning(RetentionJobRecord.job_id)
        )
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                purged = len(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to purge finished jobs: %s", e)
            raise JobStoreError(f"Failed to purge finished jobs: {e}") from e

        if purged:
            logger.info("Purged %d finished job(s) older than %s", purged, before.isoformat())
        return purged
