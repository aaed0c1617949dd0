"""Tests for the disposal worker pool.

Tests cover:
- Per-tenant quota under a burst of dispatches (deferral, never dropping)
- Draining the queue with bounded per-tenant concurrency
- Executor crashes leaving the job leased for recovery
- Shutdown releasing jobs that never started
"""

import asyncio
from collections import Counter
from dataclasses import replace
from datetime import timedelta

import pytest

from retention_engine.db.models.base import DisposalMethod, JobState
from retention_engine.services.disposal import ExecutionResult, RunOutcome
from retention_engine.services.quota import TenantQuotaTracker
from retention_engine.worker.pool import DisposalWorkerPool, PoolConfig
from tests.fakes import InMemoryJobStore, utcnow


class ConcurrencyRecordingExecutor:
    """Completes every job after a short pause, recording overlap per tenant."""

    def __init__(self, jobs, *, fail_for=()):
        self._jobs = jobs
        self._fail_for = set(fail_for)
        self.running = Counter()
        self.peak = Counter()
        self.calls = []

    async def run(self, job, *, should_stop=None, operation_id=None):
        self.calls.append((job.record_id, operation_id))
        self.running[job.tenant_id] += 1
        self.peak[job.tenant_id] = max(self.peak[job.tenant_id], self.running[job.tenant_id])
        try:
            await asyncio.sleep(0.01)
            if job.record_id in self._fail_for:
                raise RuntimeError(f"worker died on {job.record_id}")
            done = await self._jobs.transition(
                job.job_id, expected=JobState.QUEUED, new=JobState.COMPLETED, owner=job.lease_owner
            )
            return ExecutionResult(job=done, outcome=RunOutcome.COMPLETED)
        finally:
            self.running[job.tenant_id] -= 1


async def queue_jobs(jobs, tenant_id, count, *, prefix="doc", dry_run=False):
    for index in range(count):
        await jobs.create_job(
            tenant_id=tenant_id,
            record_type="Document",
            record_id=f"{prefix}-{tenant_id}-{index}",
            legal_basis_code="POPIA_2013",
            disposal_method=DisposalMethod.SOFT_DELETE,
            dry_run=dry_run,
            run_at=utcnow(),
        )


@pytest.fixture
def jobs():
    return InMemoryJobStore()


@pytest.fixture
def executor(jobs):
    return ConcurrencyRecordingExecutor(jobs)


@pytest.fixture
def pool(jobs, executor):
    return DisposalWorkerPool(
        jobs,
        executor,
        TenantQuotaTracker(limit=3),
        PoolConfig(size=8, defer_seconds=60, shutdown_timeout=5.0),
        worker_id="worker-test",
    )


class TestDispatchQuota:
    @pytest.mark.asyncio
    async def test_burst_of_one_hundred_defers_all_but_three(self, jobs, pool):
        await queue_jobs(jobs, "tenant-a", 100)
        now = utcnow()
        claimed = await jobs.claim_jobs(
            worker_id=pool.worker_id, now=now, lease_until=now + timedelta(minutes=15), limit=100
        )

        queued = await asyncio.gather(*(pool.dispatch(job) for job in claimed))

        assert sum(queued) == 3
        assert pool.pending == 3
        assert len(jobs.jobs) == 100
        deferred = [job for job in jobs.jobs.values() if job.lease_owner is None]
        assert len(deferred) == 97
        assert all(job.status == JobState.QUEUED for job in deferred)
        assert all(job.run_at > now for job in deferred)

    @pytest.mark.asyncio
    async def test_other_tenants_are_not_affected(self, jobs, pool):
        await queue_jobs(jobs, "tenant-a", 4)
        await queue_jobs(jobs, "tenant-b", 1)
        now = utcnow()
        claimed = await jobs.claim_jobs(
            worker_id=pool.worker_id, now=now, lease_until=now + timedelta(minutes=15), limit=10
        )

        queued = [await pool.dispatch(job) for job in claimed]

        by_tenant = Counter(job.tenant_id for job, ok in zip(claimed, queued, strict=True) if ok)
        assert by_tenant == {"tenant-a": 3, "tenant-b": 1}


class TestDrain:
    @pytest.mark.asyncio
    async def test_drain_runs_everything_within_quota(self, jobs, pool, executor):
        await queue_jobs(jobs, "tenant-a", 10)
        await queue_jobs(jobs, "tenant-b", 2)
        results = []

        deferred = await pool.drain(operation_id="RUN-1", on_result=results.append)
        await pool.shutdown()

        assert deferred == 0
        assert len(results) == 12
        assert all(job.status == JobState.COMPLETED for job in jobs.jobs.values())
        assert executor.peak["tenant-a"] <= 3
        assert pool._quota.peak("tenant-a") <= 3
        assert {operation_id for _, operation_id in executor.calls} == {"RUN-1"}
        assert pool.processed == 12

    @pytest.mark.asyncio
    async def test_drain_honours_tenant_filter(self, jobs, pool, executor):
        await queue_jobs(jobs, "tenant-a", 2)
        await queue_jobs(jobs, "tenant-b", 2)

        await pool.drain(tenant_ids=["tenant-b"])
        await pool.shutdown()

        assert {record_id for record_id, _ in executor.calls} == {"doc-tenant-b-0", "doc-tenant-b-1"}

    @pytest.mark.asyncio
    async def test_drain_only_claims_jobs_of_its_mode(self, jobs, pool, executor):
        await queue_jobs(jobs, "tenant-a", 2, prefix="real")
        await queue_jobs(jobs, "tenant-a", 2, prefix="sim", dry_run=True)

        await pool.drain(dry_run=True)
        await pool.shutdown()

        assert {record_id for record_id, _ in executor.calls} == {"sim-tenant-a-0", "sim-tenant-a-1"}
        real = [job for job in jobs.jobs.values() if not job.dry_run]
        assert all(job.status == JobState.QUEUED and job.lease_owner is None for job in real)

    @pytest.mark.asyncio
    async def test_future_jobs_are_left_for_later(self, jobs, pool, executor):
        await queue_jobs(jobs, "tenant-a", 1)
        job = next(iter(jobs.jobs.values()))
        jobs.jobs[job.job_id] = replace(job, run_at=utcnow() + timedelta(days=1))

        await pool.drain()
        await pool.shutdown()

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_executor_crash_keeps_job_leased(self, jobs):
        executor = ConcurrencyRecordingExecutor(jobs, fail_for={"doc-tenant-a-0"})
        pool = DisposalWorkerPool(jobs, executor, TenantQuotaTracker(), worker_id="worker-test")
        await queue_jobs(jobs, "tenant-a", 2)
        errors = []

        await pool.drain(on_error=lambda job, error: errors.append((job.record_id, str(error))))
        await pool.shutdown()

        assert errors == [("doc-tenant-a-0", "worker died on doc-tenant-a-0")]
        assert pool.crashed == 1
        assert pool.processed == 1
        crashed = next(job for job in jobs.jobs.values() if job.record_id == "doc-tenant-a-0")
        assert crashed.lease_owner == "worker-test"
        assert pool._quota.active("tenant-a") == 0


class TestShutdown:
    @pytest.mark.asyncio
    async def test_queued_jobs_are_released_unstarted(self, jobs, pool, executor):
        await queue_jobs(jobs, "tenant-a", 2)
        await queue_jobs(jobs, "tenant-b", 1)
        now = utcnow()
        claimed = await jobs.claim_jobs(
            worker_id=pool.worker_id, now=now, lease_until=now + timedelta(minutes=15), limit=10
        )
        for job in claimed:
            await pool.dispatch(job)

        pool.start()
        await pool.shutdown()

        assert executor.calls == []
        assert all(job.lease_owner is None for job in jobs.jobs.values())
        assert all(job.status == JobState.QUEUED for job in jobs.jobs.values())
        assert pool.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_without_start_is_a_no_op(self, pool):
        await pool.shutdown()

        assert not pool.is_stopping
