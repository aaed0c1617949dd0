"""Fixed-size asyncio pool of disposal workers.

Jobs reach the workers through one queue. The tenant quota is checked
before a job is queued: a job whose tenant is already at its limit is
deferred in the job store (``run_at`` pushed forward) and never dropped.
When the pool claims work itself it skips saturated tenants, so deferral
only happens when jobs are dispatched in a burst.

Shutdown stops intake, lets running jobs reach the end of their current
phase and waits up to ``shutdown_timeout`` seconds for them. Jobs still
queued at that point are released back to the store unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from retention_engine.services.errors import StoreError

if TYPE_CHECKING:
    from retention_engine.core.config import SchedulerSettings
    from retention_engine.services.disposal import DisposalExecutor, ExecutionResult
    from retention_engine.services.domain import RetentionJob
    from retention_engine.services.interfaces import JobStore
    from retention_engine.services.quota import TenantQuotaTracker

logger = logging.getLogger(__name__)

ResultCallback = Callable[["ExecutionResult"], None]
ErrorCallback = Callable[["RetentionJob", Exception], None]


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Sizing and timing of the worker pool.

    Attributes:
        size: Number of worker tasks.
        defer_seconds: Delay applied to jobs deferred by the tenant quota.
        lease_seconds: Lease written on claimed jobs.
        shutdown_timeout: Seconds to wait for running jobs on shutdown.
    """

    size: int = 8
    defer_seconds: int = 60
    lease_seconds: int = 900
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: SchedulerSettings) -> PoolConfig:
        return cls(
            size=settings.worker_pool_size,
            defer_seconds=settings.defer_seconds,
            lease_seconds=settings.lease_seconds,
            shutdown_timeout=settings.shutdown_timeout,
        )


@dataclass(frozen=True, slots=True)
class _Work:
    job: RetentionJob
    operation_id: str | None
    on_result: ResultCallback | None
    on_error: ErrorCallback | None


class DisposalWorkerPool:
    """Runs disposal jobs on a fixed number of asyncio workers.

    Example:
        pool = DisposalWorkerPool(job_store, executor, TenantQuotaTracker(3))
        pool.start()
        deferred = await pool.drain(operation_id="run-1")
        await pool.shutdown()
    """

    def __init__(
        self,
        jobs: JobStore,
        executor: DisposalExecutor,
        quota: TenantQuotaTracker,
        config: PoolConfig | None = None,
        *,
        worker_id: str | None = None,
    ) -> None:
        self._jobs = jobs
        self._executor = executor
        self._quota = quota
        self.config = config or PoolConfig()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._queue: asyncio.Queue[_Work | None] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._slot_freed = asyncio.Event()
        self._pending = 0
        self.processed = 0
        self.crashed = 0

    @property
    def pending(self) -> int:
        """Jobs queued or running."""
        return self._pending

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self.config.size):
            self._workers.append(
                asyncio.create_task(self._worker(index), name=f"disposal-worker-{index}")
            )
        logger.info("Worker pool %s started with %d worker(s)", self.worker_id, self.config.size)

    async def dispatch(
        self,
        job: RetentionJob,
        *,
        operation_id: str | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> bool:
        """Queue a claimed job, or defer it when its tenant is at quota.

        Returns:
            True when the job was queued, False when it was deferred.
        """
        if not await self._quota.try_acquire(job.tenant_id):
            run_at = datetime.now(UTC) + timedelta(seconds=self.config.defer_seconds)
            await self._jobs.defer(job.job_id, owner=self.worker_id, run_at=run_at)
            logger.info(
                "Tenant %s at quota (%d); job %s deferred to %s",
                job.tenant_id,
                self._quota.limit,
                job.job_id,
                run_at.isoformat(),
            )
            return False

        self._pending += 1
        await self._queue.put(_Work(job, operation_id, on_result, on_error))
        return True

    async def fill(
        self,
        *,
        operation_id: str | None = None,
        tenant_ids: Collection[str] | None = None,
        dry_run: bool | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> tuple[int, int]:
        """Claim runnable jobs until every worker has one.

        ``dry_run`` restricts claiming to real or simulated jobs; None takes both.

        Returns:
            Number of jobs claimed and how many of those were deferred.
        """
        claimed = deferred = 0
        while not self.is_stopping and self._pending < self.config.size:
            now = datetime.now(UTC)
            jobs = await self._jobs.claim_jobs(
                worker_id=self.worker_id,
                now=now,
                lease_until=now + timedelta(seconds=self.config.lease_seconds),
                limit=1,
                tenant_ids=tenant_ids,
                exclude_tenants=self._quota.saturated(),
                dry_run=dry_run,
            )
            if not jobs:
                break
            claimed += 1
            queued = await self.dispatch(
                jobs[0], operation_id=operation_id, on_result=on_result, on_error=on_error
            )
            if not queued:
                deferred += 1
        return claimed, deferred

    async def drain(
        self,
        *,
        operation_id: str | None = None,
        tenant_ids: Collection[str] | None = None,
        dry_run: bool | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> int:
        """Process runnable jobs until none is left and the pool is idle.

        Jobs scheduled in the future (retries, deferrals) are left for later,
        and so are jobs of the other mode when ``dry_run`` is given.

        Returns:
            Number of jobs deferred by the tenant quota.
        """
        self.start()
        deferred = 0
        while not self.is_stopping:
            self._slot_freed.clear()
            claimed, skipped = await self.fill(
                operation_id=operation_id,
                tenant_ids=tenant_ids,
                dry_run=dry_run,
                on_result=on_result,
                on_error=on_error,
            )
            deferred += skipped
            if claimed == 0 and self._pending == 0:
                break
            if claimed == 0 or self._pending >= self.config.size:
                await self._slot_freed.wait()
        return deferred

    async def wait_idle(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop intake and wait for running jobs to reach a phase boundary."""
        if not self._workers:
            return
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        logger.info("Worker pool %s shutting down (%d pending)", self.worker_id, self._pending)
        self._stopping.set()
        self._slot_freed.set()
        for _ in self._workers:
            self._queue.put_nowait(None)

        _, unfinished = await asyncio.wait(self._workers, timeout=timeout)
        if unfinished:
            logger.warning(
                "%d worker(s) did not stop within %.0fs; cancelling", len(unfinished), timeout
            )
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)

        self._workers = []
        logger.info(
            "Worker pool %s stopped: processed=%d, crashed=%d",
            self.worker_id,
            self.processed,
            self.crashed,
        )

    async def _worker(self, index: int) -> None:
        while True:
            work = await self._queue.get()
            if work is None:
                self._queue.task_done()
                return
            try:
                await self._process(work)
            finally:
                await self._quota.release(work.job.tenant_id)
                self._pending -= 1
                self._slot_freed.set()
                self._queue.task_done()

    async def _process(self, work: _Work) -> None:
        job = work.job
        if self.is_stopping:
            # Never started; give it back untouched
            try:
                await self._jobs.release(job.job_id, owner=self.worker_id)
            except StoreError as e:
                logger.error("Could not release job %s on shutdown: %s", job.job_id, e)
            return

        try:
            result = await self._executor.run(
                job,
                should_stop=self._stopping.is_set,
                operation_id=work.operation_id,
            )
        except Exception as e:
            # The job keeps its lease and is reclaimed once the lease expires
            self.crashed += 1
            logger.exception("Disposal of job %s crashed: %s", job.job_id, e)
            if work.on_error is not None:
                work.on_error(job, e)
            return

        self.processed += 1
        if work.on_result is not None:
            work.on_result(result)
