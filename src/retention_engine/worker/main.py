"""Retention daemon entry point and component wiring.

This module provides:
- build_components: assembles stores, services, pool and runner from settings
- run_daemon: trigger loop plus worker pool until shutdown
- run: process entry point with signal handling

The host application supplies its record source adapter through the
``RETENTION_ENGINE_RECORD_SOURCE`` setting ("package.module:factory"). The
factory is called with the settings and returns the adapter.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
import signal
import socket
import sys
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, NoReturn

from retention_engine.db import close_engine, get_session_factory
from retention_engine.services.archival import ArchivalService, S3ArchiveStore
from retention_engine.services.audit_trail import AuditTrail, SqlAuditStore
from retention_engine.services.certificates import CertificateService
from retention_engine.services.compliance import ComplianceViolationDetector
from retention_engine.services.disposal import DisposalExecutor, ExecutorConfig
from retention_engine.services.evidence_store import SqlEvidenceStore
from retention_engine.services.job_store import SqlJobStore
from retention_engine.services.lease import LeaseLock, SqlLeaseStore
from retention_engine.services.legal_hold import LegalHoldGuard
from retention_engine.services.notifications import WebhookNotificationGateway
from retention_engine.services.policy import PolicyRegistry, RetentionPolicyEvaluator
from retention_engine.services.quota import TenantQuotaTracker
from retention_engine.services.reporting import FileReportStore
from retention_engine.services.runner import RetentionRunner, RunnerConfig
from retention_engine.services.signing import CertificateSigner
from retention_engine.services.storage import ObjectStoreClient, StorageError
from retention_engine.worker.handlers import (
    check_retention_deadlines_handler,
    cleanup_finished_jobs_handler,
    verify_audit_integrity_handler,
    verify_legal_holds_handler,
)
from retention_engine.worker.pool import DisposalWorkerPool, PoolConfig
from retention_engine.worker.scheduler import TriggerEngine, TriggerHandler, run_scheduler_loop

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from retention_engine.core.config import Settings
    from retention_engine.services.interfaces import RecordSourceAdapter

logger = logging.getLogger(__name__)


class RecordSourceError(Exception):
    """Raised when the host record source adapter cannot be loaded."""

    pass


def load_record_source(path: str | None, settings: Settings) -> RecordSourceAdapter:
    """Import and call the adapter factory named by ``path``.

    Raises:
        RecordSourceError: If the path is unset, malformed or not importable.
    """
    if not path:
        msg = "No record source configured. Set RETENTION_ENGINE_RECORD_SOURCE=package.module:factory."
        raise RecordSourceError(msg)

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        msg = f"Record source {path!r} must have the form package.module:factory"
        raise RecordSourceError(msg)

    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        msg = f"Cannot load record source {path!r}: {e}"
        raise RecordSourceError(msg) from e

    return factory(settings)


@dataclass
class WorkerComponents:
    """Everything a run or the daemon needs, wired from one settings object."""

    settings: Settings
    worker_id: str
    records: RecordSourceAdapter
    registry: PolicyRegistry
    jobs: SqlJobStore
    audit_store: SqlAuditStore
    audit: AuditTrail
    evidence: SqlEvidenceStore
    certificates: CertificateService
    object_store: ObjectStoreClient
    notifier: WebhookNotificationGateway
    executor: DisposalExecutor
    pool: DisposalWorkerPool
    lease_lock: LeaseLock
    runner: RetentionRunner

    async def close(self) -> None:
        await self.notifier.close()
        await close_engine()


def build_components(
    settings: Settings,
    *,
    records: RecordSourceAdapter | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    report_directory: str | None = None,
) -> WorkerComponents:
    """Wire the engine from settings.

    Args:
        settings: Validated settings.
        records: Adapter to use instead of the configured factory.
        session_factory: Session factory to use instead of the shared one.
        report_directory: Report directory overriding the configured one.
    """
    session_factory = session_factory or get_session_factory()
    records = records or load_record_source(settings.record_source, settings)
    worker_id = f"{socket.gethostname()}-{os.getpid()}"

    registry = PolicyRegistry.from_settings(settings)
    evaluator = RetentionPolicyEvaluator(registry)

    jobs = SqlJobStore(session_factory)
    audit_store = SqlAuditStore(session_factory)
    evidence = SqlEvidenceStore(session_factory)
    audit = AuditTrail(audit_store)

    signer = CertificateSigner.from_settings(settings.signing) if settings.signing.enabled else None
    certificates = CertificateService(evidence, signer, system_version=settings.app_version)

    object_store = ObjectStoreClient.from_settings(settings.s3)
    archival = ArchivalService(S3ArchiveStore(object_store, settings.s3.archive_bucket), evidence)
    notifier = WebhookNotificationGateway.from_settings(settings.notifications)

    executor = DisposalExecutor(
        jobs=jobs,
        records=records,
        evaluator=evaluator,
        hold_guard=LegalHoldGuard(records),
        archival=archival,
        certificates=certificates,
        audit=audit,
        compliance=ComplianceViolationDetector(fallback=registry),
        evidence=evidence,
        notifier=notifier,
        config=ExecutorConfig.from_settings(settings),
    )
    pool = DisposalWorkerPool(
        jobs,
        executor,
        TenantQuotaTracker(settings.scheduler.tenant_quota),
        PoolConfig.from_settings(settings.scheduler),
        worker_id=worker_id,
    )
    lease_lock = LeaseLock(
        SqlLeaseStore(session_factory),
        holder=worker_id,
        lease_seconds=settings.scheduler.lease_seconds,
    )
    runner = RetentionRunner(
        records=records,
        evaluator=evaluator,
        jobs=jobs,
        pool=pool,
        lease_lock=lease_lock,
        notifier=notifier,
        reports=FileReportStore(report_directory or settings.policy.report_directory),
        config=RunnerConfig.from_settings(settings),
    )

    return WorkerComponents(
        settings=settings,
        worker_id=worker_id,
        records=records,
        registry=registry,
        jobs=jobs,
        audit_store=audit_store,
        audit=audit,
        evidence=evidence,
        certificates=certificates,
        object_store=object_store,
        notifier=notifier,
        executor=executor,
        pool=pool,
        lease_lock=lease_lock,
        runner=runner,
    )


def build_trigger_handlers(components: WorkerComponents) -> dict[str, TriggerHandler]:
    """Bind the default trigger handlers to the wired components."""
    settings = components.settings
    return {
        "check_retention_deadlines": partial(
            check_retention_deadlines_handler,
            components.runner,
            dry_run=settings.dry_run,
            force_production=settings.allow_production_disposal,
        ),
        "verify_legal_holds": partial(
            verify_legal_holds_handler,
            components.records,
            components.notifier,
            warning_days=settings.scheduler.hold_warning_days,
        ),
        "verify_audit_integrity": partial(
            verify_audit_integrity_handler,
            components.audit,
            components.audit_store,
            components.evidence,
            components.certificates,
            components.notifier,
        ),
        "cleanup_finished_jobs": partial(
            cleanup_finished_jobs_handler,
            components.jobs,
            retention_days=settings.scheduler.job_cleanup_days,
        ),
    }


async def ensure_archive_bucket(components: WorkerComponents) -> None:
    """Create the archive bucket if missing; failures are logged, not fatal."""
    bucket = components.settings.s3.archive_bucket
    try:
        await asyncio.to_thread(components.object_store.ensure_bucket, bucket)
    except StorageError as e:
        logger.error("Archive bucket %s is not available: %s", bucket, e)


async def run_daemon(components: WorkerComponents, shutdown_event: asyncio.Event) -> None:
    """Run triggers and the worker pool until ``shutdown_event`` is set."""
    settings = components.settings
    await ensure_archive_bucket(components)

    components.pool.start()
    engine = TriggerEngine(components.lease_lock, build_trigger_handlers(components))
    scheduler_task = asyncio.create_task(
        run_scheduler_loop(
            engine,
            components.pool,
            check_interval=settings.scheduler.check_interval,
            shutdown_event=shutdown_event,
            dry_run=settings.dry_run,
        )
    )

    await shutdown_event.wait()

    # Stop the pool first so a run in progress stops draining and reports
    await components.pool.shutdown()
    try:
        await asyncio.wait_for(scheduler_task, timeout=settings.scheduler.shutdown_timeout)
    except TimeoutError:
        logger.warning("Scheduler did not stop within timeout, forcing shutdown")
        scheduler_task.cancel()


async def serve(settings: Settings) -> None:
    """Build components and run the daemon with SIGTERM/SIGINT handling."""
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, shutdown_event.set)

    components = build_components(settings)
    logger.info(
        "Retention daemon starting: worker_id=%s, environment=%s, dry_run=%s",
        components.worker_id,
        settings.environment.value,
        settings.dry_run,
    )
    try:
        await run_daemon(components, shutdown_event)
    finally:
        await components.close()
    logger.info("Retention daemon stopped")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run() -> NoReturn:
    """Run the daemon process."""
    from retention_engine.core.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Daemon interrupted")
    except RecordSourceError as e:
        logger.critical("%s", e)
        sys.exit(1)
    except Exception as e:
        logger.exception("Daemon failed: %s", e)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    run()
