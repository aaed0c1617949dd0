"""Command line interface.

Commands:
    retention-engine run [--dry-run] [--force-production] [--tenant ID ...] [--report-dir DIR]
    retention-engine daemon
    retention-engine retrigger JOB_ID
    retention-engine verify-certificate CERT_ID

Exit code 0 on success, 1 on any unrecoverable failure (lease conflict,
production guard, store failure or a critical failure during the run).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from retention_engine.services.errors import (
    ConcurrentRunDetectedError,
    ProductionGuardError,
    RetentionEngineError,
    StoreError,
)

if TYPE_CHECKING:
    from retention_engine.core.config import Settings

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="retention-engine",
        description="Retention-law enforcement: dispose of records whose retention period elapsed",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Execute one retention run and exit")
    run.add_argument("--dry-run", action="store_true", help="Simulate; skip every destructive call")
    run.add_argument(
        "--force-production",
        action="store_true",
        help="Permit a real destructive run in production",
    )
    run.add_argument(
        "--tenant",
        dest="tenants",
        action="append",
        metavar="ID",
        help="Restrict the run to a tenant (repeatable)",
    )
    run.add_argument("--report-dir", metavar="DIR", help="Directory for the JSON run report")

    commands.add_parser("daemon", help="Run the trigger scheduler and worker pool until stopped")

    retrigger = commands.add_parser("retrigger", help="Queue a new job for a finished job's record")
    retrigger.add_argument("job_id", metavar="JOB_ID", type=uuid.UUID)

    verify = commands.add_parser("verify-certificate", help="Recompute and check a certificate")
    verify.add_argument("certificate_id", metavar="CERT_ID")

    return parser


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    from retention_engine.worker.main import build_components

    components = build_components(settings, report_directory=args.report_dir)
    try:
        report = await components.runner.run(
            dry_run=args.dry_run,
            force_production=args.force_production,
            tenant_ids=args.tenants,
        )
    finally:
        await components.pool.shutdown()
        await components.close()

    _print_json(report.to_dict())
    if not report.succeeded:
        logger.error(
            "Run %s finished with %d critical failure(s)",
            report.operation_id,
            len(report.critical_failures),
        )
        return 1
    return 0


async def _retrigger(job_id: uuid.UUID) -> int:
    from retention_engine.db import close_engine, get_session_factory
    from retention_engine.services.job_store import SqlJobStore

    jobs = SqlJobStore(get_session_factory())
    try:
        job = await jobs.get_job(job_id)
        if job is None:
            logger.error("Job %s not found", job_id)
            return 1
        if not job.status.is_terminal:
            logger.error("Job %s is %s; only finished jobs can be retriggered", job_id, job.status.name)
            return 1

        new_job = await jobs.create_job(
            tenant_id=job.tenant_id,
            record_type=job.record_type,
            record_id=job.record_id,
            legal_basis_code=job.legal_basis_code,
            disposal_method=job.disposal_method,
            dry_run=job.dry_run,
            run_at=datetime.now(UTC),
        )
    finally:
        await close_engine()

    if new_job is None:
        logger.error("%s/%s already has an unfinished job", job.record_type, job.record_id)
        return 1

    logger.info("Job %s retriggered as %s", job_id, new_job.job_id)
    _print_json({"retriggered": str(job_id), **new_job.to_dict()})
    return 0


async def _verify_certificate(settings: Settings, certificate_id: str) -> int:
    from retention_engine.db import close_engine, get_session_factory
    from retention_engine.services.certificates import CertificateService
    from retention_engine.services.evidence_store import SqlEvidenceStore
    from retention_engine.services.signing import CertificateSigner

    evidence = SqlEvidenceStore(get_session_factory())
    signer = CertificateSigner.from_settings(settings.signing) if settings.signing.enabled else None
    service = CertificateService(evidence, signer, system_version=settings.app_version)
    try:
        certificate = await evidence.get_certificate(certificate_id)
    finally:
        await close_engine()

    if certificate is None:
        logger.error("Certificate %s not found", certificate_id)
        return 1

    valid = service.verify_certificate(certificate)
    _print_json({"certificate_id": certificate_id, "valid": valid, "certificate": certificate.to_dict()})
    return 0 if valid else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from retention_engine.core.settings import get_settings
    from retention_engine.worker.main import RecordSourceError, configure_logging, serve

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        if args.command == "run":
            return asyncio.run(_run(settings, args))
        if args.command == "daemon":
            asyncio.run(serve(settings))
            return 0
        if args.command == "retrigger":
            return asyncio.run(_retrigger(args.job_id))
        return asyncio.run(_verify_certificate(settings, args.certificate_id))
    except ProductionGuardError as e:
        logger.error("%s", e)
    except ConcurrentRunDetectedError as e:
        logger.error("Another retention run is in progress: %s", e)
    except StoreError as e:
        logger.error("Store failure: %s", e)
    except RecordSourceError as e:
        logger.error("%s", e)
    except RetentionEngineError as e:
        logger.error("Retention engine error: %s", e)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 1


if __name__ == "__main__":
    sys.exit(main())
