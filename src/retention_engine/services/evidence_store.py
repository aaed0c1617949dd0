"""PostgreSQL storage for certificates, archive manifests and violations.

All three tables are append-only. Nothing here updates or deletes a row.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from retention_engine.db.models.certificates import ArchiveManifestRecord, DisposalCertificateRecord
from retention_engine.db.models.compliance import ComplianceViolationRecord
from retention_engine.services.archival import ArchiveManifest
from retention_engine.services.certificates import DisposalCertificate
from retention_engine.services.errors import CertificateStoreError

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from retention_engine.services.compliance import ComplianceViolation

logger = logging.getLogger(__name__)


def _to_certificate(record: DisposalCertificateRecord) -> DisposalCertificate:
    return DisposalCertificate(
        certificate_id=record.certificate_id,
        job_id=record.job_id,
        tenant_id=record.tenant_id,
        record_type=record.record_type,
        record_id=record.record_id,
        legal_basis_code=record.legal_basis_code,
        disposal_method=record.disposal_method,
        pre_disposal_hash=record.pre_disposal_hash,
        archive_id=record.archive_id,
        compliance_references=tuple(record.compliance_references or ()),
        system_version=record.system_version,
        generated_at=record.generated_at,
        certificate_hash=record.certificate_hash,
        signature=record.signature,
        signing_key_id=record.signing_key_id,
    )


def _to_manifest(record: ArchiveManifestRecord) -> ArchiveManifest:
    return ArchiveManifest(
        archive_id=record.archive_id,
        record_type=record.record_type,
        record_count=record.record_count,
        file_hash=record.file_hash,
        storage_location=record.storage_location,
        archived_at=record.archived_at,
        record_ids=tuple(record.record_ids or ()),
        simulated=record.simulated,
    )


class SqlEvidenceStore:
    """Append-only evidence storage on the shared session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def put_certificate(self, certificate: DisposalCertificate) -> None:
        """Insert a certificate.

        Raises:
            CertificateStoreError: If the insert fails, including when the job
                already has a certificate.
        """
        record = DisposalCertificateRecord(
            certificate_id=certificate.certificate_id,
            job_id=certificate.job_id,
            tenant_id=certificate.tenant_id,
            record_type=certificate.record_type,
            record_id=certificate.record_id,
            legal_basis_code=certificate.legal_basis_code,
            disposal_method=certificate.disposal_method,
            pre_disposal_hash=certificate.pre_disposal_hash,
            archive_id=certificate.archive_id,
            compliance_references=list(certificate.compliance_references),
            system_version=certificate.system_version,
            generated_at=certificate.generated_at,
            certificate_hash=certificate.certificate_hash,
            signature=certificate.signature,
            signing_key_id=certificate.signing_key_id,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except IntegrityError as e:
            msg = f"Certificate for job {certificate.job_id} already exists"
            raise CertificateStoreError(msg) from e
        except SQLAlchemyError as e:
            msg = f"Cannot store certificate {certificate.certificate_id}: {e}"
            raise CertificateStoreError(msg) from e

    async def get_certificate(self, certificate_id: str) -> DisposalCertificate | None:
        query = select(DisposalCertificateRecord).where(
            DisposalCertificateRecord.certificate_id == certificate_id
        )
        record = await self._fetch_one(query)
        return _to_certificate(record) if record is not None else None

    async def get_certificate_for_job(self, job_id: uuid.UUID) -> DisposalCertificate | None:
        query = select(DisposalCertificateRecord).where(DisposalCertificateRecord.job_id == job_id)
        record = await self._fetch_one(query)
        return _to_certificate(record) if record is not None else None

    async def list_certificates(self, *, tenant_id: str | None = None) -> list[DisposalCertificate]:
        query = select(DisposalCertificateRecord).order_by(DisposalCertificateRecord.generated_at)
        if tenant_id is not None:
            query = query.where(DisposalCertificateRecord.tenant_id == tenant_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [_to_certificate(record) for record in result.scalars().all()]
        except SQLAlchemyError as e:
            msg = f"Cannot list certificates: {e}"
            raise CertificateStoreError(msg) from e

    async def put_manifest(self, manifest: ArchiveManifest) -> None:
        record = ArchiveManifestRecord(
            archive_id=manifest.archive_id,
            record_type=manifest.record_type,
            record_count=manifest.record_count,
            file_hash=manifest.file_hash,
            storage_location=manifest.storage_location,
            archived_at=manifest.archived_at,
            record_ids=list(manifest.record_ids),
            simulated=manifest.simulated,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as e:
            msg = f"Cannot store archive manifest {manifest.archive_id}: {e}"
            raise CertificateStoreError(msg) from e

    async def get_manifest(self, archive_id: str) -> ArchiveManifest | None:
        query = select(ArchiveManifestRecord).where(ArchiveManifestRecord.archive_id == archive_id)
        record = await self._fetch_one(query)
        return _to_manifest(record) if record is not None else None

    async def record_violation(
        self,
        violation: ComplianceViolation,
        *,
        operation_id: str | None = None,
    ) -> None:
        record = ComplianceViolationRecord(
            tenant_id=violation.tenant_id,
            record_type=violation.record_type,
            record_id=violation.record_id,
            legal_basis_code=violation.legal_basis_code,
            certificate_id=violation.certificate_id,
            required_date=violation.required_date,
            actual_date=violation.actual_date,
            days_early=violation.days_early,
            operation_id=operation_id,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as e:
            msg = f"Cannot store compliance violation for {violation.record_type}/{violation.record_id}: {e}"
            raise CertificateStoreError(msg) from e

        logger.info(
            "Recorded compliance violation for %s/%s (%d day(s) early)",
            violation.record_type,
            violation.record_id,
            violation.days_early,
        )

    async def _fetch_one(self, query: Any) -> Any:
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            msg = f"Evidence store query failed: {e}"
            raise CertificateStoreError(msg) from e
