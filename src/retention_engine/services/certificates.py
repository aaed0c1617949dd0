"""Disposal certificates.

A certificate is the sealed proof of one disposal: what was disposed, how,
under which legal basis, and the hash of the record state before disposal.
Certificates are append-only and at most one exists per job.

The certificate hash is SHA-256 over the canonical JSON (sorted keys, compact
separators) of every field except ``certificate_hash``, ``signature`` and
``signing_key_id``. The optional tenant signature signs that hash.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.domain import canonical_json, sha256_hex
from retention_engine.services.errors import CertificationFailedError, StoreError
from retention_engine.services.signing import SigningError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from retention_engine.services.domain import DisposalResult, RetentionJob
    from retention_engine.services.interfaces import EvidenceStore
    from retention_engine.services.signing import CertificateSigner

logger = logging.getLogger(__name__)

# Fields excluded from the certificate hash
UNHASHED_FIELDS = frozenset({"certificate_hash", "signature", "signing_key_id"})


def generate_certificate_id(now: datetime | None = None) -> str:
    """Return a new certificate identifier ``CERT-<YYYYmmddHHMMSS>-<8 upper hex>``."""
    now = now or datetime.now(UTC)
    return f"CERT-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"


def compute_certificate_hash(fields: Mapping[str, Any]) -> str:
    """Hash the canonical JSON of the given certificate fields."""
    hashable = {key: value for key, value in fields.items() if key not in UNHASHED_FIELDS}
    return sha256_hex(canonical_json(hashable))


@dataclass(frozen=True, slots=True)
class DisposalCertificate:
    """Immutable proof of a single disposal.

    Attributes:
        certificate_id: ``CERT-<YYYYmmddHHMMSS>-<8 upper hex>``.
        job_id: Job that performed the disposal.
        tenant_id: Owning tenant.
        record_type: Disposed record type.
        record_id: Disposed record identifier.
        legal_basis_code: Legal basis the retention was counted under.
        disposal_method: Method that was applied.
        pre_disposal_hash: SHA-256 of the record snapshot before disposal.
        archive_id: Pre-disposal archive, when one was written.
        compliance_references: Statutory references of the legal basis.
        system_version: Engine version that issued the certificate.
        generated_at: When the certificate was generated.
        certificate_hash: SHA-256 over the hashable fields.
        signature: Base64 tenant signature over the hash, if signed.
        signing_key_id: Key that produced the signature.
    """

    certificate_id: str
    job_id: uuid.UUID
    tenant_id: str
    record_type: str
    record_id: str
    legal_basis_code: str
    disposal_method: DisposalMethod
    pre_disposal_hash: str | None
    archive_id: str | None
    compliance_references: tuple[str, ...]
    system_version: str
    generated_at: datetime
    certificate_hash: str = ""
    signature: str | None = None
    signing_key_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "certificate_id": self.certificate_id,
            "job_id": str(self.job_id),
            "tenant_id": self.tenant_id,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "legal_basis_code": self.legal_basis_code,
            "disposal_method": self.disposal_method.value,
            "pre_disposal_hash": self.pre_disposal_hash,
            "archive_id": self.archive_id,
            "compliance_references": list(self.compliance_references),
            "system_version": self.system_version,
            "generated_at": self.generated_at.isoformat(),
            "certificate_hash": self.certificate_hash,
            "signature": self.signature,
            "signing_key_id": self.signing_key_id,
        }

    def hashable_fields(self) -> dict[str, Any]:
        """The fields covered by ``certificate_hash``."""
        return {key: value for key, value in self.to_dict().items() if key not in UNHASHED_FIELDS}

    def compute_hash(self) -> str:
        return compute_certificate_hash(self.hashable_fields())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DisposalCertificate:
        """Rebuild a certificate from ``to_dict`` output."""
        return cls(
            certificate_id=data["certificate_id"],
            job_id=uuid.UUID(str(data["job_id"])),
            tenant_id=data["tenant_id"],
            record_type=data["record_type"],
            record_id=data["record_id"],
            legal_basis_code=data["legal_basis_code"],
            disposal_method=DisposalMethod(data["disposal_method"]),
            pre_disposal_hash=data.get("pre_disposal_hash"),
            archive_id=data.get("archive_id"),
            compliance_references=tuple(data.get("compliance_references") or ()),
            system_version=data["system_version"],
            generated_at=datetime.fromisoformat(data["generated_at"]),
            certificate_hash=data.get("certificate_hash", ""),
            signature=data.get("signature"),
            signing_key_id=data.get("signing_key_id"),
        )


@dataclass(frozen=True, slots=True)
class SealResult:
    """Outcome of sealing a disposal.

    Attributes:
        certificate: The issued (or previously issued) certificate.
        signing_gap: Why the certificate is unsigned although signing is on.
        reused: True when an existing certificate for the job was returned.
    """

    certificate: DisposalCertificate
    signing_gap: str | None = None
    reused: bool = False


class CertificateService:
    """Issues and verifies disposal certificates.

    Example:
        service = CertificateService(evidence_store, signer, system_version="0.1.0")
        result = await service.seal_disposal(job, pre_hash, disposal_result, references)
        assert service.verify_certificate(result.certificate)
    """

    def __init__(
        self,
        evidence_store: EvidenceStore,
        signer: CertificateSigner | None = None,
        *,
        system_version: str,
    ) -> None:
        self._evidence = evidence_store
        self._signer = signer
        self._system_version = system_version

    async def seal_disposal(
        self,
        job: RetentionJob,
        pre_hash: str | None,
        disposal_result: DisposalResult,
        compliance_references: Sequence[str] = (),
        *,
        persist: bool = True,
        now: datetime | None = None,
    ) -> SealResult:
        """Issue the certificate for a completed disposal.

        When a certificate already exists for the job it is returned
        unchanged, so a resumed job never produces a second certificate.

        Args:
            job: The job that performed the disposal.
            pre_hash: Hash of the record state before disposal.
            disposal_result: Result of the disposal method.
            compliance_references: Statutory references of the legal basis.
            persist: Store the certificate (False for dry runs).
            now: Generation time (defaults to the current time).

        Returns:
            SealResult with the certificate and any signing gap.

        Raises:
            CertificationFailedError: If the certificate cannot be stored.
        """
        try:
            if persist:
                existing = await self._evidence.get_certificate_for_job(job.job_id)
                if existing is not None:
                    logger.info(
                        "Reusing certificate %s for job %s", existing.certificate_id, job.job_id
                    )
                    return SealResult(certificate=existing, reused=True)
        except StoreError as e:
            msg = f"Cannot look up certificate for job {job.job_id}: {e}"
            raise CertificationFailedError(msg) from e

        generated_at = now or datetime.now(UTC)
        certificate = DisposalCertificate(
            certificate_id=generate_certificate_id(generated_at),
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            record_type=job.record_type,
            record_id=job.record_id,
            legal_basis_code=job.legal_basis_code,
            disposal_method=disposal_result.method,
            pre_disposal_hash=pre_hash,
            archive_id=job.archive_id,
            compliance_references=tuple(compliance_references),
            system_version=self._system_version,
            generated_at=generated_at,
        )
        certificate = replace(certificate, certificate_hash=certificate.compute_hash())

        signing_gap = None
        if self._signer is not None:
            try:
                signed = self._signer.sign(job.tenant_id, certificate.certificate_hash)
                certificate = replace(
                    certificate, signature=signed.signature, signing_key_id=signed.key_id
                )
            except SigningError as e:
                signing_gap = f"Certificate {certificate.certificate_id} issued unsigned: {e}"
                logger.warning("%s", signing_gap)

        if persist:
            try:
                await self._evidence.put_certificate(certificate)
            except StoreError as e:
                msg = f"Cannot store certificate {certificate.certificate_id}: {e}"
                raise CertificationFailedError(msg) from e

        logger.info(
            "Sealed certificate %s for %s/%s (method=%s, persisted=%s)",
            certificate.certificate_id,
            certificate.record_type,
            certificate.record_id,
            certificate.disposal_method.value,
            persist,
        )
        return SealResult(certificate=certificate, signing_gap=signing_gap)

    def verify_certificate(self, certificate: DisposalCertificate) -> bool:
        """Recompute the certificate hash and check the signature when present."""
        if certificate.compute_hash() != certificate.certificate_hash:
            logger.warning("Certificate %s hash mismatch", certificate.certificate_id)
            return False

        if certificate.signature and self._signer is not None:
            if not self._signer.verify(
                certificate.tenant_id, certificate.certificate_hash, certificate.signature
            ):
                logger.warning("Certificate %s signature invalid", certificate.certificate_id)
                return False

        return True
