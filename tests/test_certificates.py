"""Tests for disposal certificates and per-tenant signing.

Tests cover:
- Certificate identifiers and hash computation
- One certificate per job (reuse on resumed jobs)
- Tamper detection through hash and signature verification
- ECDSA P-384 tenant keys: generation, loading, missing keys
- Unsigned certificates reported as signing gaps
"""

import re
import uuid
from dataclasses import replace
from datetime import UTC, datetime

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

from retention_engine.db.models.base import DisposalMethod, JobState
from retention_engine.services.certificates import (
    CertificateService,
    DisposalCertificate,
    generate_certificate_id,
)
from retention_engine.services.domain import DisposalResult, RetentionJob
from retention_engine.services.errors import CertificationFailedError, CertificateStoreError
from retention_engine.services.signing import CertificateSigner, SigningError, SigningKeyNotFoundError
from tests.fakes import TENANT, InMemoryEvidenceStore, utcnow

PRE_HASH = "a" * 64


@pytest.fixture
def job():
    now = utcnow()
    return RetentionJob(
        job_id=uuid.uuid4(),
        tenant_id=TENANT,
        record_type="Document",
        record_id="doc-1",
        legal_basis_code="POPIA_2013",
        disposal_method=DisposalMethod.PERMANENT_DELETE,
        status=JobState.CERTIFYING,
        attempts=1,
        created_at=now,
        run_at=now,
        archive_id="ARCH-20261018000000-0000ABCD",
        disposed_at=now,
    )


@pytest.fixture
def result():
    return DisposalResult(method=DisposalMethod.PERMANENT_DELETE, applied=True)


@pytest.fixture
def evidence():
    return InMemoryEvidenceStore()


@pytest.fixture
def signer(tmp_path):
    return CertificateSigner(tmp_path / "keys", generate_missing_keys=True)


class TestCertificateIds:
    def test_format(self):
        certificate_id = generate_certificate_id(datetime(2026, 10, 18, 12, 0, 5, tzinfo=UTC))

        assert re.fullmatch(r"CERT-20261018120005-[0-9A-F]{8}", certificate_id)

    def test_ids_are_unique(self):
        now = utcnow()

        assert len({generate_certificate_id(now) for _ in range(50)}) == 50


class TestSealDisposal:
    @pytest.mark.asyncio
    async def test_seal_persists_certificate(self, evidence, job, result):
        service = CertificateService(evidence, system_version="1.2.3")

        sealed = await service.seal_disposal(job, PRE_HASH, result, ["POPIA §14 - Retention Limitation"])

        certificate = sealed.certificate
        assert not sealed.reused
        assert sealed.signing_gap is None
        assert evidence.certificates[certificate.certificate_id] == certificate
        assert certificate.pre_disposal_hash == PRE_HASH
        assert certificate.archive_id == job.archive_id
        assert certificate.system_version == "1.2.3"
        assert certificate.compliance_references == ("POPIA §14 - Retention Limitation",)
        assert certificate.signature is None
        assert service.verify_certificate(certificate)

    @pytest.mark.asyncio
    async def test_second_seal_for_job_reuses_certificate(self, evidence, job, result):
        service = CertificateService(evidence, system_version="1.2.3")
        first = await service.seal_disposal(job, PRE_HASH, result)

        second = await service.seal_disposal(job, PRE_HASH, result)

        assert second.reused
        assert second.certificate == first.certificate
        assert len(evidence.certificates) == 1

    @pytest.mark.asyncio
    async def test_unpersisted_seal_stores_nothing(self, evidence, job, result):
        service = CertificateService(evidence, system_version="1.2.3")

        sealed = await service.seal_disposal(job, PRE_HASH, result, persist=False)

        assert evidence.certificates == {}
        assert service.verify_certificate(sealed.certificate)

    @pytest.mark.asyncio
    async def test_store_failure_is_certification_failure(self, evidence, job, result):
        async def broken_put(certificate):
            raise CertificateStoreError("evidence db down")

        evidence.put_certificate = broken_put
        service = CertificateService(evidence, system_version="1.2.3")

        with pytest.raises(CertificationFailedError, match="evidence db down"):
            await service.seal_disposal(job, PRE_HASH, result)

    @pytest.mark.asyncio
    async def test_dict_form_preserves_hash(self, evidence, job, result):
        service = CertificateService(evidence, system_version="1.2.3")
        certificate = (await service.seal_disposal(job, PRE_HASH, result)).certificate

        restored = DisposalCertificate.from_dict(certificate.to_dict())

        assert restored == certificate
        assert service.verify_certificate(restored)


class TestTamperDetection:
    @pytest.mark.asyncio
    async def test_modified_field_fails_verification(self, evidence, job, result):
        service = CertificateService(evidence, system_version="1.2.3")
        certificate = (await service.seal_disposal(job, PRE_HASH, result)).certificate

        tampered = replace(certificate, record_id="doc-2")

        assert not service.verify_certificate(tampered)

    @pytest.mark.asyncio
    async def test_signed_certificate_verifies(self, evidence, job, result, signer):
        service = CertificateService(evidence, signer, system_version="1.2.3")

        certificate = (await service.seal_disposal(job, PRE_HASH, result)).certificate

        assert certificate.signature
        assert certificate.signing_key_id.startswith(f"{TENANT}:")
        assert service.verify_certificate(certificate)

    @pytest.mark.asyncio
    async def test_rehashed_forgery_fails_signature(self, evidence, job, result, signer):
        service = CertificateService(evidence, signer, system_version="1.2.3")
        certificate = (await service.seal_disposal(job, PRE_HASH, result)).certificate

        forged = replace(certificate, disposal_method=DisposalMethod.SOFT_DELETE)
        forged = replace(forged, certificate_hash=forged.compute_hash())

        assert not service.verify_certificate(forged)

    @pytest.mark.asyncio
    async def test_missing_key_leaves_signing_gap(self, evidence, job, result, tmp_path):
        signer = CertificateSigner(tmp_path / "empty")
        service = CertificateService(evidence, signer, system_version="1.2.3")

        sealed = await service.seal_disposal(job, PRE_HASH, result)

        assert sealed.certificate.signature is None
        assert "issued unsigned" in sealed.signing_gap
        assert sealed.certificate.certificate_id in evidence.certificates


class TestCertificateSigner:
    def test_generated_key_is_persisted_and_reloaded(self, tmp_path):
        keys = tmp_path / "keys"
        signer = CertificateSigner(keys, generate_missing_keys=True)
        signed = signer.sign(TENANT, PRE_HASH)

        assert (keys / f"{TENANT}.pem").exists()
        reloaded = CertificateSigner(keys)
        assert reloaded.verify(TENANT, PRE_HASH, signed.signature)
        assert reloaded.sign(TENANT, PRE_HASH).key_id == signed.key_id

    def test_encrypted_key(self, tmp_path):
        keys = tmp_path / "keys"
        signer = CertificateSigner(keys, key_password=b"s3cret", generate_missing_keys=True)
        signed = signer.sign(TENANT, PRE_HASH)

        assert CertificateSigner(keys, key_password=b"s3cret").verify(TENANT, PRE_HASH, signed.signature)
        with pytest.raises(SigningError, match="Cannot load"):
            CertificateSigner(keys, key_password=b"wrong").sign(TENANT, PRE_HASH)

    def test_missing_key(self, tmp_path):
        with pytest.raises(SigningKeyNotFoundError):
            CertificateSigner(tmp_path).sign(TENANT, PRE_HASH)

    def test_unsafe_tenant_id_is_rejected(self, tmp_path):
        signer = CertificateSigner(tmp_path, generate_missing_keys=True)

        with pytest.raises(SigningError, match="key file name"):
            signer.sign("../escape", PRE_HASH)

    def test_wrong_curve_is_rejected(self, tmp_path):
        key = ec.generate_private_key(ec.SECP256R1())
        (tmp_path / f"{TENANT}.pem").write_bytes(
            key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
        )

        with pytest.raises(SigningError, match="P-384"):
            CertificateSigner(tmp_path).sign(TENANT, PRE_HASH)

    def test_signature_for_other_hash_is_rejected(self, signer):
        signed = signer.sign(TENANT, PRE_HASH)

        assert not signer.verify(TENANT, "b" * 64, signed.signature)
        assert not signer.verify(TENANT, PRE_HASH, "not-base64!")
