"""Narrow interfaces between the engine and its collaborators.

The engine never talks to the host data model, object storage, the job and
audit database or the notification transport directly. It consumes these
protocols; production implementations live next to the services that use
them (SQLAlchemy stores, boto3 archive store, httpx gateway), and tests
substitute in-memory ones.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import uuid
    from collections.abc import Collection
    from datetime import datetime

    from retention_engine.db.models.base import AuditPhase, DisposalMethod, JobState
    from retention_engine.services.archival import ArchiveManifest
    from retention_engine.services.audit_trail import AuditEntry
    from retention_engine.services.certificates import DisposalCertificate
    from retention_engine.services.compliance import ComplianceViolation
    from retention_engine.services.domain import (
        DisposableRecord,
        DisposalAction,
        DisposalResult,
        RetentionJob,
    )
    from retention_engine.services.lease import Lease
    from retention_engine.services.notifications import EmergencyAlert
    from retention_engine.services.policy import RetentionPolicy
    from retention_engine.services.reporting import RunReport


class RecordSourceAdapter(Protocol):
    """Read access to host records plus the single mutation entrypoint.

    ``apply_disposal`` must be idempotent: applying a method to a record
    already in the target state returns ``applied=False`` instead of failing.
    """

    async def list_tenants(self) -> list[str]: ...

    async def query_due(
        self,
        tenant_id: str,
        record_type: str,
        policy: RetentionPolicy,
        *,
        as_of: datetime,
        limit: int,
    ) -> list[DisposableRecord]: ...

    async def get_record(self, record_type: str, record_id: str) -> DisposableRecord | None: ...

    async def apply_disposal(
        self,
        record: DisposableRecord,
        action: DisposalAction,
    ) -> DisposalResult: ...

    async def mark_disposed(
        self,
        record_type: str,
        record_id: str,
        method: DisposalMethod,
        certificate_id: str,
    ) -> None: ...

    async def list_active_holds(self, tenant_id: str) -> list[DisposableRecord]: ...


class ArchiveStore(Protocol):
    """Destination for pre-disposal archives."""

    async def write_archive(self, manifest: ArchiveManifest, payload: bytes) -> str: ...


class JobStore(Protocol):
    """Durable job storage. Every mutation is conditional on the current state."""

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
    ) -> RetentionJob | None: ...

    async def get_job(self, job_id: uuid.UUID) -> RetentionJob | None: ...

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
    ) -> list[RetentionJob]: ...

    async def transition(
        self,
        job_id: uuid.UUID,
        *,
        expected: JobState,
        new: JobState,
        owner: str | None = None,
        **changes: Any,
    ) -> RetentionJob: ...

    async def defer(self, job_id: uuid.UUID, *, owner: str, run_at: datetime) -> bool: ...

    async def release(self, job_id: uuid.UUID, *, owner: str) -> bool: ...

    async def list_jobs(
        self,
        *,
        statuses: list[JobState] | None = None,
        tenant_id: str | None = None,
        limit: int = 1000,
    ) -> list[RetentionJob]: ...

    async def purge_finished(self, *, before: datetime) -> int: ...


class AuditStore(Protocol):
    """Append-only audit entry storage."""

    async def append_entry(self, entry: AuditEntry) -> AuditEntry: ...

    async def get_entry(self, entry_id: uuid.UUID) -> AuditEntry | None: ...

    async def find_entry(
        self,
        job_id: uuid.UUID,
        attempt: int,
        phase: AuditPhase,
    ) -> AuditEntry | None: ...

    async def latest_entry(self, tenant_id: str) -> AuditEntry | None: ...

    async def list_entries(self, tenant_id: str) -> list[AuditEntry]: ...

    async def list_streams(self) -> list[str]: ...


class EvidenceStore(Protocol):
    """Append-only storage for certificates, archive manifests and violations."""

    async def put_certificate(self, certificate: DisposalCertificate) -> None: ...

    async def get_certificate(self, certificate_id: str) -> DisposalCertificate | None: ...

    async def get_certificate_for_job(self, job_id: uuid.UUID) -> DisposalCertificate | None: ...

    async def list_certificates(self, *, tenant_id: str | None = None) -> list[DisposalCertificate]: ...

    async def put_manifest(self, manifest: ArchiveManifest) -> None: ...

    async def get_manifest(self, archive_id: str) -> ArchiveManifest | None: ...

    async def record_violation(
        self,
        violation: ComplianceViolation,
        *,
        operation_id: str | None = None,
    ) -> None: ...


class LeaseStore(Protocol):
    """Expiring named leases for scheduler mutual exclusion."""

    async def try_acquire(
        self,
        name: str,
        *,
        holder: str,
        token: str,
        now: datetime,
        expires_at: datetime,
    ) -> Lease | None: ...

    async def renew(self, name: str, *, token: str, expires_at: datetime) -> bool: ...

    async def release(self, name: str, *, token: str) -> bool: ...

    async def get_lease(self, name: str) -> Lease | None: ...


class NotificationGateway(Protocol):
    """Fire-and-forget delivery of reports and alerts. Must never raise."""

    async def send_compliance_report(self, report: RunReport) -> None: ...

    async def send_emergency_alert(self, context: EmergencyAlert) -> None: ...


class ReportStore(Protocol):
    """Persistence of end-of-run compliance reports."""

    async def persist(self, report: RunReport) -> str: ...
