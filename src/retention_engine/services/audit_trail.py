"""Tamper-evident audit trail of disposal attempts.

Every disposal attempt is surrounded by exactly one BEFORE and one AFTER
entry. Entries are append-only and hash-chained per tenant: each entry
carries the hash of its predecessor, so deletion, modification and
reordering are all detectable by ``verify_chain``.

Writing the same phase twice for a (job, attempt) returns the entry already
stored, which keeps resumed jobs from duplicating audit entries.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import distinct, select
from sqlalchemy.exc import SQLAlchemyError

from retention_engine.db.models.audit import AuditEntryRecord
from retention_engine.db.models.base import AuditPhase
from retention_engine.services.domain import canonical_json, sha256_hex
from retention_engine.services.errors import AuditStoreError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from retention_engine.services.domain import RetentionJob
    from retention_engine.services.interfaces import AuditStore

logger = logging.getLogger(__name__)

EVENT_ATTEMPT_STARTED = "disposal.attempt_started"
EVENT_ATTEMPT_FINISHED = "disposal.attempt_finished"


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Immutable audit entry.

    Attributes:
        entry_id: Unique identifier.
        tenant_id: Tenant stream the entry belongs to.
        seq_no: Position in the tenant stream, starting at 1.
        entry_hash: SHA-256 of the entry's canonical content.
        prev_entry_hash: Hash of the previous entry (None for the first).
        job_id: Job of the attempt.
        attempt: Attempt number of the job.
        phase: BEFORE or AFTER the destructive action.
        event_type: Event category.
        outcome: Result of the attempt (STARTED for BEFORE entries).
        record_type: Host record type.
        record_id: Host record identifier.
        pre_disposal_hash: Hash of the record state before disposal.
        certificate_id: Issued certificate (AFTER entries of completed jobs).
        details: Additional context.
        created_at: When the entry was written.
    """

    entry_id: uuid.UUID
    tenant_id: str
    seq_no: int
    entry_hash: str
    prev_entry_hash: str | None
    job_id: uuid.UUID
    attempt: int
    phase: AuditPhase
    event_type: str
    outcome: str
    record_type: str
    record_id: str
    created_at: datetime
    pre_disposal_hash: str | None = None
    certificate_id: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def canonical_content(self) -> dict[str, Any]:
        """Content covered by ``entry_hash``."""
        return {
            "entry_id": str(self.entry_id),
            "tenant_id": self.tenant_id,
            "seq_no": self.seq_no,
            "prev_entry_hash": self.prev_entry_hash,
            "job_id": str(self.job_id),
            "attempt": self.attempt,
            "phase": self.phase.value,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "pre_disposal_hash": self.pre_disposal_hash,
            "certificate_id": self.certificate_id,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
        }

    def compute_hash(self) -> str:
        return compute_entry_hash(self.canonical_content())


def compute_entry_hash(content: Mapping[str, Any]) -> str:
    """Compute an entry hash without an AuditEntry instance (for verification tools)."""
    return sha256_hex(canonical_json(dict(content)))


@dataclass(frozen=True, slots=True)
class ChainVerificationResult:
    """Result of verifying a tenant audit chain.

    Attributes:
        tenant_id: The verified tenant stream.
        valid: True if the chain is intact.
        checked_entries: Number of entries verified.
        first_seq_no: First sequence number seen.
        last_seq_no: Last sequence number seen.
        errors: Detected integrity violations.
    """

    tenant_id: str
    valid: bool
    checked_entries: int
    first_seq_no: int | None
    last_seq_no: int | None
    errors: list[str]


class AuditTrail:
    """Writes and verifies the per-tenant audit chain.

    Appends for one tenant are serialized in-process; the store's unique
    (tenant_id, seq_no) constraint rejects any append that raced past it.
    """

    def __init__(self, store: AuditStore) -> None:
        self._store = store
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record_before(
        self,
        job: RetentionJob,
        *,
        pre_disposal_hash: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        """Write the BEFORE entry of the job's current attempt."""
        return await self._record(
            job,
            phase=AuditPhase.BEFORE,
            event_type=EVENT_ATTEMPT_STARTED,
            outcome="STARTED",
            pre_disposal_hash=pre_disposal_hash,
            certificate_id=None,
            details=details,
        )

    async def record_after(
        self,
        job: RetentionJob,
        *,
        outcome: str,
        pre_disposal_hash: str | None = None,
        certificate_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        """Write the AFTER entry of the job's current attempt."""
        return await self._record(
            job,
            phase=AuditPhase.AFTER,
            event_type=EVENT_ATTEMPT_FINISHED,
            outcome=outcome,
            pre_disposal_hash=pre_disposal_hash,
            certificate_id=certificate_id,
            details=details,
        )

    async def _record(
        self,
        job: RetentionJob,
        *,
        phase: AuditPhase,
        event_type: str,
        outcome: str,
        pre_disposal_hash: str | None,
        certificate_id: str | None,
        details: Mapping[str, Any] | None,
    ) -> AuditEntry:
        async with self._locks[job.tenant_id]:
            existing = await self._store.find_entry(job.job_id, job.attempts, phase)
            if existing is not None:
                logger.debug(
                    "Audit %s entry already written for job %s attempt %d",
                    phase.value,
                    job.job_id,
                    job.attempts,
                )
                return existing

            latest = await self._store.latest_entry(job.tenant_id)
            draft = AuditEntry(
                entry_id=uuid.uuid4(),
                tenant_id=job.tenant_id,
                seq_no=latest.seq_no + 1 if latest else 1,
                entry_hash="",
                prev_entry_hash=latest.entry_hash if latest else None,
                job_id=job.job_id,
                attempt=job.attempts,
                phase=phase,
                event_type=event_type,
                outcome=outcome,
                record_type=job.record_type,
                record_id=job.record_id,
                created_at=datetime.now(UTC),
                pre_disposal_hash=pre_disposal_hash,
                certificate_id=certificate_id,
                details=dict(details or {}),
            )
            entry = replace(draft, entry_hash=draft.compute_hash())
            return await self._store.append_entry(entry)

    async def close_interrupted(self, job: RetentionJob) -> AuditEntry | None:
        """Write the missing AFTER entry of an attempt cut short by a crash.

        Returns the new entry, or None when the job's last attempt is complete.
        """
        if job.attempts < 1:
            return None
        before = await self._store.find_entry(job.job_id, job.attempts, AuditPhase.BEFORE)
        if before is None:
            return None
        after = await self._store.find_entry(job.job_id, job.attempts, AuditPhase.AFTER)
        if after is not None:
            return None

        logger.warning(
            "Job %s attempt %d ended without an AFTER entry; recording interruption",
            job.job_id,
            job.attempts,
        )
        return await self.record_after(
            job,
            outcome="INTERRUPTED",
            pre_disposal_hash=before.pre_disposal_hash,
            details={"interrupted_in": job.status.name},
        )

    async def entries_for(self, tenant_id: str) -> list[AuditEntry]:
        return await self._store.list_entries(tenant_id)

    async def verify_chain(self, tenant_id: str) -> ChainVerificationResult:
        """Verify the integrity of a tenant's audit chain.

        Checks that sequence numbers are contiguous from 1, that every stored
        hash matches the recomputed one and that each entry links to its
        predecessor.
        """
        entries = await self._store.list_entries(tenant_id)
        if not entries:
            return ChainVerificationResult(
                tenant_id=tenant_id,
                valid=True,
                checked_entries=0,
                first_seq_no=None,
                last_seq_no=None,
                errors=[],
            )

        errors: list[str] = []
        prev_hash: str | None = None
        expected_seq = 1

        for entry in entries:
            if entry.seq_no != expected_seq:
                errors.append(f"Sequence gap detected: expected {expected_seq}, found {entry.seq_no}")

            if entry.prev_entry_hash != prev_hash:
                errors.append(
                    f"Chain break at seq_no={entry.seq_no}: "
                    f"prev_entry_hash={entry.prev_entry_hash}, expected {prev_hash}"
                )

            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                errors.append(
                    f"Hash mismatch at seq_no={entry.seq_no}: "
                    f"stored={entry.entry_hash}, computed={computed}"
                )

            prev_hash = entry.entry_hash
            expected_seq = entry.seq_no + 1

        if errors:
            logger.error("Audit chain of tenant %s failed verification: %d error(s)", tenant_id, len(errors))

        return ChainVerificationResult(
            tenant_id=tenant_id,
            valid=not errors,
            checked_entries=len(entries),
            first_seq_no=entries[0].seq_no,
            last_seq_no=entries[-1].seq_no,
            errors=errors,
        )


def _to_entry(record: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        entry_id=record.entry_id,
        tenant_id=record.tenant_id,
        seq_no=record.seq_no,
        entry_hash=record.entry_hash,
        prev_entry_hash=record.prev_entry_hash,
        job_id=record.job_id,
        attempt=record.attempt,
        phase=record.phase,
        event_type=record.event_type,
        outcome=record.outcome,
        record_type=record.record_type,
        record_id=record.record_id,
        created_at=record.created_at,
        pre_disposal_hash=record.pre_disposal_hash,
        certificate_id=record.certificate_id,
        details=record.details or {},
    )


class SqlAuditStore:
    """PostgreSQL audit store. Rows are inserted once and never updated."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append_entry(self, entry: AuditEntry) -> AuditEntry:
        record = AuditEntryRecord(
            entry_id=entry.entry_id,
            created_at=entry.created_at,
            tenant_id=entry.tenant_id,
            seq_no=entry.seq_no,
            entry_hash=entry.entry_hash,
            prev_entry_hash=entry.prev_entry_hash,
            job_id=entry.job_id,
            attempt=entry.attempt,
            phase=entry.phase,
            event_type=entry.event_type,
            outcome=entry.outcome,
            record_type=entry.record_type,
            record_id=entry.record_id,
            pre_disposal_hash=entry.pre_disposal_hash,
            certificate_id=entry.certificate_id,
            details=dict(entry.details),
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as e:
            msg = f"Cannot append audit entry seq_no={entry.seq_no} for tenant {entry.tenant_id}: {e}"
            raise AuditStoreError(msg) from e
        return entry

    async def get_entry(self, entry_id: uuid.UUID) -> AuditEntry | None:
        query = select(AuditEntryRecord).where(AuditEntryRecord.entry_id == entry_id)
        return await self._fetch_one(query)

    async def find_entry(
        self,
        job_id: uuid.UUID,
        attempt: int,
        phase: AuditPhase,
    ) -> AuditEntry | None:
        query = select(AuditEntryRecord).where(
            AuditEntryRecord.job_id == job_id,
            AuditEntryRecord.attempt == attempt,
            AuditEntryRecord.phase == phase,
        )
        return await self._fetch_one(query)

    async def latest_entry(self, tenant_id: str) -> AuditEntry | None:
        query = (
            select(AuditEntryRecord)
            .where(AuditEntryRecord.tenant_id == tenant_id)
            .order_by(AuditEntryRecord.seq_no.desc())
            .limit(1)
        )
        return await self._fetch_one(query)

    async def list_entries(self, tenant_id: str) -> list[AuditEntry]:
        query = (
            select(AuditEntryRecord)
            .where(AuditEntryRecord.tenant_id == tenant_id)
            .order_by(AuditEntryRecord.seq_no)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [_to_entry(record) for record in result.scalars().all()]
        except SQLAlchemyError as e:
            msg = f"Cannot list audit entries for tenant {tenant_id}: {e}"
            raise AuditStoreError(msg) from e

    async def list_streams(self) -> list[str]:
        query = select(distinct(AuditEntryRecord.tenant_id)).order_by(AuditEntryRecord.tenant_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            msg = f"Cannot list audit streams: {e}"
            raise AuditStoreError(msg) from e

    async def _fetch_one(self, query: Any) -> AuditEntry | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            msg = f"Audit store query failed: {e}"
            raise AuditStoreError(msg) from e
        return _to_entry(record) if record is not None else None
