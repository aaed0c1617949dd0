"""Tests for the hash-chained audit trail.

Tests cover:
- Per-tenant sequence numbers and hash links
- One BEFORE and one AFTER entry per (job, attempt)
- Interrupted attempts closed on the next pickup
- Detection of modified and deleted entries
- Concurrent appends within one tenant
"""

import asyncio
import uuid
from dataclasses import replace

import pytest

from retention_engine.db.models.base import AuditPhase, DisposalMethod, JobState
from retention_engine.services.audit_trail import AuditTrail
from retention_engine.services.domain import RetentionJob
from tests.fakes import TENANT, InMemoryAuditStore, utcnow


def make_job(record_id="doc-1", *, tenant_id=TENANT, attempts=1, status=JobState.VERIFYING):
    now = utcnow()
    return RetentionJob(
        job_id=uuid.uuid4(),
        tenant_id=tenant_id,
        record_type="Document",
        record_id=record_id,
        legal_basis_code="POPIA_2013",
        disposal_method=DisposalMethod.SOFT_DELETE,
        status=status,
        attempts=attempts,
        created_at=now,
        run_at=now,
    )


@pytest.fixture
def store():
    return InMemoryAuditStore()


@pytest.fixture
def trail(store):
    return AuditTrail(store)


class TestChainConstruction:
    @pytest.mark.asyncio
    async def test_entries_are_linked_per_tenant(self, trail):
        job = make_job()

        before = await trail.record_before(job, pre_disposal_hash="h1")
        after = await trail.record_after(
            job, outcome="COMPLETED", pre_disposal_hash="h1", certificate_id="CERT-1"
        )

        assert (before.seq_no, after.seq_no) == (1, 2)
        assert before.prev_entry_hash is None
        assert after.prev_entry_hash == before.entry_hash
        assert after.certificate_id == "CERT-1"
        assert before.entry_hash == before.compute_hash()

    @pytest.mark.asyncio
    async def test_tenants_have_independent_streams(self, trail):
        await trail.record_before(make_job(tenant_id="tenant-a"))
        entry = await trail.record_before(make_job(tenant_id="tenant-b"))

        assert entry.seq_no == 1
        assert entry.prev_entry_hash is None

    @pytest.mark.asyncio
    async def test_repeated_phase_returns_existing_entry(self, trail, store):
        job = make_job()

        first = await trail.record_before(job, pre_disposal_hash="h1")
        second = await trail.record_before(job, pre_disposal_hash="other")

        assert second == first
        assert len(store.entries) == 1

    @pytest.mark.asyncio
    async def test_new_attempt_gets_new_entries(self, trail, store):
        job = make_job()
        await trail.record_before(job)
        await trail.record_after(job, outcome="RETRY_SCHEDULED")

        retried = replace(job, attempts=2)
        await trail.record_before(retried)
        await trail.record_after(retried, outcome="COMPLETED")

        assert [(e.attempt, e.phase) for e in store.entries] == [
            (1, AuditPhase.BEFORE),
            (1, AuditPhase.AFTER),
            (2, AuditPhase.BEFORE),
            (2, AuditPhase.AFTER),
        ]

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_sequence_contiguous(self, trail):
        jobs = [make_job(f"doc-{i}") for i in range(20)]

        await asyncio.gather(*(trail.record_before(job) for job in jobs))

        result = await trail.verify_chain(TENANT)
        assert result.valid
        assert (result.first_seq_no, result.last_seq_no) == (1, 20)


class TestCloseInterrupted:
    @pytest.mark.asyncio
    async def test_open_attempt_is_closed(self, trail):
        job = make_job(status=JobState.DISPOSING)
        before = await trail.record_before(job, pre_disposal_hash="h1")

        closed = await trail.close_interrupted(job)

        assert closed.phase == AuditPhase.AFTER
        assert closed.outcome == "INTERRUPTED"
        assert closed.pre_disposal_hash == before.pre_disposal_hash
        assert closed.details == {"interrupted_in": "DISPOSING"}

    @pytest.mark.asyncio
    async def test_finished_attempt_is_left_alone(self, trail):
        job = make_job()
        await trail.record_before(job)
        await trail.record_after(job, outcome="FAILED")

        assert await trail.close_interrupted(job) is None

    @pytest.mark.asyncio
    async def test_never_started_job_is_left_alone(self, trail, store):
        assert await trail.close_interrupted(make_job(attempts=0)) is None
        assert await trail.close_interrupted(make_job(attempts=1)) is None
        assert store.entries == []


class TestVerifyChain:
    @staticmethod
    async def populate(trail, store):
        for i in range(3):
            job = make_job(f"doc-{i}")
            await trail.record_before(job, pre_disposal_hash=f"h{i}")
            await trail.record_after(job, outcome="COMPLETED", pre_disposal_hash=f"h{i}")
        return store

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, trail):
        result = await trail.verify_chain("nobody")

        assert result.valid
        assert result.checked_entries == 0

    @pytest.mark.asyncio
    async def test_intact_chain(self, trail, store):
        await self.populate(trail, store)
        result = await trail.verify_chain(TENANT)

        assert result.valid
        assert result.checked_entries == 6
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_modified_entry_is_detected(self, trail, store):
        populated = await self.populate(trail, store)
        populated.entries[2] = replace(populated.entries[2], outcome="COMPLETED", record_id="doc-x")

        result = await trail.verify_chain(TENANT)

        assert not result.valid
        assert any("Hash mismatch at seq_no=3" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_deleted_entry_is_detected(self, trail, store):
        populated = await self.populate(trail, store)
        del populated.entries[3]

        result = await trail.verify_chain(TENANT)

        assert not result.valid
        assert any("Sequence gap" in error for error in result.errors)
        assert any("Chain break at seq_no=5" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_entries_for_returns_stream_in_order(self, trail, store):
        await self.populate(trail, store)
        entries = await trail.entries_for(TENANT)

        assert [e.seq_no for e in entries] == [1, 2, 3, 4, 5, 6]
