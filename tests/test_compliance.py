"""Tests for statutory compliance checks and the legal hold guard."""

from datetime import timedelta

import pytest

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.compliance import (
    STATUTORY_MINIMUMS,
    ComplianceViolationDetector,
    days_between,
)
from retention_engine.services.domain import LegalHold
from retention_engine.services.errors import ComplianceViolationDetectedError
from retention_engine.services.legal_hold import LegalHoldGuard
from retention_engine.services.policy import PolicyRegistry, RetentionPolicy
from tests.fakes import InMemoryRecordSource, make_record, utcnow


class TestDaysBetween:
    def test_rounds_partial_days_up(self):
        now = utcnow()

        assert days_between(now, now + timedelta(hours=1)) == 1
        assert days_between(now, now + timedelta(days=2)) == 2
        assert days_between(now, now + timedelta(days=2, seconds=1)) == 3


class TestComplianceViolationDetector:
    def test_disposal_one_day_early_is_a_violation(self):
        detector = ComplianceViolationDetector(minimums={"TEST_ACT": 365})
        now = utcnow()
        record = make_record(legal_basis_code="TEST_ACT", source_timestamp=now - timedelta(days=364))

        violation = detector.check(record, "CERT-1", now)

        assert violation is not None
        assert violation.days_early == 1
        assert violation.required_date == record.source_timestamp + timedelta(days=365)
        assert violation.certificate_id == "CERT-1"

    def test_disposal_on_required_date_is_lawful(self):
        detector = ComplianceViolationDetector(minimums={"TEST_ACT": 365})
        now = utcnow()
        record = make_record(legal_basis_code="TEST_ACT", source_timestamp=now - timedelta(days=365))

        assert detector.check(record, "CERT-1", now) is None

    def test_statutory_table_ignores_host_policy(self):
        """A host policy shorter than the statute does not hide the violation."""
        short = PolicyRegistry([RetentionPolicy("POPIA_2013", 30, DisposalMethod.SOFT_DELETE)])
        detector = ComplianceViolationDetector(fallback=short)
        now = utcnow()
        record = make_record(source_timestamp=now - timedelta(days=31))

        violation = detector.check(record, None, now)

        assert violation is not None
        assert violation.days_early == STATUTORY_MINIMUMS["POPIA_2013"] - 31

    def test_unknown_code_falls_back_to_registry(self):
        registry = PolicyRegistry([RetentionPolicy("HR_RECORDS", 100, DisposalMethod.ANONYMIZE)])
        detector = ComplianceViolationDetector(fallback=registry)

        assert detector.minimum_days("HR_RECORDS") == 100
        assert detector.minimum_days("UNKNOWN_ACT") is None

    def test_unknown_code_is_not_judged(self):
        detector = ComplianceViolationDetector()
        record = make_record(legal_basis_code="UNKNOWN_ACT", source_timestamp=utcnow())

        assert detector.check(record, None, utcnow()) is None

    def test_assert_compliant_raises_with_violation(self):
        detector = ComplianceViolationDetector(minimums={"TEST_ACT": 10})
        record = make_record(legal_basis_code="TEST_ACT", source_timestamp=utcnow())

        with pytest.raises(ComplianceViolationDetectedError) as exc_info:
            detector.assert_compliant(record, "CERT-9", utcnow())

        assert exc_info.value.violation.days_early == 10
        assert "before the TEST_ACT minimum" in str(exc_info.value)


class TestLegalHoldGuard:
    @pytest.mark.asyncio
    async def test_allows_record_without_hold(self):
        guard = LegalHoldGuard(InMemoryRecordSource([make_record("doc-1")]))

        check = await guard.check_hold("Document", "doc-1")

        assert check.allowed
        assert check.record_found
        assert check.reason is None

    @pytest.mark.asyncio
    async def test_blocks_active_hold_with_expiry_in_reason(self):
        expires = utcnow() + timedelta(days=365)
        record = make_record("doc-1", hold=LegalHold(active=True, expires_at=expires, reason="Case 42"))
        guard = LegalHoldGuard(InMemoryRecordSource([record]))

        check = await guard.check_hold("Document", "doc-1")

        assert not check.allowed
        assert check.reason == f"Case 42 (until {expires.isoformat()})"

    @pytest.mark.asyncio
    async def test_lapsed_hold_allows(self):
        record = make_record("doc-1", hold=LegalHold(active=True, expires_at=utcnow() - timedelta(hours=1)))
        guard = LegalHoldGuard(InMemoryRecordSource([record]))

        assert (await guard.check_hold("Document", "doc-1")).allowed

    @pytest.mark.asyncio
    async def test_unreadable_record_is_blocked(self):
        guard = LegalHoldGuard(InMemoryRecordSource())

        check = await guard.check_hold("Document", "missing")

        assert not check.allowed
        assert not check.record_found

    @pytest.mark.asyncio
    async def test_reads_current_state_on_every_check(self):
        source = InMemoryRecordSource([make_record("doc-1")])
        guard = LegalHoldGuard(source)

        assert (await guard.check_hold("Document", "doc-1")).allowed
        source.place_hold("Document", "doc-1", LegalHold(active=True))

        assert not (await guard.check_hold("Document", "doc-1")).allowed
        assert source.reads[("Document", "doc-1")] == 2
