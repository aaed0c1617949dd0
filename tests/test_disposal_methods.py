"""Tests for disposal method actions and their execution through the adapter."""

import pytest

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.disposal_methods import (
    IDENTIFYING_FIELDS,
    SENSITIVE_FIELDS,
    build_action,
    execute_disposal,
)
from retention_engine.services.errors import DisposalExecutionFailedError
from tests.fakes import InMemoryRecordSource, make_record


class TestBuildAction:
    def test_anonymize_targets_identifying_fields_present(self):
        record = make_record(snapshot={"full_name": "Thabo M", "email": "t@m.za", "matter": "Lease"})

        action = build_action(record, DisposalMethod.ANONYMIZE)

        assert action.fields == ("full_name", "email")
        assert action.metadata == {"disposal_method": "anonymize"}

    def test_anonymize_without_known_fields_targets_all(self):
        record = make_record(snapshot={"matter": "Lease"})

        assert build_action(record, DisposalMethod.ANONYMIZE).fields == IDENTIFYING_FIELDS

    def test_redact_targets_sensitive_fields(self):
        record = make_record(snapshot={"bank_account": "123", "email": "t@m.za", "kyc_data": {}})

        assert build_action(record, DisposalMethod.REDACT).fields == ("bank_account", "kyc_data")

    def test_redact_without_known_fields_targets_all(self):
        assert build_action(make_record(snapshot={}), DisposalMethod.REDACT).fields == SENSITIVE_FIELDS

    @pytest.mark.parametrize(
        "method",
        [DisposalMethod.SOFT_DELETE, DisposalMethod.PERMANENT_DELETE, DisposalMethod.ARCHIVE],
    )
    def test_whole_record_methods_carry_no_fields(self, method):
        action = build_action(make_record(), method, archive_location="s3://bucket/key")

        assert action.fields == ()
        assert action.archive_location == "s3://bucket/key"


class TestExecuteDisposal:
    @pytest.mark.asyncio
    async def test_applies_action_through_adapter(self):
        source = InMemoryRecordSource([make_record("doc-1")])
        record = source.records[("Document", "doc-1")]

        result = await execute_disposal(source, record, DisposalMethod.PERMANENT_DELETE)

        assert result.applied
        assert not result.simulated
        assert ("Document", "doc-1") not in source.records
        assert [record_id for record_id, _ in source.applied] == ["doc-1"]

    @pytest.mark.asyncio
    async def test_reapplying_reports_no_op(self):
        record = make_record("doc-1")
        source = InMemoryRecordSource([record])
        await execute_disposal(source, record, DisposalMethod.PERMANENT_DELETE)

        result = await execute_disposal(source, record, DisposalMethod.PERMANENT_DELETE)

        assert not result.applied

    @pytest.mark.asyncio
    async def test_dry_run_skips_adapter(self):
        record = make_record("doc-1")
        source = InMemoryRecordSource([record])

        result = await execute_disposal(source, record, DisposalMethod.ANONYMIZE, dry_run=True)

        assert result.simulated
        assert not result.applied
        assert result.affected_fields == ("email",)
        assert source.applied == []

    @pytest.mark.asyncio
    async def test_adapter_error_is_wrapped(self):
        record = make_record("doc-1")
        source = InMemoryRecordSource([record])
        source.apply_error = ConnectionError("host unreachable")

        with pytest.raises(DisposalExecutionFailedError, match="PERMANENT_DELETE failed for Document/doc-1"):
            await execute_disposal(source, record, DisposalMethod.PERMANENT_DELETE)
