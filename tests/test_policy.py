"""Tests for the retention policy registry and evaluator.

Tests cover:
- Registry construction, duplicate rejection and policy file loading
- Due-date computation and decision statuses
- Type-specific disposal method overrides
- Partitioning of candidate records
"""

import json
from dataclasses import replace
from datetime import timedelta

import pytest

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.domain import DisposalState, LegalHold
from retention_engine.services.errors import PolicyUnresolvedError
from retention_engine.services.policy import (
    DecisionStatus,
    PolicyConfigurationError,
    PolicyRegistry,
    RetentionPolicy,
    RetentionPolicyEvaluator,
)
from tests.fakes import make_record, utcnow, years_ago


class TestRetentionPolicy:
    def test_due_date_adds_minimum_retention(self):
        policy = RetentionPolicy("POPIA_2013", 1825, DisposalMethod.PERMANENT_DELETE)
        source = utcnow()

        assert policy.due_date(source) == source + timedelta(days=1825)

    def test_from_dict_accepts_uppercase_method(self):
        policy = RetentionPolicy.from_dict(
            {
                "legal_basis_code": "TAX_ACT",
                "minimum_retention_days": "1825",
                "default_disposal_method": "ARCHIVE",
                "compliance_references": ["Tax Administration Act §29"],
            }
        )

        assert policy.minimum_retention_days == 1825
        assert policy.default_disposal_method == DisposalMethod.ARCHIVE
        assert policy.compliance_references == ("Tax Administration Act §29",)

    @pytest.mark.parametrize(
        "data",
        [
            {"legal_basis_code": "X", "default_disposal_method": "archive"},
            {"legal_basis_code": "X", "minimum_retention_days": 10, "default_disposal_method": "shred"},
            {"legal_basis_code": "X", "minimum_retention_days": -1, "default_disposal_method": "archive"},
        ],
    )
    def test_from_dict_rejects_invalid_entries(self, data):
        with pytest.raises(PolicyConfigurationError):
            RetentionPolicy.from_dict(data)


class TestPolicyRegistry:
    def test_presets_cover_south_african_bases(self, registry):
        assert "POPIA_2013" in registry
        assert "FICA_2001" in registry
        assert registry.require("POPIA_2013").minimum_retention_days == 1825
        assert registry.require("NATIONAL_ARCHIVES_ACT").minimum_retention_days == 36500

    def test_duplicate_code_is_rejected(self):
        with pytest.raises(PolicyConfigurationError, match="more than one policy"):
            PolicyRegistry(
                [
                    RetentionPolicy("POPIA_2013", 1825, DisposalMethod.PERMANENT_DELETE),
                    RetentionPolicy("POPIA_2013", 365, DisposalMethod.SOFT_DELETE),
                ]
            )

    def test_unknown_code(self, registry):
        assert registry.resolve("UNKNOWN_ACT") is None
        with pytest.raises(PolicyUnresolvedError):
            registry.require("UNKNOWN_ACT")

    def test_from_file_with_policies_key(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(
            json.dumps(
                {
                    "policies": [
                        {
                            "legal_basis_code": "HR_RECORDS",
                            "minimum_retention_days": 1095,
                            "default_disposal_method": "anonymize",
                        }
                    ]
                }
            )
        )

        registry = PolicyRegistry.from_file(path)

        assert len(registry) == 1
        assert [p.legal_basis_code for p in registry] == ["HR_RECORDS"]

    def test_from_file_with_plain_list(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(json.dumps([p.to_dict() for p in PolicyRegistry.from_presets()]))

        assert len(PolicyRegistry.from_file(path)) == len(PolicyRegistry.from_presets())

    def test_from_file_rejects_unreadable_json(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text("{not json")

        with pytest.raises(PolicyConfigurationError, match="Cannot load"):
            PolicyRegistry.from_file(path)


class TestEvaluation:
    """Decision statuses, checked in priority order."""

    def test_six_year_old_popia_record_is_due(self, evaluator):
        decision = evaluator.evaluate(make_record(source_timestamp=years_ago(6)))

        assert decision.status == DecisionStatus.DUE
        assert decision.is_due
        assert decision.disposal_method == DisposalMethod.PERMANENT_DELETE

    def test_record_within_retention_is_not_due(self, evaluator):
        record = make_record(source_timestamp=years_ago(4))

        decision = evaluator.evaluate(record)

        assert decision.status == DecisionStatus.NOT_YET_DUE
        assert decision.due_date == record.source_timestamp + timedelta(days=1825)
        assert decision.disposal_method is None

    def test_due_exactly_at_the_boundary(self, evaluator):
        record = make_record(source_timestamp=years_ago(6))
        due = record.source_timestamp + timedelta(days=1825)

        assert evaluator.evaluate(record, due - timedelta(seconds=1)).status == DecisionStatus.NOT_YET_DUE
        assert evaluator.evaluate(record, due).status == DecisionStatus.DUE

    def test_unknown_basis_is_never_due(self, evaluator):
        """Even a century-old record without a policy is excluded."""
        record = make_record(legal_basis_code="UNKNOWN_ACT", source_timestamp=years_ago(100))

        decision = evaluator.evaluate(record)

        assert decision.status == DecisionStatus.UNEVALUABLE
        assert "UNKNOWN_ACT" in decision.reason

    def test_active_hold_blocks_due_record(self, evaluator):
        record = make_record(hold=LegalHold(active=True, reason="Litigation"))

        decision = evaluator.evaluate(record)

        assert decision.status == DecisionStatus.ON_HOLD
        assert decision.reason == "Litigation"

    def test_hold_expiring_next_year_still_blocks(self, evaluator):
        record = make_record(hold=LegalHold(active=True, expires_at=utcnow() + timedelta(days=365)))

        assert evaluator.evaluate(record).status == DecisionStatus.ON_HOLD

    def test_lapsed_hold_does_not_block(self, evaluator):
        record = make_record(hold=LegalHold(active=True, expires_at=utcnow() - timedelta(days=1)))

        assert evaluator.evaluate(record).status == DecisionStatus.DUE

    def test_already_disposed(self, evaluator):
        record = replace(make_record(), disposal_state=DisposalState(disposed=True, certificate_id="CERT-1"))

        decision = evaluator.evaluate(record)

        assert decision.status == DecisionStatus.ALREADY_DISPOSED
        assert "CERT-1" in decision.reason


class TestMethodSelection:
    @pytest.mark.parametrize(
        ("record_type", "attributes", "expected"),
        [
            ("Document", {"document_type": "CONFIDENTIAL"}, DisposalMethod.PERMANENT_DELETE),
            ("Document", {"document_type": "financial"}, DisposalMethod.ARCHIVE),
            ("Client", {"classification": "SECRET"}, DisposalMethod.PERMANENT_DELETE),
            ("Case", {"practice_area": "CRIMINAL"}, DisposalMethod.ARCHIVE),
            ("Case", {}, DisposalMethod.ARCHIVE),
            ("AuditLedger", {}, DisposalMethod.SOFT_DELETE),
        ],
    )
    def test_overrides(self, evaluator, record_type, attributes, expected):
        record = make_record(record_type=record_type, legal_basis_code="CPA_2008", attributes=attributes)

        assert evaluator.evaluate(record).disposal_method == expected

    def test_policy_default_without_override(self, evaluator):
        record = make_record(record_type="Client", legal_basis_code="CPA_2008")

        assert evaluator.evaluate(record).disposal_method == DisposalMethod.ANONYMIZE

    def test_no_overrides(self, registry):
        evaluator = RetentionPolicyEvaluator(registry, overrides=())
        record = make_record(record_type="Case", legal_basis_code="PAIA_2000")

        assert evaluator.evaluate(record).disposal_method == DisposalMethod.SOFT_DELETE


class TestPartition:
    def test_splits_due_from_excluded(self, evaluator):
        records = [
            make_record("due-1"),
            make_record("young", source_timestamp=years_ago(1)),
            make_record("held", hold=LegalHold(active=True)),
            make_record("orphan", legal_basis_code="UNKNOWN_ACT"),
            make_record("due-2"),
        ]

        due, excluded = evaluator.partition(records)

        assert [d.record.record_id for d in due] == ["due-1", "due-2"]
        assert {d.record.record_id: d.status for d in excluded} == {
            "young": DecisionStatus.NOT_YET_DUE,
            "held": DecisionStatus.ON_HOLD,
            "orphan": DecisionStatus.UNEVALUABLE,
        }
