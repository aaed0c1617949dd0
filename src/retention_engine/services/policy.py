"""Retention policy registry and evaluator.

This module provides:
- RetentionPolicy: host-supplied mapping from legal basis to minimum retention
- PolicyRegistry: immutable set of policies, one per legal-basis code
- RetentionPolicyEvaluator: due-date computation and disposal method selection

A record whose legal-basis code resolves to no policy is reported as
UNEVALUABLE and excluded from automatic disposal. There is no fallback
policy.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.errors import PolicyUnresolvedError, RetentionEngineError

if TYPE_CHECKING:
    from retention_engine.core.config import Settings
    from retention_engine.services.domain import DisposableRecord

logger = logging.getLogger(__name__)


class PolicyConfigurationError(RetentionEngineError):
    """Raised when the policy set is malformed or ambiguous."""

    pass


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Minimum retention rule for one legal basis.

    Attributes:
        legal_basis_code: Tag identifying the regulatory rule.
        minimum_retention_days: Days a record must be kept from its source timestamp.
        default_disposal_method: Method used unless a type-specific rule overrides it.
        compliance_references: Citations recorded on disposal certificates.
    """

    legal_basis_code: str
    minimum_retention_days: int
    default_disposal_method: DisposalMethod
    compliance_references: tuple[str, ...] = ()

    def due_date(self, source_timestamp: datetime) -> datetime:
        """Earliest moment a record governed by this policy may be disposed."""
        return source_timestamp + timedelta(days=self.minimum_retention_days)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "legal_basis_code": self.legal_basis_code,
            "minimum_retention_days": self.minimum_retention_days,
            "default_disposal_method": self.default_disposal_method.value,
            "compliance_references": list(self.compliance_references),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RetentionPolicy:
        """Build a policy from its dictionary form.

        Raises:
            PolicyConfigurationError: If a field is missing or invalid.
        """
        try:
            days = int(data["minimum_retention_days"])
            method = DisposalMethod(str(data["default_disposal_method"]).lower())
            code = str(data["legal_basis_code"])
        except (KeyError, ValueError, TypeError) as e:
            raise PolicyConfigurationError(f"Invalid retention policy entry {data!r}: {e}") from e

        if days < 0:
            raise PolicyConfigurationError(
                f"Retention days must not be negative for {code}: {days}"
            )

        return cls(
            legal_basis_code=code,
            minimum_retention_days=days,
            default_disposal_method=method,
            compliance_references=tuple(data.get("compliance_references") or ()),
        )


# Built-in South African legal-basis presets. Hosts replace these with a
# policy file when their mapping differs.
LEGAL_BASIS_PRESETS: tuple[RetentionPolicy, ...] = (
    RetentionPolicy(
        "CYBERCRIMES_ACT_2020",
        3650,
        DisposalMethod.ARCHIVE,
        ("Cybercrimes Act 2020 §54 - Preservation of Evidence",),
    ),
    RetentionPolicy(
        "POPIA_2013",
        1825,
        DisposalMethod.PERMANENT_DELETE,
        ("POPIA §14 - Retention Limitation", "GDPR Article 17 - Right to Erasure"),
    ),
    RetentionPolicy(
        "FICA_2001",
        1825,
        DisposalMethod.ARCHIVE,
        ("FICA 2001 §23 - Period for which records must be kept",),
    ),
    RetentionPolicy(
        "COMPANIES_ACT_2008",
        2555,
        DisposalMethod.ARCHIVE,
        ("Companies Act 2008 §24 - Records Retention",),
    ),
    RetentionPolicy(
        "PAIA_2000",
        1095,
        DisposalMethod.SOFT_DELETE,
        ("PAIA 2000 - Records of Private Bodies",),
    ),
    RetentionPolicy(
        "ECT_ACT_2002",
        1825,
        DisposalMethod.PERMANENT_DELETE,
        ("ECT Act 2002 §16 - Retention of Data Messages",),
    ),
    RetentionPolicy(
        "CPA_2008",
        1095,
        DisposalMethod.ANONYMIZE,
        ("Consumer Protection Act 2008 - Consumer Records",),
    ),
    RetentionPolicy(
        "NATIONAL_ARCHIVES_ACT",
        36500,
        DisposalMethod.ARCHIVE,
        ("National Archives and Record Service Act 1996 §13",),
    ),
)


@dataclass(frozen=True, slots=True)
class MethodOverrideRule:
    """Type-specific rule replacing the policy's default disposal method.

    A rule matches when the record type equals ``record_type`` (if set) and
    the record attribute ``attribute`` (if set) has one of ``values``.
    """

    name: str
    method: DisposalMethod
    record_type: str | None = None
    attribute: str | None = None
    values: frozenset[str] = field(default_factory=frozenset)

    def matches(self, record: DisposableRecord) -> bool:
        if self.record_type is not None and record.record_type != self.record_type:
            return False
        if self.attribute is None:
            return True
        value = record.attributes.get(self.attribute)
        return value is not None and str(value).upper() in self.values


# Evaluated in order; the first match wins.
DEFAULT_OVERRIDE_RULES: tuple[MethodOverrideRule, ...] = (
    MethodOverrideRule(
        name="confidential-classification",
        method=DisposalMethod.PERMANENT_DELETE,
        attribute="classification",
        values=frozenset({"CONFIDENTIAL", "SECRET"}),
    ),
    MethodOverrideRule(
        name="confidential-document",
        method=DisposalMethod.PERMANENT_DELETE,
        record_type="Document",
        attribute="document_type",
        values=frozenset({"CONFIDENTIAL", "SECRET"}),
    ),
    MethodOverrideRule(
        name="financial-document",
        method=DisposalMethod.ARCHIVE,
        record_type="Document",
        attribute="document_type",
        values=frozenset({"FINANCIAL"}),
    ),
    MethodOverrideRule(
        name="criminal-case",
        method=DisposalMethod.ARCHIVE,
        record_type="Case",
        attribute="practice_area",
        values=frozenset({"CRIMINAL"}),
    ),
    MethodOverrideRule(name="case-record", method=DisposalMethod.ARCHIVE, record_type="Case"),
    MethodOverrideRule(
        name="audit-ledger",
        method=DisposalMethod.SOFT_DELETE,
        record_type="AuditLedger",
    ),
)


class PolicyRegistry:
    """Immutable collection of retention policies keyed by legal-basis code.

    Every code resolves to at most one policy; duplicates are rejected at
    construction time instead of being resolved arbitrarily.
    """

    def __init__(self, policies: Iterable[RetentionPolicy]) -> None:
        by_code: dict[str, RetentionPolicy] = {}
        for policy in policies:
            if policy.legal_basis_code in by_code:
                raise PolicyConfigurationError(
                    f"Legal basis {policy.legal_basis_code!r} is mapped to more than one policy"
                )
            by_code[policy.legal_basis_code] = policy
        self._policies = by_code

    @classmethod
    def from_presets(cls) -> PolicyRegistry:
        """Registry of the built-in legal-basis presets."""
        return cls(LEGAL_BASIS_PRESETS)

    @classmethod
    def from_file(cls, path: str | Path) -> PolicyRegistry:
        """Load policies from a JSON file.

        The file holds either a list of policy objects or an object with a
        ``policies`` list.

        Raises:
            PolicyConfigurationError: If the file cannot be read or parsed.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyConfigurationError(f"Cannot load policy file {path}: {e}") from e

        entries = raw.get("policies", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise PolicyConfigurationError(f"Policy file {path} must contain a list of policies")

        registry = cls(RetentionPolicy.from_dict(entry) for entry in entries)
        logger.info("Loaded %d retention policies from %s", len(registry), path)
        return registry

    @classmethod
    def from_settings(cls, settings: Settings) -> PolicyRegistry:
        """Registry from the configured policy file, or the presets when unset."""
        if settings.policy.policy_file:
            return cls.from_file(settings.policy.policy_file)
        return cls.from_presets()

    def resolve(self, legal_basis_code: str) -> RetentionPolicy | None:
        """Return the policy for a code, or None when the code is unknown."""
        return self._policies.get(legal_basis_code)

    def require(self, legal_basis_code: str) -> RetentionPolicy:
        """Return the policy for a code.

        Raises:
            PolicyUnresolvedError: If no policy is registered for the code.
        """
        policy = self._policies.get(legal_basis_code)
        if policy is None:
            raise PolicyUnresolvedError(legal_basis_code)
        return policy

    def __iter__(self) -> Iterator[RetentionPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, legal_basis_code: object) -> bool:
        return legal_basis_code in self._policies


class DecisionStatus(str, Enum):
    """Outcome of evaluating one record against the policy set."""

    DUE = "due"
    NOT_YET_DUE = "not_yet_due"
    ON_HOLD = "on_hold"
    UNEVALUABLE = "unevaluable"
    ALREADY_DISPOSED = "already_disposed"


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Evaluation result for a single record."""

    status: DecisionStatus
    record: DisposableRecord
    policy: RetentionPolicy | None = None
    due_date: datetime | None = None
    disposal_method: DisposalMethod | None = None
    reason: str | None = None

    @property
    def is_due(self) -> bool:
        return self.status == DecisionStatus.DUE


class RetentionPolicyEvaluator:
    """Decides whether a record is due and which method disposes of it.

    Example:
        evaluator = RetentionPolicyEvaluator(PolicyRegistry.from_presets())
        decision = evaluator.evaluate(record)
        if decision.is_due:
            method = decision.disposal_method
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        overrides: Iterable[MethodOverrideRule] = DEFAULT_OVERRIDE_RULES,
    ) -> None:
        self.registry = registry
        self._overrides = tuple(overrides)

    def evaluate(self, record: DisposableRecord, now: datetime | None = None) -> PolicyDecision:
        """Evaluate a record at ``now``.

        Args:
            record: Record to evaluate.
            now: Evaluation time (defaults to the current UTC time).

        Returns:
            PolicyDecision; only ``DUE`` decisions carry a disposal method.
        """
        now = now or datetime.now(UTC)

        policy = self.registry.resolve(record.legal_basis_code)
        if policy is None:
            logger.warning(
                "Record %s/%s has unknown legal basis %r; excluded from automatic disposal",
                record.record_type,
                record.record_id,
                record.legal_basis_code,
            )
            return PolicyDecision(
                status=DecisionStatus.UNEVALUABLE,
                record=record,
                reason=f"No policy for legal basis {record.legal_basis_code!r}",
            )

        due_date = policy.due_date(record.source_timestamp)

        if record.disposal_state.disposed:
            return PolicyDecision(
                status=DecisionStatus.ALREADY_DISPOSED,
                record=record,
                policy=policy,
                due_date=due_date,
                reason=f"Already disposed ({record.disposal_state.certificate_id})",
            )

        if now < due_date:
            return PolicyDecision(
                status=DecisionStatus.NOT_YET_DUE,
                record=record,
                policy=policy,
                due_date=due_date,
            )

        if record.legal_hold.is_effective(now):
            return PolicyDecision(
                status=DecisionStatus.ON_HOLD,
                record=record,
                policy=policy,
                due_date=due_date,
                reason=record.legal_hold.reason or "Legal hold active",
            )

        return PolicyDecision(
            status=DecisionStatus.DUE,
            record=record,
            policy=policy,
            due_date=due_date,
            disposal_method=self.select_method(record, policy),
        )

    def select_method(self, record: DisposableRecord, policy: RetentionPolicy) -> DisposalMethod:
        """Apply type-specific overrides on top of the policy default."""
        for rule in self._overrides:
            if rule.matches(record):
                logger.debug(
                    "Disposal method override %s -> %s for %s/%s",
                    rule.name,
                    rule.method.value,
                    record.record_type,
                    record.record_id,
                )
                return rule.method
        return policy.default_disposal_method

    def partition(
        self,
        records: Iterable[DisposableRecord],
        now: datetime | None = None,
    ) -> tuple[list[PolicyDecision], list[PolicyDecision]]:
        """Split records into a due-list and the excluded remainder."""
        now = now or datetime.now(UTC)
        due: list[PolicyDecision] = []
        excluded: list[PolicyDecision] = []
        for record in records:
            decision = self.evaluate(record, now)
            (due if decision.is_due else excluded).append(decision)
        return due, excluded
