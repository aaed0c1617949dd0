"""Compliance violation detection.

After a disposal, the actual disposal time is compared with the statutory
minimum retention of the record's legal basis. The statutory table is kept
independent of the host's policy configuration, so a misconfigured policy
that disposes too early is still caught.

Detection never blocks: the disposal already happened. Violations are stored
and surfaced in the run report.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from retention_engine.services.errors import ComplianceViolationDetectedError
from retention_engine.services.policy import LEGAL_BASIS_PRESETS

if TYPE_CHECKING:
    from collections.abc import Mapping

    from retention_engine.services.domain import DisposableRecord
    from retention_engine.services.policy import PolicyRegistry

logger = logging.getLogger(__name__)

# Statutory minimum retention in days, per legal-basis code
STATUTORY_MINIMUMS: dict[str, int] = {
    policy.legal_basis_code: policy.minimum_retention_days for policy in LEGAL_BASIS_PRESETS
}

_ONE_DAY_SECONDS = timedelta(days=1).total_seconds()


@dataclass(frozen=True, slots=True)
class ComplianceViolation:
    """A disposal that happened before the statutory minimum.

    Attributes:
        record_type: Disposed record type.
        record_id: Disposed record identifier.
        tenant_id: Owning tenant.
        legal_basis_code: Legal basis of the record.
        required_date: Earliest lawful disposal time.
        actual_date: When the disposal happened.
        days_early: Whole days (rounded up) the disposal was early.
        certificate_id: Certificate issued for the disposal.
    """

    record_type: str
    record_id: str
    tenant_id: str
    legal_basis_code: str
    required_date: datetime
    actual_date: datetime
    days_early: int
    certificate_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "record_type": self.record_type,
            "record_id": self.record_id,
            "tenant_id": self.tenant_id,
            "legal_basis_code": self.legal_basis_code,
            "required_date": self.required_date.isoformat(),
            "actual_date": self.actual_date.isoformat(),
            "days_early": self.days_early,
            "certificate_id": self.certificate_id,
        }


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole days from ``earlier`` to ``later``, rounded up."""
    return math.ceil((later - earlier).total_seconds() / _ONE_DAY_SECONDS)


class ComplianceViolationDetector:
    """Checks disposals against statutory minimum retention periods.

    Codes absent from the statutory table fall back to the host policy
    registry when one is given; a code known to neither cannot be judged.
    """

    def __init__(
        self,
        minimums: Mapping[str, int] | None = None,
        fallback: PolicyRegistry | None = None,
    ) -> None:
        self._minimums = dict(STATUTORY_MINIMUMS if minimums is None else minimums)
        self._fallback = fallback

    def minimum_days(self, legal_basis_code: str) -> int | None:
        if legal_basis_code in self._minimums:
            return self._minimums[legal_basis_code]
        if self._fallback is not None:
            policy = self._fallback.resolve(legal_basis_code)
            if policy is not None:
                return policy.minimum_retention_days
        return None

    def check(
        self,
        record: DisposableRecord,
        certificate_id: str | None,
        disposed_at: datetime,
    ) -> ComplianceViolation | None:
        """Return the violation for this disposal, or None if it was lawful."""
        days = self.minimum_days(record.legal_basis_code)
        if days is None:
            logger.warning(
                "No statutory minimum known for %r; compliance of %s/%s not checked",
                record.legal_basis_code,
                record.record_type,
                record.record_id,
            )
            return None

        required_date = record.source_timestamp + timedelta(days=days)
        if disposed_at >= required_date:
            return None

        return ComplianceViolation(
            record_type=record.record_type,
            record_id=record.record_id,
            tenant_id=record.tenant_id,
            legal_basis_code=record.legal_basis_code,
            required_date=required_date,
            actual_date=disposed_at,
            days_early=days_between(disposed_at, required_date),
            certificate_id=certificate_id,
        )

    def assert_compliant(
        self,
        record: DisposableRecord,
        certificate_id: str | None,
        disposed_at: datetime,
    ) -> None:
        """Raise ComplianceViolationDetectedError if the disposal was early."""
        violation = self.check(record, certificate_id, disposed_at)
        if violation is not None:
            raise ComplianceViolationDetectedError(violation)
