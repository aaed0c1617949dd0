"""Legal hold guard.

Hold state can change between the moment a record is found due and the
moment it is destroyed, so every check re-reads the record from the host.
The executor calls ``check_hold`` during VERIFYING and again immediately
before the destructive call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from retention_engine.services.interfaces import RecordSourceAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HoldCheck:
    """Result of a legal hold check.

    Attributes:
        allowed: True when disposal may proceed.
        reason: Why disposal is blocked (None when allowed).
        checked_at: When the hold state was read.
        record_found: False when the host no longer returns the record.
    """

    allowed: bool
    reason: str | None
    checked_at: datetime
    record_found: bool = True


class LegalHoldGuard:
    """Authoritative, uncached legal hold check."""

    def __init__(self, records: RecordSourceAdapter) -> None:
        self._records = records

    async def check_hold(self, record_type: str, record_id: str) -> HoldCheck:
        """Read the record's hold state now.

        A record that can no longer be read is treated as blocked: the guard
        never allows disposal it cannot verify.

        Args:
            record_type: Host record type.
            record_id: Host record identifier.

        Returns:
            HoldCheck describing whether disposal is allowed.
        """
        now = datetime.now(UTC)
        record = await self._records.get_record(record_type, record_id)

        if record is None:
            logger.warning("Hold check could not read %s/%s", record_type, record_id)
            return HoldCheck(
                allowed=False,
                reason="Record not readable",
                checked_at=now,
                record_found=False,
            )

        if record.legal_hold.is_effective(now):
            reason = record.legal_hold.reason or "Legal hold active"
            if record.legal_hold.expires_at is not None:
                reason = f"{reason} (until {record.legal_hold.expires_at.isoformat()})"
            logger.info("Legal hold blocks disposal of %s/%s: %s", record_type, record_id, reason)
            return HoldCheck(allowed=False, reason=reason, checked_at=now)

        return HoldCheck(allowed=True, reason=None, checked_at=now)
