"""Daily legal hold review.

Holds with an expiry date stop protecting their records on their own. Any
hold lapsing within the warning window is surfaced so counsel can extend it
before the record becomes disposable.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from retention_engine.services.notifications import AlertSeverity, EmergencyAlert

if TYPE_CHECKING:
    from retention_engine.services.interfaces import NotificationGateway, RecordSourceAdapter

logger = logging.getLogger(__name__)


async def verify_legal_holds_handler(
    records: RecordSourceAdapter,
    notifier: NotificationGateway,
    *,
    warning_days: int = 14,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Warn about legal holds expiring within ``warning_days``.

    Returns:
        Counts of active and expiring holds, plus the expiring records.
    """
    now = now or datetime.now(UTC)
    horizon = now + timedelta(days=warning_days)

    active = 0
    expiring: list[dict[str, Any]] = []

    for tenant_id in await records.list_tenants():
        for record in await records.list_active_holds(tenant_id):
            hold = record.legal_hold
            if not hold.is_effective(now):
                continue
            active += 1
            if hold.expires_at is not None and hold.expires_at <= horizon:
                logger.warning(
                    "Legal hold on %s/%s (tenant %s) expires %s",
                    record.record_type,
                    record.record_id,
                    tenant_id,
                    hold.expires_at.isoformat(),
                )
                expiring.append(
                    {
                        "tenant_id": tenant_id,
                        "record_type": record.record_type,
                        "record_id": record.record_id,
                        "expires_at": hold.expires_at.isoformat(),
                        "reason": hold.reason,
                    }
                )

    if expiring:
        await notifier.send_emergency_alert(
            EmergencyAlert(
                alert_type="legal_hold_expiring",
                message=f"{len(expiring)} legal hold(s) expire within {warning_days} days",
                severity=AlertSeverity.WARNING,
                details={"holds": expiring},
            )
        )

    logger.info("Legal hold review: active=%d, expiring=%d", active, len(expiring))
    return {"active_holds": active, "expiring": expiring}
