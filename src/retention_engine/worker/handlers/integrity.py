"""Weekly integrity verification.

Re-verifies every tenant's audit hash chain and recomputes the hash (and
signature, when signed) of every stored disposal certificate. Any mismatch
raises a critical alert: evidence has been altered or lost.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from retention_engine.services.notifications import EmergencyAlert

if TYPE_CHECKING:
    from retention_engine.services.audit_trail import AuditTrail
    from retention_engine.services.certificates import CertificateService
    from retention_engine.services.interfaces import (
        AuditStore,
        EvidenceStore,
        NotificationGateway,
    )

logger = logging.getLogger(__name__)


async def verify_audit_integrity_handler(
    audit: AuditTrail,
    audit_store: AuditStore,
    evidence: EvidenceStore,
    certificates: CertificateService,
    notifier: NotificationGateway,
) -> dict[str, Any] | None:
    """Verify audit chains and certificates of all tenants.

    Returns:
        Verification counts and the identifiers that failed.
    """
    broken_chains: dict[str, list[str]] = {}
    checked_entries = 0

    tenants = await audit_store.list_streams()
    for tenant_id in tenants:
        result = await audit.verify_chain(tenant_id)
        checked_entries += result.checked_entries
        if not result.valid:
            broken_chains[tenant_id] = result.errors

    stored = await evidence.list_certificates()
    invalid_certificates = [
        certificate.certificate_id
        for certificate in stored
        if not certificates.verify_certificate(certificate)
    ]

    if broken_chains or invalid_certificates:
        logger.critical(
            "Integrity check failed: %d broken chain(s), %d invalid certificate(s)",
            len(broken_chains),
            len(invalid_certificates),
        )
        await notifier.send_emergency_alert(
            EmergencyAlert(
                alert_type="integrity_check_failed",
                message="Audit chain or certificate verification failed",
                details={
                    "broken_chains": broken_chains,
                    "invalid_certificates": invalid_certificates,
                },
            )
        )

    return {
        "tenants": len(tenants),
        "checked_entries": checked_entries,
        "checked_certificates": len(stored),
        "broken_chains": sorted(broken_chains),
        "invalid_certificates": invalid_certificates,
    }
