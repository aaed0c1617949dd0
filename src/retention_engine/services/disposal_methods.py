"""Disposal methods.

Each method is expressed as a ``DisposalAction`` and applied through the
record source adapter, the single mutation entrypoint into the host:

- SOFT_DELETE: flag and metadata only, content retained
- ANONYMIZE: strip identifying fields, keep the record structure
- PERMANENT_DELETE: irreversible removal (archived beforehand)
- ARCHIVE: move to cold storage and mark archived (archived beforehand)
- REDACT: remove sensitive sub-fields only

Adapters must treat every action as idempotent: re-applying a method to a
record already in the target state reports ``applied=False``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.domain import DisposalAction, DisposalResult
from retention_engine.services.errors import DisposalExecutionFailedError

if TYPE_CHECKING:
    from retention_engine.services.domain import DisposableRecord
    from retention_engine.services.interfaces import RecordSourceAdapter

logger = logging.getLogger(__name__)

# Fields that identify a natural person
IDENTIFYING_FIELDS: tuple[str, ...] = (
    "full_name",
    "name",
    "email",
    "phone",
    "id_number",
    "address",
    "date_of_birth",
)

# Sub-fields removed by REDACT
SENSITIVE_FIELDS: tuple[str, ...] = (
    "id_number",
    "bank_account",
    "credit_card",
    "trust_account_number",
    "beneficiary_details",
    "kyc_data",
    "biometric_data",
    "signature_image",
)


def _present(fields: tuple[str, ...], record: DisposableRecord) -> tuple[str, ...]:
    """Fields of ``fields`` found in the snapshot, or all of them if none is."""
    found = tuple(name for name in fields if name in record.snapshot)
    return found or fields


def build_action(
    record: DisposableRecord,
    method: DisposalMethod,
    *,
    archive_location: str | None = None,
) -> DisposalAction:
    """Describe how ``method`` applies to ``record``."""
    if method == DisposalMethod.ANONYMIZE:
        fields = _present(IDENTIFYING_FIELDS, record)
    elif method == DisposalMethod.REDACT:
        fields = _present(SENSITIVE_FIELDS, record)
    else:
        fields = ()

    return DisposalAction(
        method=method,
        fields=fields,
        archive_location=archive_location,
        metadata={"disposal_method": method.value},
    )


async def execute_disposal(
    adapter: RecordSourceAdapter,
    record: DisposableRecord,
    method: DisposalMethod,
    *,
    archive_location: str | None = None,
    dry_run: bool = False,
) -> DisposalResult:
    """Run a disposal method against the host.

    In a dry run the destructive call is skipped and a simulated result is
    returned.

    Raises:
        DisposalExecutionFailedError: If the adapter fails.
    """
    action = build_action(record, method, archive_location=archive_location)

    if dry_run:
        logger.info("[dry-run] Would apply %s to %s/%s", method.name, record.record_type, record.record_id)
        return DisposalResult(
            method=method,
            applied=False,
            simulated=True,
            affected_fields=action.fields,
            detail="Simulated: destructive call skipped",
        )

    try:
        result = await adapter.apply_disposal(record, action)
    except Exception as e:
        msg = f"{method.name} failed for {record.record_type}/{record.record_id}: {e}"
        raise DisposalExecutionFailedError(msg) from e

    if not result.applied:
        logger.info(
            "%s on %s/%s was a no-op (already in target state)",
            method.name,
            record.record_type,
            record.record_id,
        )
    return result
