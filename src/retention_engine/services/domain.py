"""Typed views over host records and persisted disposal jobs.

The host application owns the records; the engine only sees them through
these immutable views, returned by the record source adapter. Jobs are
snapshots of the persisted job row; every change goes through the job store
as a conditional update and yields a fresh snapshot.
"""

from __future__ import annotations

import hashlib
import json
import uuid  # noqa: TC003 - used at runtime in dataclass fields
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from retention_engine.db.models.base import DisposalMethod, FailureReason, JobState


def canonical_json(data: Any) -> bytes:
    """Serialize data to canonical JSON bytes (sorted keys, no whitespace).

    Datetimes are rendered as ISO 8601 strings; other non-JSON values
    fall back to ``str``.
    """

    def _default(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the lowercase SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True, slots=True)
class LegalHold:
    """Legal hold state of a record.

    Attributes:
        active: Whether a hold has been placed.
        expires_at: When the hold lapses on its own (None = until lifted).
        reason: Free-text reference to the matter or order.
    """

    active: bool = False
    expires_at: datetime | None = None
    reason: str | None = None

    def is_effective(self, now: datetime) -> bool:
        """A hold blocks disposal while active and not yet expired."""
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True, slots=True)
class DisposalState:
    """Disposal state written back to the host record."""

    disposed: bool = False
    method: DisposalMethod | None = None
    certificate_id: str | None = None


@dataclass(frozen=True, slots=True)
class DisposableRecord:
    """Read-only view of a host record with its retention metadata.

    Attributes:
        record_type: Host collection or entity type (e.g., "Document").
        record_id: Identifier of the record within the host.
        tenant_id: Owning tenant.
        legal_basis_code: Tag of the regulatory rule governing retention.
        source_timestamp: Time from which retention is counted.
        legal_hold: Current legal hold state.
        disposal_state: Current disposal state.
        attributes: Type-specific tags (classification, document type, ...).
        snapshot: Record content captured for hashing and archival.
    """

    record_type: str
    record_id: str
    tenant_id: str
    legal_basis_code: str
    source_timestamp: datetime
    legal_hold: LegalHold = field(default_factory=LegalHold)
    disposal_state: DisposalState = field(default_factory=DisposalState)
    attributes: Mapping[str, Any] = field(default_factory=dict)
    snapshot: Mapping[str, Any] = field(default_factory=dict)

    def to_snapshot_dict(self) -> dict[str, Any]:
        """Canonical pre-disposal representation used for hashing and archives."""
        return {
            "record_type": self.record_type,
            "record_id": self.record_id,
            "tenant_id": self.tenant_id,
            "legal_basis_code": self.legal_basis_code,
            "source_timestamp": self.source_timestamp.isoformat(),
            "attributes": dict(self.attributes),
            "content": dict(self.snapshot),
        }

    def compute_state_hash(self) -> str:
        """SHA-256 over the canonical snapshot of this record."""
        return sha256_hex(canonical_json(self.to_snapshot_dict()))


@dataclass(frozen=True, slots=True)
class DisposalAction:
    """A disposal method applied to one record through the adapter.

    Attributes:
        method: Disposal method to apply.
        fields: Sub-fields removed by ANONYMIZE or REDACT.
        archive_location: Storage location of the pre-disposal archive.
        metadata: Extra flags recorded on the host record.
    """

    method: DisposalMethod
    fields: tuple[str, ...] = ()
    archive_location: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DisposalResult:
    """Outcome of a disposal method.

    Attributes:
        method: Method that ran.
        applied: False when the record was already in the target state.
        simulated: True when the destructive call was skipped (dry run).
        affected_fields: Fields removed or rewritten.
        detail: Human-readable note from the adapter.
    """

    method: DisposalMethod
    applied: bool
    simulated: bool = False
    affected_fields: tuple[str, ...] = ()
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "method": self.method.value,
            "applied": self.applied,
            "simulated": self.simulated,
            "affected_fields": list(self.affected_fields),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DisposalResult:
        """Rebuild a result persisted on a job."""
        return cls(
            method=DisposalMethod(data["method"]),
            applied=bool(data["applied"]),
            simulated=bool(data.get("simulated", False)),
            affected_fields=tuple(data.get("affected_fields") or ()),
            detail=data.get("detail"),
        )


@dataclass(frozen=True, slots=True)
class RetentionJob:
    """Snapshot of a persisted disposal job."""

    job_id: uuid.UUID
    tenant_id: str
    record_type: str
    record_id: str
    legal_basis_code: str
    disposal_method: DisposalMethod
    status: JobState
    attempts: int
    created_at: datetime
    run_at: datetime
    last_error: str | None = None
    failure_reason: FailureReason | None = None
    dry_run: bool = False
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    pre_disposal_hash: str | None = None
    archive_id: str | None = None
    disposal_intent: Mapping[str, Any] | None = None
    disposal_result: Mapping[str, Any] | None = None
    disposed_at: datetime | None = None
    certificate_id: str | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "job_id": str(self.job_id),
            "tenant_id": self.tenant_id,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "legal_basis_code": self.legal_basis_code,
            "disposal_method": self.disposal_method.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "run_at": self.run_at.isoformat(),
            "last_error": self.last_error,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "dry_run": self.dry_run,
            "pre_disposal_hash": self.pre_disposal_hash,
            "archive_id": self.archive_id,
            "disposal_intent": dict(self.disposal_intent) if self.disposal_intent else None,
            "disposed_at": self.disposed_at.isoformat() if self.disposed_at else None,
            "certificate_id": self.certificate_id,
        }
