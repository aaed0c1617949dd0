"""Pre-disposal archival.

Records disposed with PERMANENT_DELETE or ARCHIVE are first written to the
archive store as a gzip-compressed canonical JSON snapshot. The manifest
returned by ``ArchivalService.archive`` is created strictly before any
destructive call is made.

Archive layout in the bucket:
    archives/<record_type>/<YYYY>/<MM>/<archive_id>.json.gz
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from retention_engine.services.domain import canonical_json, sha256_hex
from retention_engine.services.errors import ArchivalFailedError, StoreError
from retention_engine.services.storage import ARCHIVE_CONTENT_TYPE, StorageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from retention_engine.services.domain import DisposableRecord
    from retention_engine.services.interfaces import ArchiveStore, EvidenceStore
    from retention_engine.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)
ARCHIVE_FORMAT_VERSION = "1.0"


def generate_archive_id(now: datetime | None = None) -> str:
    """Return a new archive identifier ``ARCH-<YYYYmmddHHMMSS>-<8 upper hex>``."""
    now = now or datetime.now(UTC)
    return f"ARCH-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"


def archive_key(record_type: str, archive_id: str, archived_at: datetime) -> str:
    """Object key of an archive within the archive bucket."""
    return f"archives/{record_type}/{archived_at:%Y}/{archived_at:%m}/{archive_id}.json.gz"


@dataclass(frozen=True, slots=True)
class ArchiveManifest:
    """Description of a written (or simulated) pre-disposal archive.

    Attributes:
        archive_id: Unique archive identifier.
        record_type: Type of the archived records.
        record_count: Number of records in the archive.
        file_hash: SHA-256 of the compressed payload.
        storage_location: Where the payload was written.
        archived_at: When the archive was built.
        record_ids: Identifiers of the archived records.
        simulated: True when the payload was built but not written.
    """

    archive_id: str
    record_type: str
    record_count: int
    file_hash: str
    storage_location: str
    archived_at: datetime
    record_ids: tuple[str, ...] = field(default_factory=tuple)
    simulated: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "archive_id": self.archive_id,
            "record_type": self.record_type,
            "record_count": self.record_count,
            "file_hash": self.file_hash,
            "storage_location": self.storage_location,
            "archived_at": self.archived_at.isoformat(),
            "record_ids": list(self.record_ids),
            "simulated": self.simulated,
        }


def build_archive_payload(
    records: Sequence[DisposableRecord],
    *,
    archive_id: str,
    archived_at: datetime,
) -> bytes:
    """Serialize record snapshots into the compressed archive payload.

    ``mtime=0`` keeps the gzip header stable, so identical snapshots always
    produce the same file hash.
    """
    document = {
        "format_version": ARCHIVE_FORMAT_VERSION,
        "archive_id": archive_id,
        "archived_at": archived_at.isoformat(),
        "records": [record.to_snapshot_dict() for record in records],
    }
    return gzip.compress(canonical_json(document), mtime=0)


class ArchivalService:
    """Writes pre-disposal archives and their manifests.

    Example:
        service = ArchivalService(S3ArchiveStore(client, "retention-archives"), evidence)
        manifest = await service.archive([record])
    """

    def __init__(self, store: ArchiveStore, evidence_store: EvidenceStore) -> None:
        self._store = store
        self._evidence = evidence_store

    async def archive(
        self,
        records: Sequence[DisposableRecord],
        *,
        simulate: bool = False,
    ) -> ArchiveManifest:
        """Archive the given records.

        Args:
            records: Records of a single type to archive.
            simulate: Build and hash the payload without writing it or its manifest.

        Returns:
            The manifest of the archive.

        Raises:
            ArchivalFailedError: If the payload or its manifest cannot be stored.
            ValueError: If no records are given or types are mixed.
        """
        if not records:
            msg = "Cannot archive an empty record set"
            raise ValueError(msg)

        record_type = records[0].record_type
        if any(record.record_type != record_type for record in records):
            msg = "All archived records must share one record type"
            raise ValueError(msg)

        archived_at = datetime.now(UTC)
        archive_id = generate_archive_id(archived_at)
        payload = build_archive_payload(records, archive_id=archive_id, archived_at=archived_at)

        manifest = ArchiveManifest(
            archive_id=archive_id,
            record_type=record_type,
            record_count=len(records),
            file_hash=sha256_hex(payload),
            storage_location=f"simulated://{archive_key(record_type, archive_id, archived_at)}",
            archived_at=archived_at,
            record_ids=tuple(record.record_id for record in records),
            simulated=simulate,
        )

        if simulate:
            logger.info(
                "[dry-run] Built archive %s for %d %s record(s) (%d bytes, sha256=%s); nothing written",
                archive_id,
                manifest.record_count,
                record_type,
                len(payload),
                manifest.file_hash[:16],
            )
            return manifest

        try:
            location = await self._store.write_archive(manifest, payload)
            manifest = replace(manifest, storage_location=location)
            await self._evidence.put_manifest(manifest)
        except (StorageError, StoreError) as e:
            logger.error(
                "Archive %s for %d %s record(s) failed: %s", archive_id, len(records), record_type, e
            )
            msg = f"Archive {archive_id} could not be stored: {e}"
            raise ArchivalFailedError(msg) from e

        logger.info(
            "Archived %d %s record(s) as %s (%d bytes)",
            manifest.record_count,
            record_type,
            archive_id,
            len(payload),
        )
        return manifest


class S3ArchiveStore:
    """Archive store backed by an S3-compatible bucket.

    boto3 is synchronous, so uploads run in a worker thread.
    """

    def __init__(self, client: ObjectStoreClient, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    async def write_archive(self, manifest: ArchiveManifest, payload: bytes) -> str:
        key = archive_key(manifest.record_type, manifest.archive_id, manifest.archived_at)
        result = await asyncio.to_thread(
            self._client.upload,
            self._bucket,
            key,
            payload,
            content_type=ARCHIVE_CONTENT_TYPE,
            metadata={
                "archive-id": manifest.archive_id,
                "record-type": manifest.record_type,
                "record-count": str(manifest.record_count),
            },
        )
        if result.sha256_digest != manifest.file_hash:
            msg = f"Uploaded digest {result.sha256_digest} does not match manifest"
            raise StorageError(msg, bucket=self._bucket, key=key, operation="write_archive")
        return result.location
