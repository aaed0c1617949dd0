"""Tests for pre-disposal archival.

Tests cover:
- Archive identifiers, object keys and deterministic payloads
- Manifest creation before any destructive action
- Simulated archives in dry runs
- Storage failures mapped to ArchivalFailedError
- S3-backed archive store (moto)
"""

import gzip
import json
import re
from datetime import UTC, datetime

import boto3
import pytest
from moto import mock_aws

from retention_engine.services.archival import (
    ArchivalService,
    S3ArchiveStore,
    archive_key,
    build_archive_payload,
    generate_archive_id,
)
from retention_engine.services.domain import sha256_hex
from retention_engine.services.errors import ArchivalFailedError
from retention_engine.services.storage import ObjectStoreClient
from tests.fakes import InMemoryArchiveStore, InMemoryEvidenceStore, make_record

BUCKET = "retention-archives"


@pytest.fixture
def archive_store():
    return InMemoryArchiveStore()


@pytest.fixture
def evidence():
    return InMemoryEvidenceStore()


@pytest.fixture
def service(archive_store, evidence):
    return ArchivalService(archive_store, evidence)


class TestHelpers:
    def test_archive_id_format(self):
        archive_id = generate_archive_id(datetime(2026, 10, 18, 9, 30, 0, tzinfo=UTC))

        assert re.fullmatch(r"ARCH-20261018093000-[0-9A-F]{8}", archive_id)

    def test_archive_key_layout(self):
        key = archive_key("Document", "ARCH-1", datetime(2026, 3, 1, tzinfo=UTC))

        assert key == "archives/Document/2026/03/ARCH-1.json.gz"

    def test_payload_is_deterministic(self):
        records = [make_record("doc-1"), make_record("doc-2")]
        archived_at = datetime(2026, 10, 18, tzinfo=UTC)

        first = build_archive_payload(records, archive_id="ARCH-1", archived_at=archived_at)
        second = build_archive_payload(records, archive_id="ARCH-1", archived_at=archived_at)

        assert first == second
        document = json.loads(gzip.decompress(first))
        assert document["archive_id"] == "ARCH-1"
        assert [r["record_id"] for r in document["records"]] == ["doc-1", "doc-2"]
        assert document["records"][0]["content"]["email"] == "a@b.c"


class TestArchivalService:
    @pytest.mark.asyncio
    async def test_archive_writes_payload_and_manifest(self, service, archive_store, evidence):
        manifest = await service.archive([make_record("doc-1"), make_record("doc-2")])

        assert manifest.record_count == 2
        assert manifest.record_ids == ("doc-1", "doc-2")
        assert not manifest.simulated
        assert manifest.storage_location == f"memory://archives/{manifest.archive_id}"
        assert evidence.manifests[manifest.archive_id] == manifest
        assert sha256_hex(archive_store.objects[manifest.storage_location]) == manifest.file_hash

    @pytest.mark.asyncio
    async def test_simulated_archive_writes_nothing(self, service, archive_store, evidence):
        manifest = await service.archive([make_record("doc-1")], simulate=True)

        assert manifest.simulated
        assert manifest.storage_location.startswith("simulated://archives/Document/")
        assert archive_store.objects == {}
        assert evidence.manifests == {}
        assert len(manifest.file_hash) == 64

    @pytest.mark.asyncio
    async def test_storage_failure_raises_archival_failed(self, service, archive_store, evidence):
        archive_store.fail = True

        with pytest.raises(ArchivalFailedError, match="could not be stored"):
            await service.archive([make_record("doc-1")])

        assert evidence.manifests == {}

    @pytest.mark.asyncio
    async def test_empty_record_set_is_rejected(self, service):
        with pytest.raises(ValueError, match="empty"):
            await service.archive([])

    @pytest.mark.asyncio
    async def test_mixed_record_types_are_rejected(self, service):
        with pytest.raises(ValueError, match="one record type"):
            await service.archive([make_record("doc-1"), make_record("case-1", record_type="Case")])


class TestS3ArchiveStore:
    @pytest.fixture
    def object_store(self):
        with mock_aws():
            client = ObjectStoreClient(
                endpoint_url="http://mocked",
                access_key="test_access_key",
                secret_key="test_secret_key",  # noqa: S106
            )
            client._client = boto3.client(
                "s3",
                aws_access_key_id="test_access_key",
                aws_secret_access_key="test_secret_key",  # noqa: S106
                region_name="us-east-1",
            )
            client.ensure_bucket(BUCKET)
            yield client

    @pytest.mark.asyncio
    async def test_archive_round_trip_through_bucket(self, object_store, evidence):
        service = ArchivalService(S3ArchiveStore(object_store, BUCKET), evidence)

        manifest = await service.archive([make_record("doc-1")])

        assert manifest.storage_location.startswith(f"s3://{BUCKET}/archives/Document/")
        key = manifest.storage_location.removeprefix(f"s3://{BUCKET}/")
        payload = object_store.download(BUCKET, key, expected_digest=manifest.file_hash)
        assert json.loads(gzip.decompress(payload))["records"][0]["record_id"] == "doc-1"

    @pytest.mark.asyncio
    async def test_missing_bucket_fails_archival(self, object_store, evidence):
        service = ArchivalService(S3ArchiveStore(object_store, "missing-bucket"), evidence)

        with pytest.raises(ArchivalFailedError):
            await service.archive([make_record("doc-1")])
