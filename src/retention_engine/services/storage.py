"""S3-compatible storage for pre-disposal archives.

Archives are write-once: an existing key is never overwritten, and the
bucket is versioned on creation so a stray delete leaves a recoverable
version behind. Each archive carries its SHA-256 digest in object
metadata and is checked against it on read.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from retention_engine.services.domain import sha256_hex

if TYPE_CHECKING:
    from collections.abc import Iterator

    from retention_engine.core.config import S3Settings

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/gzip"
DIGEST_METADATA_KEY = "sha256-digest"

_MISSING_BUCKET_CODES = frozenset({"404", "NoSuchBucket"})
_MISSING_KEY_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


@dataclass(frozen=True)
class UploadResult:
    """Where an archive landed and what was written."""

    key: str
    bucket: str
    sha256_digest: str
    size_bytes: int
    etag: str
    version_id: str | None = None

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class StorageError(Exception):
    """An archive could not be read from or written to the bucket."""

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class BucketNotFoundError(StorageError):
    pass


class ObjectNotFoundError(StorageError):
    pass


class ArchiveExistsError(StorageError):
    """The archive key is already taken; archives are never replaced."""


class IntegrityError(StorageError):
    """Stored bytes do not hash to the recorded digest."""


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ObjectStoreClient:
    """Archive bucket access over boto3.

    botocore retries transient failures in "standard" mode, so callers only
    see errors that survived ``max_retries`` attempts.
    """

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        self._region = region
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_retries, "mode": "standard"},
                signature_version="s3v4",
            ),
        )
        logger.debug("Archive store client for %s (%s)", endpoint_url, region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    @contextmanager
    def _translate(self, operation: str, bucket: str, key: str | None = None) -> Iterator[None]:
        """Map botocore failures onto the storage error hierarchy."""
        try:
            yield
        except ClientError as e:
            code = _error_code(e)
            if code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {bucket}", bucket=bucket, key=key, operation=operation
                ) from e
            if key is not None and code in _MISSING_KEY_CODES:
                raise ObjectNotFoundError(
                    f"Object does not exist: {bucket}/{key}", bucket=bucket, key=key, operation=operation
                ) from e
            raise StorageError(f"{operation} failed: {e}", bucket=bucket, key=key, operation=operation) from e
        except BotoCoreError as e:
            raise StorageError(f"{operation} failed: {e}", bucket=bucket, key=key, operation=operation) from e

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the archive bucket with versioning if it is missing.

        Returns True when the bucket was created by this call.
        """
        try:
            self._client.head_bucket(Bucket=bucket)
            return False
        except ClientError as e:
            if _error_code(e) not in _MISSING_BUCKET_CODES:
                raise StorageError(
                    f"Cannot check archive bucket: {e}", bucket=bucket, operation="head_bucket"
                ) from e

        create_args: dict = {"Bucket": bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if self._region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": self._region}

        with self._translate("create_bucket", bucket):
            self._client.create_bucket(**create_args)
            self._client.put_bucket_versioning(
                Bucket=bucket, VersioningConfiguration={"Status": "Enabled"}
            )

        logger.info("Created versioned archive bucket %s", bucket)
        return True

    def exists(self, bucket: str, key: str) -> bool:
        try:
            with self._translate("head_object", bucket, key):
                self._client.head_object(Bucket=bucket, Key=key)
        except ObjectNotFoundError:
            return False
        return True

    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str = ARCHIVE_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """Write an archive under a key that must not already exist.

        Raises:
            ArchiveExistsError: The key already holds an archive.
            BucketNotFoundError: The bucket is missing.
            StorageError: Any other write failure.
        """
        if self.exists(bucket, key):
            raise ArchiveExistsError(
                f"Archive already stored at {bucket}/{key}", bucket=bucket, key=key, operation="upload"
            )

        digest = sha256_hex(data)
        with self._translate("upload", bucket, key):
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={**(metadata or {}), DIGEST_METADATA_KEY: digest},
            )

        logger.debug("Stored archive %s/%s (%d bytes)", bucket, key, len(data))
        return UploadResult(
            key=key,
            bucket=bucket,
            sha256_digest=digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
            version_id=response.get("VersionId"),
        )

    def download(self, bucket: str, key: str, *, expected_digest: str | None = None) -> bytes:
        """Read an archive back and check it against its digest.

        ``expected_digest`` (usually the manifest's file hash) wins over the
        digest recorded in object metadata.
        """
        with self._translate("download", bucket, key):
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()

        recorded = expected_digest or response.get("Metadata", {}).get(DIGEST_METADATA_KEY)
        actual = sha256_hex(data)
        if recorded and actual != recorded:
            raise IntegrityError(
                f"Archive integrity check failed: expected {recorded[:16]}..., got {actual[:16]}...",
                bucket=bucket,
                key=key,
                operation="download",
            )
        return data
