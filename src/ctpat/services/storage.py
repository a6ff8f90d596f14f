"""Object storage for rendered inspection reports.

The pipeline consumes storage through the narrow ``BlobStore`` interface:
store bytes and get back a reference plus a public locator, delete by
reference, fetch by reference. ``S3BlobStore`` implements it on any
S3-compatible service (AWS S3, MinIO).

boto3 is synchronous; async callers run these methods with
``asyncio.to_thread``.

Example:
    store = S3BlobStore.from_settings(settings.s3)
    store.ensure_bucket()
    blob = store.store(pdf_bytes, filename="inspection.pdf")
    data = store.fetch(blob.ref)
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from ctpat.core.config import S3Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "reports"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredBlob:
    """Result of a store operation.

    Attributes:
        ref: Opaque reference used for later fetch/delete.
        public_url: Locator a recipient can open.
        sha256_digest: SHA-256 hex digest of the stored content.
        size_bytes: Size of the stored content in bytes.
    """

    ref: str
    public_url: str
    sha256_digest: str
    size_bytes: int


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

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


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BlobStore(Protocol):
    """Storage collaborator for rendered reports."""

    def store(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: str = "application/pdf",
    ) -> StoredBlob: ...

    def delete(self, ref: str) -> None: ...

    def fetch(self, ref: str) -> bytes: ...


class S3BlobStore:
    """S3-compatible blob store for inspection reports.

    Objects are keyed ``reports/<yyyy>/<mm>/<digest prefix>-<filename>`` so
    identical content under the same name maps to the same key.
    """

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        public_base_url: str | None = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the blob store.

        Args:
            bucket: Bucket holding the reports.
            endpoint_url: S3-compatible endpoint URL (None for AWS).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: AWS region (use us-east-1 for MinIO).
            public_base_url: Public URL prefix for stored objects.
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self.bucket = bucket
        self._endpoint_url = endpoint_url
        self._region = region
        self._public_base_url = (
            public_base_url or f"{endpoint_url or f'https://s3.{region}.amazonaws.com'}/{bucket}"
        ).rstrip("/")

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

        logger.debug(
            "Initialized S3BlobStore for endpoint=%s bucket=%s",
            endpoint_url,
            bucket,
        )

    @classmethod
    def from_settings(cls, settings: S3Settings) -> S3BlobStore:
        """Create a blob store from S3Settings configuration."""
        return cls(
            settings.bucket,
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
            public_base_url=settings.public_base_url,
        )

    def ensure_bucket(self) -> bool:
        """Ensure the bucket exists, creating it if necessary.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the bucket cannot be checked or created.
        """
        try:
            self._client.head_bucket(Bucket=self.bucket)
            logger.debug("Bucket %s already exists", self.bucket)
            return False
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}",
                    bucket=self.bucket,
                    operation="head_bucket",
                ) from e

        try:
            # For us-east-1, don't specify LocationConstraint
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=self.bucket)
            else:
                self._client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise StorageError(
                f"Failed to create bucket: {e}",
                bucket=self.bucket,
                operation="create_bucket",
            ) from e

        logger.info("Created bucket: %s", self.bucket)
        return True

    def store(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: str = "application/pdf",
    ) -> StoredBlob:
        """Upload a report.

        Raises:
            StorageError: If the upload fails.
        """
        sha256_digest = hashlib.sha256(data).hexdigest()
        key = self._build_key(filename, sha256_digest)

        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"sha256-digest": sha256_digest},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Upload failed: {e}",
                bucket=self.bucket,
                key=key,
                operation="upload",
            ) from e

        logger.debug(
            "Uploaded %s/%s (%d bytes, sha256=%s)",
            self.bucket,
            key,
            len(data),
            sha256_digest[:16] + "...",
        )
        return StoredBlob(
            ref=key,
            public_url=f"{self._public_base_url}/{key}",
            sha256_digest=sha256_digest,
            size_bytes=len(data),
        )

    def fetch(self, ref: str) -> bytes:
        """Download a stored report.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StorageError: If the download fails.
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=ref)
            data = response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(
                    f"Object does not exist: {self.bucket}/{ref}",
                    bucket=self.bucket,
                    key=ref,
                    operation="download",
                ) from e
            raise StorageError(
                f"Download failed: {e}",
                bucket=self.bucket,
                key=ref,
                operation="download",
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Download failed: {e}",
                bucket=self.bucket,
                key=ref,
                operation="download",
            ) from e

        logger.debug("Downloaded %s/%s (%d bytes)", self.bucket, ref, len(data))
        return data

    def delete(self, ref: str) -> None:
        """Delete a stored report. Deleting a missing object is not an error.

        Raises:
            StorageError: If the delete fails.
        """
        try:
            self._client.delete_object(Bucket=self.bucket, Key=ref)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Delete failed: {e}",
                bucket=self.bucket,
                key=ref,
                operation="delete",
            ) from e
        logger.debug("Deleted %s/%s", self.bucket, ref)

    def _build_key(self, filename: str, sha256_digest: str) -> str:
        safe_name = _UNSAFE_FILENAME_CHARS.sub("_", filename).strip("._") or "report.pdf"
        now = datetime.now(UTC)
        return f"{KEY_PREFIX}/{now:%Y}/{now:%m}/{sha256_digest[:16]}-{safe_name}"


def build_blob_store(settings: S3Settings) -> BlobStore | None:
    """Build the configured blob store, or None when storage is disabled."""
    if not settings.enabled:
        logger.info("Report storage disabled; emails will be sent without attachments")
        return None
    return S3BlobStore.from_settings(settings)
