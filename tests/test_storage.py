"""Tests for the S3 report blob store.

Tests cover:
- Bucket creation
- Store / fetch / delete round trip
- Object key layout and public URLs
- Error mapping (missing objects, missing bucket)
- Building the store from settings

Uses moto to mock S3 operations without requiring actual S3/MinIO.
"""

import hashlib

import boto3
import pytest
from moto import mock_aws
from pydantic import SecretStr

from ctpat.core.config import S3Settings
from ctpat.services.storage import (
    KEY_PREFIX,
    ObjectNotFoundError,
    S3BlobStore,
    StorageError,
    build_blob_store,
)

BUCKET = "ctpat-reports-test"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Keep boto3 away from any real credentials."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3_store(aws_credentials):
    """Blob store against a mocked S3 with the bucket created."""
    with mock_aws():
        store = S3BlobStore(
            BUCKET,
            endpoint_url=None,
            access_key="testing",
            secret_key="testing",
            public_base_url="https://reports.ctpat.test/",
        )
        store.ensure_bucket()
        yield store


class TestEnsureBucket:
    """Tests for bucket management."""

    def test_creates_missing_bucket(self, aws_credentials):
        with mock_aws():
            store = S3BlobStore(BUCKET, endpoint_url=None, access_key="a", secret_key="b")
            assert store.ensure_bucket() is True
            assert store.ensure_bucket() is False

            buckets = boto3.client("s3", region_name="us-east-1").list_buckets()["Buckets"]
            assert [b["Name"] for b in buckets] == [BUCKET]

    def test_creates_bucket_outside_us_east_1(self, aws_credentials):
        with mock_aws():
            store = S3BlobStore(
                BUCKET, endpoint_url=None, access_key="a", secret_key="b", region="eu-west-1"
            )
            assert store.ensure_bucket() is True


class TestStoreFetchDelete:
    """Tests for the BlobStore operations."""

    def test_store_and_fetch(self, s3_store):
        data = b"%PDF-1.7 inspection report"

        blob = s3_store.store(data, filename="CTPAT_TRK-104_2026-10-19.pdf")

        digest = hashlib.sha256(data).hexdigest()
        assert blob.sha256_digest == digest
        assert blob.size_bytes == len(data)
        assert blob.ref.startswith(f"{KEY_PREFIX}/")
        assert blob.ref.endswith(f"/{digest[:16]}-CTPAT_TRK-104_2026-10-19.pdf")
        assert blob.public_url == f"https://reports.ctpat.test/{blob.ref}"
        assert s3_store.fetch(blob.ref) == data

    def test_content_type_and_digest_metadata(self, s3_store):
        blob = s3_store.store(b"%PDF", filename="r.pdf")

        head = s3_store._client.head_object(Bucket=BUCKET, Key=blob.ref)
        assert head["ContentType"] == "application/pdf"
        assert head["Metadata"]["sha256-digest"] == blob.sha256_digest

    def test_unsafe_filename_sanitized(self, s3_store):
        blob = s3_store.store(b"%PDF", filename="../Truck 104/report?.pdf")

        name = blob.ref.rsplit("/", 1)[-1]
        assert "/" not in name
        assert " " not in name
        assert name.endswith("report_.pdf")

    def test_same_content_same_ref(self, s3_store):
        first = s3_store.store(b"%PDF-same", filename="r.pdf")
        second = s3_store.store(b"%PDF-same", filename="r.pdf")
        assert first.ref == second.ref

    def test_delete(self, s3_store):
        blob = s3_store.store(b"%PDF", filename="r.pdf")

        s3_store.delete(blob.ref)

        with pytest.raises(ObjectNotFoundError) as exc_info:
            s3_store.fetch(blob.ref)
        assert exc_info.value.key == blob.ref
        assert exc_info.value.operation == "download"

    def test_delete_missing_object_is_noop(self, s3_store):
        s3_store.delete(f"{KEY_PREFIX}/2026/10/never-stored.pdf")

    def test_upload_to_missing_bucket_fails(self, aws_credentials):
        with mock_aws():
            store = S3BlobStore("no-such-bucket", endpoint_url=None, access_key="a", secret_key="b")
            with pytest.raises(StorageError) as exc_info:
                store.store(b"%PDF", filename="r.pdf")
        assert exc_info.value.operation == "upload"
        assert exc_info.value.bucket == "no-such-bucket"


class TestBuildBlobStore:
    """Tests for building the store from settings."""

    def test_disabled_returns_none(self):
        assert build_blob_store(S3Settings(enabled=False)) is None

    def test_enabled_builds_s3_store(self, aws_credentials):
        settings = S3Settings(
            enabled=True,
            endpoint="http://minio:9000",
            access_key=SecretStr("minio"),
            secret_key=SecretStr("minio-secret"),
            bucket="reports",
        )
        with mock_aws():
            store = build_blob_store(settings)

        assert isinstance(store, S3BlobStore)
        assert store.bucket == "reports"
        assert store._public_base_url == "http://minio:9000/reports"
