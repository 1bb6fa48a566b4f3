"""Tests for resume_intake.storage."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from resume_intake.config import RetryConfig, S3Config
from resume_intake.errors import ProviderTransportError, StorageError
from resume_intake.storage import S3ObjectStorage, sanitize_filename, storage_path

RETRY = RetryConfig(max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.02)


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "PutObject",
    )


@pytest.fixture
def store() -> S3ObjectStorage:
    return S3ObjectStorage(S3Config(bucket="test-bucket"), RETRY)


class TestS3ObjectStorageLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_client(self, store: S3ObjectStorage):
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            mock_boto3.client.assert_called_once_with("s3", region_name="us-east-1")

    @pytest.mark.asyncio
    async def test_start_with_endpoint_url(self):
        store = S3ObjectStorage(S3Config(bucket="b", endpoint_url="http://minio:9000"), RETRY)
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            mock_boto3.client.assert_called_once_with(
                "s3", region_name="us-east-1", endpoint_url="http://minio:9000"
            )

    @pytest.mark.asyncio
    async def test_stop(self, store: S3ObjectStorage):
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            await store.stop()
            assert store._client is None


class TestS3ObjectStoragePut:
    @pytest.mark.asyncio
    async def test_put_is_conditional(self, store: S3ObjectStorage):
        mock_client = MagicMock()
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()

            uri = await store.put("jobs/7/abc-resume.pdf", b"%PDF", "application/pdf")

        assert uri == "s3://test-bucket/jobs/7/abc-resume.pdf"
        mock_client.put_object.assert_called_once_with(
            Bucket="test-bucket",
            Key="jobs/7/abc-resume.pdf",
            Body=b"%PDF",
            ContentType="application/pdf",
            IfNoneMatch="*",
        )

    @pytest.mark.asyncio
    async def test_put_applies_prefix(self):
        store = S3ObjectStorage(S3Config(bucket="b", prefix="/intake/"), RETRY)
        mock_client = MagicMock()
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            uri = await store.put("jobs/1/x.pdf", b"x", "application/pdf")

        assert uri == "s3://b/intake/jobs/1/x.pdf"
        assert mock_client.put_object.call_args.kwargs["Key"] == "intake/jobs/1/x.pdf"

    @pytest.mark.asyncio
    async def test_existing_object_is_success(self, store: S3ObjectStorage):
        mock_client = MagicMock()
        mock_client.put_object.side_effect = _client_error("PreconditionFailed", 412)
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            uri = await store.put("jobs/7/abc-resume.pdf", b"%PDF", "application/pdf")

        assert uri == "s3://test-bucket/jobs/7/abc-resume.pdf"
        assert mock_client.put_object.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, store: S3ObjectStorage):
        mock_client = MagicMock()
        mock_client.put_object.side_effect = [_client_error("InternalError", 500), {}]
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            await store.put("k", b"x", "application/pdf")

        assert mock_client.put_object.call_count == 2

    @pytest.mark.asyncio
    async def test_connection_error_exhausts_retries(self, store: S3ObjectStorage):
        mock_client = MagicMock()
        mock_client.put_object.side_effect = EndpointConnectionError(endpoint_url="http://s3")
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            with pytest.raises(ProviderTransportError):
                await store.put("k", b"x", "application/pdf")

        assert mock_client.put_object.call_count == RETRY.max_attempts

    @pytest.mark.asyncio
    async def test_access_denied_is_not_retried(self, store: S3ObjectStorage):
        mock_client = MagicMock()
        mock_client.put_object.side_effect = _client_error("AccessDenied", 403)
        with patch("resume_intake.storage.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            with pytest.raises(StorageError, match="AccessDenied"):
                await store.put("k", b"x", "application/pdf")

        assert mock_client.put_object.call_count == 1


class TestPaths:
    def test_sanitize_filename(self):
        assert sanitize_filename("Jane Doe (CV) #2.PDF") == "jane-doe-cv-2.pdf"

    def test_sanitize_collapses_dashes(self):
        assert sanitize_filename("a   b__c.pdf") == "a-b-c.pdf"

    def test_sanitize_truncates(self):
        assert len(sanitize_filename("x" * 300 + ".pdf")) == 120

    def test_sanitize_empty_name(self):
        assert sanitize_filename("") == "attachment"

    def test_storage_path_is_deterministic(self):
        path = storage_path(42, "deadbeef", "My Resume.pdf")
        assert path == "jobs/42/deadbeef-my-resume.pdf"
        assert storage_path(42, "deadbeef", "My Resume.pdf") == path
