"""Durable object storage for resume files.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import abc
import asyncio
import re

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import RetryConfig, S3Config
from .errors import ProviderTransportError, StorageError
from .retry import with_retry

logger = structlog.get_logger()

MAX_SAFE_NAME_LENGTH = 120

# S3 answers a conditional put on an existing key with one of these.
_CONFLICT_CODES = frozenset({"PreconditionFailed", "ConditionalRequestConflict", "409", "412"})


class ObjectStorage(abc.ABC):
    """Idempotent byte storage addressed by path."""

    @abc.abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store *data* at *path* and return its storage URI.

        Writing to a path that already exists is a success, not an error.
        """
        ...


class S3ObjectStorage(ObjectStorage):
    """S3 (or S3-compatible) storage using conditional writes."""

    def __init__(self, config: S3Config, retry_config: RetryConfig) -> None:
        self._config = config
        self._retry_config = retry_config
        self._client = None  # type: ignore[assignment]

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("s3_storage_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        self._client = None
        logger.info("s3_storage_stopped")

    def _key(self, path: str) -> str:
        prefix = self._config.prefix.strip("/")
        return f"{prefix}/{path}" if prefix else path

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        assert self._client is not None, "S3 client not started"
        key = self._key(path)

        @with_retry(self._retry_config, retryable_exceptions=(ProviderTransportError,))
        async def _put() -> bool:
            return await asyncio.to_thread(self._put_sync, key, data, content_type)

        created = await _put()
        uri = f"s3://{self._config.bucket}/{key}"
        logger.debug("resume_file_stored", uri=uri, size=len(data), created=created)
        return uri

    def _put_sync(self, key: str, data: bytes, content_type: str) -> bool:
        try:
            self._client.put_object(
                Bucket=self._config.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = str(error.get("Code", ""))
            if code in _CONFLICT_CODES or status in (409, 412):
                return False
            if code == "SlowDown" or (status is not None and status >= 500):
                raise ProviderTransportError(f"s3 put failed: {code}") from exc
            raise StorageError(f"s3 put failed: {code} {error.get('Message', '')}".strip()) from exc
        except BotoCoreError as exc:
            raise ProviderTransportError(f"s3 put failed: {exc}") from exc
        return True


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def sanitize_filename(name: str) -> str:
    """Lower-case, replace anything outside ``[a-z0-9.-]`` with ``-``."""
    safe = re.sub(r"[^a-z0-9.\-]", "-", name.lower())
    safe = re.sub(r"-+", "-", safe)
    return safe[:MAX_SAFE_NAME_LENGTH] or "attachment"


def storage_path(job_id: int, file_hash: str, filename: str) -> str:
    """Deterministic path for a job's copy of a file."""
    return f"jobs/{job_id}/{file_hash}-{sanitize_filename(filename)}"
