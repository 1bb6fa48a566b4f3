"""Failure taxonomy for the intake pipeline.

Three families drive how a failure is handled:

* :class:`RetryableError`: transient; the unit is retried until its
  attempt ceiling is reached.
* :class:`PoisonError`: terminal regardless of remaining attempts.
* :class:`InvalidJobReferenceError`: a data or programmer error that is
  surfaced immediately and never retried.

Anything else raised inside the pipeline is treated as retryable.
"""

from __future__ import annotations

MAX_ERROR_LENGTH = 500


def truncate_error(error: BaseException | str, limit: int = MAX_ERROR_LENGTH) -> str:
    """Render *error* for persistence, bounded to *limit* characters."""
    text = error if isinstance(error, str) else (str(error) or type(error).__name__)
    return text[:limit]


class IntakeError(Exception):
    """Base class for all intake failures."""


class RetryableError(IntakeError):
    """Transient failure: network error, throttling, enrichment timeout."""


class RateLimitedError(RetryableError):
    """The provider answered HTTP 429."""

    def __init__(self, retry_after: float | None, message: str = "rate limited") -> None:
        super().__init__(f"{message} (retry after {retry_after}s)" if retry_after is not None else message)
        self.retry_after = retry_after


class ProviderTransportError(RetryableError):
    """Connection-level failure or a 5xx from the provider."""


class EnrichmentTimeoutError(RetryableError):
    """The enrichment call exceeded its hard wall-clock limit."""


class PoisonError(IntakeError):
    """Failure that will not go away by retrying."""


class NoTextLayerError(PoisonError):
    """The PDF has pages but no extractable text (usually a scan)."""

    def __init__(self, message: str = "SCANNED_PDF_NO_TEXT_LAYER") -> None:
        super().__init__(message)


class MalformedFileError(PoisonError):
    """The attachment bytes cannot be read as the declared format."""


class InvalidJobReferenceError(IntakeError):
    """The run or item references a job that does not exist."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ExtractionError(IntakeError):
    """Text could not be extracted; stored as a sentinel, not fatal."""


class ProviderError(IntakeError):
    """Non-retryable, non-2xx provider response."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"provider returned {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


class InefficientFilterError(ProviderError):
    """The provider rejected a filter as too restrictive for the query."""


class StorageError(IntakeError):
    """Object storage rejected an upload for a reason other than a conflict."""
