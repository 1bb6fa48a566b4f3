"""Tenacity retry wrappers driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .config import RetryConfig
from .errors import RateLimitedError, RetryableError

T = TypeVar("T")


class wait_retry_after(wait_base):
    """Honour a server-supplied ``Retry-After`` before falling back.

    When the last attempt raised :class:`RateLimitedError` the wait is the
    error's ``retry_after`` (or *default* when the server sent none).
    Any other failure defers to *fallback*.
    """

    def __init__(self, fallback: wait_base, default: float = 1.0) -> None:
        self.fallback = fallback
        self.default = default

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            if isinstance(exc, RateLimitedError):
                return exc.retry_after if exc.retry_after is not None else self.default
        return self.fallback(retry_state)


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (RetryableError,),
    max_attempts: int | None = None,
    default_retry_after: float = 1.0,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry)
        async def upload(path: str, data: bytes) -> str: ...

    Throttling responses wait for the server's Retry-After; everything
    else backs off exponentially.
    """
    return retry(
        stop=stop_after_attempt(max_attempts or config.max_attempts),
        wait=wait_retry_after(
            wait_exponential(
                multiplier=config.multiplier,
                min=config.initial_wait_seconds,
                max=config.max_wait_seconds,
            ),
            default=default_retry_after,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )
