"""Tests for resume_intake.retry."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from tenacity import wait_fixed

from resume_intake.config import RetryConfig
from resume_intake.errors import ProviderTransportError, RateLimitedError
from resume_intake.retry import wait_retry_after, with_retry


def _failed_state(exc: BaseException) -> MagicMock:
    state = MagicMock()
    state.outcome.failed = True
    state.outcome.exception.return_value = exc
    return state


class TestWaitRetryAfter:
    def test_uses_server_retry_after(self):
        wait = wait_retry_after(wait_fixed(9), default=1.0)
        assert wait(_failed_state(RateLimitedError(2.5))) == 2.5

    def test_default_when_header_missing(self):
        wait = wait_retry_after(wait_fixed(9), default=1.5)
        assert wait(_failed_state(RateLimitedError(None))) == 1.5

    def test_other_errors_use_fallback(self):
        wait = wait_retry_after(wait_fixed(9), default=1.0)
        assert wait(_failed_state(ProviderTransportError("boom"))) == 9


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_try(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1)
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await fn() == "ok"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_retryable_then_succeeds(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1)
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ProviderTransportError("transient")
            return "recovered"

        assert await fn() == "recovered"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_rate_limit_waits_retry_after(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=5, max_wait_seconds=5)
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise RateLimitedError(0)
            return "ok"

        assert await fn() == "ok"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1)
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            raise ValueError("permanent")

        with pytest.raises(ValueError, match="permanent"):
            await fn()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_exhausts_attempts_and_reraises(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1)
        call_count = 0

        @with_retry(config, max_attempts=2)
        async def fn():
            nonlocal call_count
            call_count += 1
            raise ProviderTransportError("still down")

        with pytest.raises(ProviderTransportError):
            await fn()
        assert call_count == 2
