"""
Unit tests for retry logic with exponential backoff.

Tests cover:
- Error type hierarchy (retryable vs non-retryable)
- retry_transient decorator
- RetryConfig loading from a config section
- RetryContext for manual retry control
"""

import pytest
from unittest.mock import AsyncMock, patch

from meridian.core.retry import (
    ErrorCategory,
    InsufficientFundsError,
    MeridianError,
    PermanentError,
    ResourceNotFoundError,
    RetryConfig,
    RetryContext,
    TransientError,
    ValidationError,
    DEFAULT_MAX_ATTEMPTS,
    is_retryable,
    retry_transient,
)


class TestErrorHierarchy:
    """Test error type classification."""

    def test_transient_error_is_retryable(self):
        assert is_retryable(TransientError("blip"))
        assert TransientError("blip").category == ErrorCategory.TRANSIENT

    def test_permanent_errors_are_not_retryable(self):
        errors = [
            PermanentError("test"),
            ValidationError("test"),
            InsufficientFundsError("test"),
            ResourceNotFoundError("test"),
        ]
        for error in errors:
            assert not is_retryable(error), f"{type(error).__name__} should not retry"
            assert error.category == ErrorCategory.PERMANENT

    def test_foreign_errors_use_message_patterns(self):
        assert is_retryable(RuntimeError("connection reset by peer"))
        assert is_retryable(RuntimeError("HTTP 503"))
        assert not is_retryable(RuntimeError("bad argument"))

    def test_error_str_includes_cause(self):
        error = MeridianError("ledger call failed", cause=OSError("refused"))
        assert str(error) == "ledger call failed (caused by: refused)"
        assert error.timestamp is not None


class TestRetryConfig:
    """Test RetryConfig construction."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert config.jitter is True

    def test_from_dict(self):
        config = RetryConfig.from_dict({
            "max_attempts": "7",
            "min_wait_seconds": 0.5,
            "max_wait_seconds": 4,
            "jitter": False,
        })
        assert config.max_attempts == 7
        assert config.min_wait_seconds == 0.5
        assert config.max_wait_seconds == 4.0
        assert config.jitter is False


class TestRetryTransient:
    """Test the retry_transient decorator."""

    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        calls = AsyncMock(side_effect=[TransientError("a"), TransientError("b"), "ok"])

        @retry_transient(max_attempts=3, min_wait=0, max_wait=0, jitter=False)
        async def flaky():
            return await calls()

        assert await flaky() == "ok"
        assert calls.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        calls = AsyncMock(side_effect=ValidationError("bad"))

        @retry_transient(max_attempts=5, min_wait=0, max_wait=0, jitter=False)
        async def broken():
            return await calls()

        with pytest.raises(ValidationError):
            await broken()
        assert calls.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = AsyncMock(side_effect=TransientError("down"))

        @retry_transient(max_attempts=2, min_wait=0, max_wait=0, jitter=False)
        async def down():
            return await calls()

        with pytest.raises(TransientError):
            await down()
        assert calls.await_count == 2

    def test_rejects_sync_functions(self):
        with pytest.raises(TypeError):
            @retry_transient()
            def not_async():
                return None


class TestRetryContext:
    """Test RetryContext manual retry loop."""

    @pytest.mark.asyncio
    async def test_success_after_transient(self):
        with patch("meridian.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            async with RetryContext(max_attempts=3, min_wait=1.0) as ctx:
                outcomes = [TransientError("x"), None]
                while ctx.should_retry():
                    outcome = outcomes.pop(0)
                    if outcome is None:
                        ctx.success()
                    else:
                        await ctx.handle_error(outcome)

        assert ctx.stats.successful_attempts == 1
        assert ctx.stats.failed_attempts == 1
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        ctx = RetryContext(max_attempts=3)
        with pytest.raises(ValidationError):
            await ctx.handle_error(ValidationError("bad"))
        assert ctx.attempt == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        ctx = RetryContext.from_config(
            RetryConfig(max_attempts=2, min_wait_seconds=0, max_wait_seconds=0)
        )
        await ctx.handle_error(TransientError("one"))
        with pytest.raises(TransientError, match="two"):
            await ctx.handle_error(TransientError("two"))
        assert not ctx.should_retry()
