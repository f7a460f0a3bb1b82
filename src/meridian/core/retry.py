"""
Error hierarchy and retry helpers with exponential backoff.

This module provides:
- The base error hierarchy (retryable vs non-retryable)
- A tenacity-based decorator for read-only calls that may safely repeat
- RetryContext for manual retry loops such as startup readiness probes

Ledger submissions are never wrapped in these helpers: a transient
settlement failure is handed back to the caller, who decides whether a
later cycle should try again.

Usage:
    from meridian.core.retry import retry_transient, RetryContext

    @retry_transient(max_attempts=3)
    async def ledger_end():
        ...
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

log = structlog.get_logger()


# =============================================================================
# Error Type Hierarchy
# =============================================================================


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class MeridianError(Exception):
    """Base exception for all Meridian errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(MeridianError):
    """Error that may succeed on retry (network blips, synchronizer hiccups)."""

    category = ErrorCategory.TRANSIENT


class PermanentError(MeridianError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class ValidationError(PermanentError):
    """Request validation failed - fix the input."""

    pass


class InsufficientFundsError(PermanentError):
    """Not enough unlocked holdings for the operation."""

    pass


class ResourceNotFoundError(PermanentError):
    """Requested resource does not exist."""

    pass


# =============================================================================
# Retry Configuration
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 1.0
DEFAULT_MAX_WAIT_SECONDS = 30.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0
DEFAULT_JITTER = True


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including initial).
        min_wait_seconds: Minimum wait time between retries.
        max_wait_seconds: Maximum wait time between retries.
        exponential_multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    exponential_multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER
    jitter: bool = DEFAULT_JITTER

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "RetryConfig":
        """Create RetryConfig from a config section (e.g. ConfigManager.get_section)."""
        return cls(
            max_attempts=int(config_dict.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            min_wait_seconds=float(
                config_dict.get("min_wait_seconds", DEFAULT_MIN_WAIT_SECONDS)
            ),
            max_wait_seconds=float(
                config_dict.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)
            ),
            exponential_multiplier=float(
                config_dict.get("exponential_multiplier", DEFAULT_EXPONENTIAL_MULTIPLIER)
            ),
            jitter=bool(config_dict.get("jitter", DEFAULT_JITTER)),
        )


@dataclass
class RetryStats:
    """Statistics about retry attempts."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    total_wait_time_seconds: float = 0.0
    last_error: Optional[Exception] = None
    last_attempt_at: Optional[datetime] = None


# =============================================================================
# Retry Decorator
# =============================================================================

F = TypeVar("F", bound=Callable[..., Any])


def _create_retry_callback(
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[RetryCallState], None]:
    context = log_context or {}

    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


def retry_transient(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER,
    jitter: bool = DEFAULT_JITTER,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[F], F]:
    """Retry an async function on TransientError with exponential backoff.

    Only for idempotent calls (queries, token fetches).

    Args:
        max_attempts: Maximum number of attempts (including initial).
        min_wait: Minimum wait time between retries in seconds.
        max_wait: Maximum wait time between retries in seconds.
        multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
        log_context: Additional context for log messages.
    """

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("retry_transient only supports async functions")

        callback = _create_retry_callback(log_context)

        if jitter:
            wait_strategy = wait_random_exponential(
                multiplier=multiplier, min=min_wait, max=max_wait
            )
        else:
            wait_strategy = wait_exponential(
                multiplier=multiplier, min=min_wait, max=max_wait
            )

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_strategy,
                retry=retry_if_exception_type(TransientError),
                before_sleep=callback,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator


def is_retryable(error: Exception) -> bool:
    """Check if an error is worth retrying.

    Meridian errors answer by category. Foreign exceptions fall back to
    common transient message patterns.
    """
    if isinstance(error, PermanentError):
        return False
    if isinstance(error, TransientError):
        return True
    error_str = str(error).lower()
    retryable_patterns = [
        "timeout",
        "timed out",
        "connection",
        "network",
        "503",
        "502",
        "504",
        "service unavailable",
        "temporarily",
    ]
    return any(pattern in error_str for pattern in retryable_patterns)


# =============================================================================
# Retry Context Manager
# =============================================================================


class RetryContext:
    """Manual retry loop with exponential backoff.

    Example:
        async with RetryContext(max_attempts=5) as ctx:
            while ctx.should_retry():
                try:
                    await gateway.ledger_end()
                    ctx.success()
                except MeridianError as e:
                    await ctx.handle_error(e)
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
        multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER,
    ):
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier

        self._attempt = 0
        self._succeeded = False
        self._stats = RetryStats()

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryContext":
        return cls(
            max_attempts=config.max_attempts,
            min_wait=config.min_wait_seconds,
            max_wait=config.max_wait_seconds,
            multiplier=config.exponential_multiplier,
        )

    async def __aenter__(self) -> "RetryContext":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        return False

    def should_retry(self) -> bool:
        return not self._succeeded and self._attempt < self.max_attempts

    async def handle_error(self, error: Exception) -> None:
        """Record an error and sleep before the next attempt.

        Raises:
            The original error if it is not retryable or attempts are exhausted.
        """
        self._stats.last_error = error
        self._stats.last_attempt_at = datetime.now(timezone.utc)
        self._stats.failed_attempts += 1

        if not is_retryable(error):
            log.error(
                "non_retryable_error",
                error=str(error),
                error_type=type(error).__name__,
                attempt=self.attempt,
            )
            raise error

        self._attempt += 1
        self._stats.total_attempts = self._attempt

        if self._attempt >= self.max_attempts:
            log.error(
                "max_retries_exceeded",
                error=str(error),
                max_attempts=self.max_attempts,
            )
            raise error

        wait_time = min(
            self.min_wait * (self.multiplier ** (self._attempt - 1)),
            self.max_wait,
        )
        self._stats.total_wait_time_seconds += wait_time

        log.warning(
            "retry_after_error",
            error=str(error),
            attempt=self._attempt,
            max_attempts=self.max_attempts,
            wait_seconds=wait_time,
        )

        await asyncio.sleep(wait_time)

    def success(self) -> None:
        self._succeeded = True
        self._stats.successful_attempts += 1
        self._stats.total_attempts = self._attempt + 1

    @property
    def attempt(self) -> int:
        """Current attempt number (1-indexed)."""
        return self._attempt + 1

    @property
    def stats(self) -> RetryStats:
        return self._stats
