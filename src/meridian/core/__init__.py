"""Meridian core infrastructure components."""

from meridian.core.config import ConfigManager
from meridian.core.events import EventBus, EventEncoder, encode_event
from meridian.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from meridian.core.logging import setup_logging
from meridian.core.retry import (
    ErrorCategory,
    InsufficientFundsError,
    MeridianError,
    PermanentError,
    ResourceNotFoundError,
    RetryConfig,
    RetryContext,
    RetryStats,
    TransientError,
    ValidationError,
    is_retryable,
    retry_transient,
)

__all__ = [
    # Config
    "ConfigManager",
    # Events
    "EventBus",
    "EventEncoder",
    "encode_event",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Logging
    "setup_logging",
    # Errors
    "ErrorCategory",
    "MeridianError",
    "TransientError",
    "PermanentError",
    "ValidationError",
    "InsufficientFundsError",
    "ResourceNotFoundError",
    # Retry
    "RetryConfig",
    "RetryContext",
    "RetryStats",
    "is_retryable",
    "retry_transient",
]
