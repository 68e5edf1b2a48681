"""Core framework infrastructure - config, settings, logging, lifecycle, retry."""

from flywheel.core.config import ConfigManager
from flywheel.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from flywheel.core.logging import setup_logging
from flywheel.core.retry import (
    ErrorCategory,
    FlywheelError,
    InsufficientFundsError,
    InvalidPayloadError,
    NetworkError,
    PermanentError,
    RateLimitError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    StoreUnavailableError,
    TransientError,
    UnknownTaskError,
    ValidationError,
    classify_error,
    retry_transient,
)

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "setup_logging",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Errors (Transient)
    "FlywheelError",
    "ErrorCategory",
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "ServiceUnavailableError",
    "StoreUnavailableError",
    # Errors (Permanent)
    "PermanentError",
    "ValidationError",
    "InsufficientFundsError",
    "ResourceNotFoundError",
    "UnknownTaskError",
    "InvalidPayloadError",
    # Retry utilities
    "retry_transient",
    "classify_error",
]
