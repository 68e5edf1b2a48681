"""
Error hierarchy and in-process retry helpers.

Two layers of retry exist in the service:
- Short in-process retries (this module) for idempotent reads such as balance
  lookups and quote requests, built on tenacity.
- The durable retry queue (flywheel.services.retry_queue) for whole
  operations that failed and must be re-attempted minutes later.

Usage:
    from flywheel.core.retry import retry_transient, NetworkError

    @retry_transient(max_attempts=3)
    async def fetch_balance():
        ...
"""

import inspect
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
    UNKNOWN = "unknown"  # treated as transient by the durable queue


class FlywheelError(Exception):
    """Base exception for all flywheel errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(FlywheelError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT


class NetworkError(TransientError):
    """RPC or HTTP transport failure."""


class RateLimitError(TransientError):
    """Rate limit exceeded - should retry after backoff."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.retry_after = retry_after


class ServiceUnavailableError(TransientError):
    """External service is temporarily unavailable."""


class StoreUnavailableError(TransientError):
    """The primary SQLite store cannot be reached or written."""


class PermanentError(FlywheelError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class ValidationError(PermanentError):
    """Bad configuration or malformed input."""


class InsufficientFundsError(PermanentError):
    """Not enough balance for the operation."""


class ResourceNotFoundError(PermanentError):
    """Requested resource (pool, item) does not exist."""


class UnknownTaskError(PermanentError):
    """No scheduled task is registered under the requested name."""


class InvalidPayloadError(PermanentError):
    """A retry payload does not match its operation type."""


# =============================================================================
# Retry Decorator
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 1.0
DEFAULT_MAX_WAIT_SECONDS = 30.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0

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
    jitter: bool = True,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[F], F]:
    """Retry an async function on TransientError with exponential backoff.

    Only apply this to idempotent calls. Transaction submission must never
    be wrapped, a resend can double-spend.

    Args:
        max_attempts: Maximum number of attempts (including initial).
        min_wait: Minimum wait time between retries in seconds.
        max_wait: Maximum wait time between retries in seconds.
        multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
        log_context: Additional context for log messages.
    """

    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
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


# =============================================================================
# Error Classification Utilities
# =============================================================================

_PERMANENT_PATTERNS = (
    "invalid",
    "unauthorized",
    "forbidden",
    "not found",
    "bad request",
    "400",
    "401",
    "403",
    "404",
    "insufficient",
    "slippage",
)

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "rate limit",
    "too many requests",
    "429",
    "502",
    "503",
    "504",
    "service unavailable",
    "blockhash",
    "temporarily",
)


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an error into a category.

    The retry queue logs the category with each failed attempt; unknown
    errors are retried like transient ones, bounded by max_retries.
    """
    if isinstance(error, FlywheelError):
        return error.category

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if any(p in error_str or p in error_type for p in _PERMANENT_PATTERNS):
        return ErrorCategory.PERMANENT
    if any(p in error_str or p in error_type for p in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def error_message(error: BaseException) -> str:
    """Human-readable message for persisting in last_error columns."""
    text = str(error)
    return text if text else type(error).__name__
