"""Retry policy and error classification using tenacity.

Every network unit of work (one page fetch, one batch call) is retried as a
whole. Whether a failure is worth retrying is decided by ``classify_error``:

- transient failures (timeouts, 429, 502/503/504, "another operation in
  progress") are retried with a fixed backoff,
- deterministic failures (missing references, permission errors, ambiguous
  natural keys) fail the unit immediately,
- anything else is ambiguous and gets the transient treatment under a
  separate log event so it can be told apart in the logs.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from refdata_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    MigrationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Message fragments that mark a failure as transient regardless of status code
TRANSIENT_MESSAGES = (
    "temporarily unavailable",
    "another operation in progress",
    "timed out",
    "timeout",
    "try again",
)

GATEWAY_STATUS_CODES = (502, 503, 504)


class ErrorKind(str, Enum):
    """Retry classification of a failed unit of work."""

    TRANSIENT = "transient"
    DETERMINISTIC = "deterministic"
    AMBIGUOUS = "ambiguous"


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception raised by a page fetch or batch call.

    Args:
        error: The exception to classify

    Returns:
        ErrorKind for the exception
    """
    if isinstance(
        error,
        (NetworkError, RateLimitError, httpx.TimeoutException, httpx.NetworkError, TimeoutError),
    ):
        return ErrorKind.TRANSIENT

    if isinstance(error, (AuthenticationError, AuthorizationError, NotFoundError, MigrationError)):
        return ErrorKind.DETERMINISTIC

    message = str(error).lower()
    if any(fragment in message for fragment in TRANSIENT_MESSAGES):
        return ErrorKind.TRANSIENT

    if isinstance(error, ServerError) and error.status_code in GATEWAY_STATUS_CODES:
        return ErrorKind.TRANSIENT

    if isinstance(error, ConflictError):
        return ErrorKind.DETERMINISTIC

    if isinstance(error, APIError) and error.status_code and 400 <= error.status_code < 500:
        return ErrorKind.DETERMINISTIC

    return ErrorKind.AMBIGUOUS


def is_retryable(error: BaseException) -> bool:
    """Return True when a failed unit should be attempted again."""
    if isinstance(error, asyncio.CancelledError):
        return False
    return classify_error(error) is not ErrorKind.DETERMINISTIC


class RetryPolicy:
    """Fixed-backoff, bounded retry of one unit of work.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_seconds: Fixed wait between attempts (a 429 Retry-After wins)
    """

    def __init__(self, max_attempts: int = 3, backoff_seconds: float = 2.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_after:
            return float(error.retry_after)
        return self.backoff_seconds

    def _before_sleep(self, operation: str, context: dict[str, Any]) -> Callable:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            kind = classify_error(error) if error else ErrorKind.AMBIGUOUS
            event = (
                "ambiguous_error_retrying"
                if kind is ErrorKind.AMBIGUOUS
                else "transient_error_retrying"
            )
            logger.warning(
                event,
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error_type=type(error).__name__ if error else None,
                error=str(error),
                **context,
            )

        return log_retry

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "request",
        log_context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> T:
        """Run ``func`` until it succeeds, fails deterministically or attempts run out.

        Args:
            func: Coroutine function to call
            *args: Positional arguments for func
            operation: Name used in retry log events
            log_context: Extra structured context for retry log events
            **kwargs: Keyword arguments for func

        Returns:
            Result of func

        Raises:
            The last exception raised by func
        """
        context = log_context or {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep(operation, context),
            reraise=True,
        ):
            with attempt:
                return await func(*args, **kwargs)

        raise RuntimeError("Unexpected retry loop exit")  # pragma: no cover

