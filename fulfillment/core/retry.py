"""
Retry Executor

Exponential backoff with jitter for transient failures. Independent of the
circuit breaker: the two are composed by the caller
(``retry_async(lambda: breaker.execute(fn))``).
"""
import asyncio
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar, ParamSpec

import httpx
from sqlalchemy.exc import OperationalError, IntegrityError

from fulfillment.core.logging import get_logger
from fulfillment.core.exceptions import (
    BusinessRuleError,
    CircuitBreakerOpenError,
    EmailDeliveryError,
    ExternalServiceException,
    MaxRetriesExceededError,
    TransientError,
)

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# קודי HTTP שמצדיקים ניסיון חוזר
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

JITTER_RATIO = 0.25


def is_transient_error(error: BaseException) -> bool:
    """
    ברירת המחדל של should_retry.

    מנסים שוב רק שגיאות זמניות: רשת, timeout, 5xx/429 מספק חיצוני, ונעילות
    או ניתוקים של מסד הנתונים. שגיאות עסקיות ו-circuit פתוח לעולם לא.
    """
    if isinstance(error, (BusinessRuleError, CircuitBreakerOpenError, IntegrityError)):
        return False
    if isinstance(error, TransientError):
        return True
    if isinstance(error, EmailDeliveryError):
        status = error.provider_status
        # אין status = כשל רשת לפני שהתקבלה תשובה
        return status is None or status in TRANSIENT_STATUS_CODES
    if isinstance(error, ExternalServiceException):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, (asyncio.TimeoutError, ConnectionError))


@dataclass
class RetryPolicy:
    """Retry configuration; delays in milliseconds"""
    max_attempts: int = 3
    initial_delay_ms: int = 200
    max_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    should_retry: Callable[[BaseException], bool] = field(default=is_transient_error)
    on_retry: Callable[[BaseException, int, float], None] | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        )


def calculate_delay_ms(policy: RetryPolicy, attempt: int) -> float:
    """
    Delay before the retry that follows ``attempt`` (1-based).

    min(initial * multiplier^(attempt-1), max), then ±25% jitter. The jittered
    value never exceeds ``max_delay_ms``.
    """
    base = policy.initial_delay_ms * (policy.backoff_multiplier ** (attempt - 1))
    delay = min(base, policy.max_delay_ms)
    if policy.jitter:
        delay += delay * JITTER_RATIO * (random.random() * 2 - 1)
    return max(0.0, min(delay, policy.max_delay_ms))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``func`` until it succeeds, a non-retryable error escapes, or the
    attempts run out.

    Raises:
        MaxRetriesExceededError: every attempt failed with a retryable error;
            ``last_error`` holds the final one
        Exception: the first non-retryable error, unchanged
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func()
        except Exception as exc:
            if not policy.should_retry(exc):
                raise

            if attempt >= policy.max_attempts:
                logger.error(
                    f"{operation} failed after {attempt} attempts",
                    extra_data={
                        "operation": operation,
                        "attempts": attempt,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    }
                )
                raise MaxRetriesExceededError(attempt, exc) from exc

            delay_ms = calculate_delay_ms(policy, attempt)
            logger.warning(
                f"{operation} failed, retrying",
                extra_data={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_ms": round(delay_ms, 1),
                    "error": str(exc),
                }
            )
            if policy.on_retry:
                policy.on_retry(exc, attempt, delay_ms)
            await sleep(delay_ms / 1000)


def with_retry(
    policy: RetryPolicy | None = None,
    operation: str | None = None
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator form of ``retry_async``.

    Usage:
        @with_retry(RetryPolicy(max_attempts=5))
        async def fetch_order(...):
            ...
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                policy,
                operation=operation or func.__name__,
            )

        return wrapper

    return decorator
