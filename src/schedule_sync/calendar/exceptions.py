"""Custom exceptions and retry logic for Google Calendar API operations.

Defines a hierarchy of calendar-specific exceptions, the :class:`RetryPolicy`
used for exponential backoff, and a ``@with_retry`` decorator for coroutine
methods that retries transient failures (rate limits, unavailability,
network errors and timeouts).

Exception hierarchy::

    CalendarAPIError             (base for all Calendar API errors)
    +-- CalendarAuthError        (HTTP 401, token exchange failures)
    +-- CalendarRateLimitError   (HTTP 429, HTTP 403 with a rate-limit reason)
    +-- CalendarUnavailableError (HTTP 503, network errors, timeouts)
    +-- CalendarNotFoundError    (HTTP 404 / 410)
    +-- CalendarConflictError    (HTTP 409, duplicate event ID)
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httplib2
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

# ---------------------------------------------------------------------------
# Exception classes
# ---------------------------------------------------------------------------


class CalendarAPIError(Exception):
    """Base exception for Google Calendar API errors.

    Attributes:
        status_code: HTTP status code from the API, or ``None`` if the
            error did not originate from an HTTP response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CalendarAuthError(CalendarAPIError):
    """Raised when Calendar API authentication fails.

    Covers HTTP 401 responses and refresh-token exchange failures.
    """

    def __init__(self, message: str = "Calendar authentication failed") -> None:
        super().__init__(message, status_code=401)


class CalendarRateLimitError(CalendarAPIError):
    """Raised when the Calendar API signals a rate limit.

    Google reports quota exhaustion either as HTTP 429 or as HTTP 403 with a
    ``rateLimitExceeded`` / ``userRateLimitExceeded`` reason.
    """

    def __init__(
        self,
        message: str = "Calendar API rate limit exceeded",
        status_code: int = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)


class CalendarUnavailableError(CalendarAPIError):
    """Raised on HTTP 503 or when the API cannot be reached at all."""

    def __init__(
        self,
        message: str = "Calendar API unavailable",
        status_code: int | None = 503,
    ) -> None:
        super().__init__(message, status_code=status_code)


class CalendarNotFoundError(CalendarAPIError):
    """Raised when a Calendar resource is not found (HTTP 404 or 410)."""

    def __init__(
        self,
        message: str = "Calendar resource not found",
        status_code: int = 404,
    ) -> None:
        super().__init__(message, status_code=status_code)


class CalendarConflictError(CalendarAPIError):
    """Raised when an insert collides with an existing event ID (HTTP 409)."""

    def __init__(self, message: str = "Calendar resource already exists") -> None:
        super().__init__(message, status_code=409)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

# Raised by the HTTP transport when the API cannot be reached or a request
# times out.  TimeoutError and socket errors are OSError subclasses.
NETWORK_ERRORS: tuple[type[BaseException], ...] = (OSError, httplib2.HttpLib2Error)


def error_reasons(error: HttpError) -> set[str]:
    """Extract the ``errors[].reason`` values from an ``HttpError`` body.

    Args:
        error: The ``googleapiclient.errors.HttpError`` to inspect.

    Returns:
        The set of reason strings; empty if the body is not the usual JSON
        error envelope.
    """
    content = error.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(content or "{}")
    except ValueError:
        return set()
    if not isinstance(payload, dict):
        return set()
    details = payload.get("error", {})
    if not isinstance(details, dict):
        return set()
    reasons = set()
    for item in details.get("errors", []) or []:
        if isinstance(item, dict) and item.get("reason"):
            reasons.add(str(item["reason"]))
    return reasons


def classify_status(status: int, message: str, reasons: set[str] | None = None) -> CalendarAPIError:
    """Map an HTTP status code to the matching calendar exception.

    Args:
        status: HTTP status code.
        message: Error message to carry.
        reasons: Google error reasons, used to tell rate-limit 403s apart
            from permission 403s.

    Returns:
        A :class:`CalendarAPIError` subclass instance.
    """
    if status in (404, 410):
        return CalendarNotFoundError(message, status_code=status)
    if status == 409:
        return CalendarConflictError(message)
    if status == 429:
        return CalendarRateLimitError(message)
    if status == 403 and reasons and reasons & RATE_LIMIT_REASONS:
        return CalendarRateLimitError(message, status_code=403)
    if status == 401:
        return CalendarAuthError(message)
    if status == 503:
        return CalendarUnavailableError(message)
    return CalendarAPIError(message, status_code=status)


def classify_http_error(error: HttpError) -> CalendarAPIError:
    """Map an ``HttpError`` to the appropriate calendar exception.

    Args:
        error: The ``googleapiclient.errors.HttpError`` to classify.

    Returns:
        A :class:`CalendarAPIError` subclass matching the HTTP status code.
    """
    return classify_status(int(error.resp.status), str(error), error_reasons(error))


def is_retryable(error: CalendarAPIError) -> bool:
    """Whether *error* is transient and worth retrying."""
    return isinstance(error, (CalendarRateLimitError, CalendarUnavailableError))


# ---------------------------------------------------------------------------
# Retry policy and decorator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings.

    Attributes:
        max_attempts: Total attempts, the first call included.
        base_delay: Delay in seconds after the first failure.
        max_delay: Cap for the pre-jitter delay.
        jitter: Upper bound of the uniformly random extra delay.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0

    def backoff_delay(self, attempt: int) -> float:
        """Pre-jitter delay after failed attempt *attempt* (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after failed attempt *attempt*, jitter included."""
        return self.backoff_delay(attempt) + random.uniform(0, self.jitter)


DEFAULT_RETRY_POLICY = RetryPolicy()


def with_retry(policy: RetryPolicy | None = None) -> Callable[[F], F]:
    """Decorator that retries Calendar API coroutines on transient failures.

    Retry policy:
    - **HTTP 429**, **HTTP 403 with a rate-limit reason**, **HTTP 503**:
      exponential backoff.
    - **Network errors and timeouts**: treated like HTTP 503.
    - Anything else (404, 409, 401, other 4xx/5xx): raised immediately as
      the matching :class:`CalendarAPIError` subclass.

    When *policy* is ``None`` the decorated method's instance is asked for a
    ``_retry_policy`` attribute, falling back to :data:`DEFAULT_RETRY_POLICY`.
    After the last attempt the classified error is raised.

    Args:
        policy: Explicit policy overriding the instance policy.

    Returns:
        A decorator that wraps the target coroutine function.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            instance = args[0] if args else None
            active = policy or getattr(instance, "_retry_policy", None) or DEFAULT_RETRY_POLICY
            name = func.__name__

            for attempt in range(1, active.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)

                except HttpError as exc:
                    cal_error = classify_http_error(exc)
                    if not is_retryable(cal_error):
                        logger.debug(
                            "%s failed with HTTP %s (not retried): %s",
                            name,
                            cal_error.status_code,
                            exc,
                        )
                        raise cal_error from exc
                    last_error: CalendarAPIError = cal_error
                    cause: BaseException = exc

                except NETWORK_ERRORS as exc:
                    last_error = CalendarUnavailableError(
                        f"Network error: {exc}", status_code=None
                    )
                    cause = exc

                if attempt >= active.max_attempts:
                    logger.error(
                        "%s failed after %d attempt(s): %s",
                        name,
                        active.max_attempts,
                        cause,
                    )
                    raise last_error from cause

                delay = active.delay_for(attempt)
                logger.warning(
                    "%s hit a transient error (%s), retrying in %.1fs (attempt %d/%d)",
                    name,
                    last_error.status_code or "network",
                    delay,
                    attempt,
                    active.max_attempts,
                )
                await asyncio.sleep(delay)

            raise CalendarAPIError("Retry loop exhausted unexpectedly")  # pragma: no cover

        return wrapper  # type: ignore[return-value]

    return decorator
