"""Map raw platform failures onto the typed HealthSync error kinds.

This is the only place in the package that inspects error strings or HTTP
status codes.  Adapters call ``classify_platform_error`` in their ``except``
blocks and raise the result; the core only ever sees ``HealthSyncError``
subclasses.
"""

from __future__ import annotations

import logging

import httpx

from src.healthsync.errors import (
    HealthSyncError,
    PlatformError,
    PlatformTimeoutError,
    RateLimitError,
    TokenInvalidError,
)

logger = logging.getLogger("healthsync.adapters.classification")

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "ratelimit",
    "too many requests",
    "quota exceeded",
    "throttle",
)

RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429, 503})

TOKEN_INVALID_PATTERNS: tuple[str, ...] = (
    "invalid token",
    "invalid_token",
    "token is invalid",
    "token expired",
    "token not found",
    "invalid sync token",
    "token has been invalidated",
    "changes token",
)

TIMEOUT_PATTERNS: tuple[str, ...] = ("timed out", "timeout", "deadline exceeded")


def _status_code_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    code = getattr(error, "status_code", None)
    return code if isinstance(code, int) else None


def is_rate_limit_signal(error: BaseException) -> bool:
    """Return True if ``error`` carries one of the recognised rate-limit signals.

    Signals are, in order: the typed ``RateLimitError``, a 429/503 status
    code, or one of the known message substrings.
    """
    if isinstance(error, RateLimitError):
        return True
    if _status_code_of(error) in RATE_LIMIT_STATUS_CODES:
        return True
    text = str(error).lower()
    return any(pattern in text for pattern in RATE_LIMIT_PATTERNS)


def describe_error(error: BaseException) -> dict[str, str]:
    """Short diagnostic breakdown of a failure, used in limiter reports."""
    text = str(error)
    lower = text.lower()
    status = _status_code_of(error)

    if status == 429 or "429" in lower:
        kind, advice = (
            "HTTP 429 - Too Many Requests",
            "Standard rate limit response. Retry with backoff should work.",
        )
    elif "quota exceeded" in lower:
        kind, advice = (
            "Quota Exceeded",
            "Daily/hourly quota reached. Wait longer or reduce total requests.",
        )
    elif "throttle" in lower:
        kind, advice = (
            "Throttling",
            "Request throttled by the platform. Normal under heavy load.",
        )
    elif is_rate_limit_signal(error):
        kind, advice = (
            "Rate Limit",
            "Explicit rate limiting by the platform. Reduce request frequency.",
        )
    elif isinstance(error, PlatformTimeoutError) or any(p in lower for p in TIMEOUT_PATTERNS):
        kind, advice = ("Timeout", "The platform did not answer in time.")
    else:
        kind, advice = (type(error).__name__, "")

    return {
        "type": kind,
        "advice": advice,
        "raw_error": text if len(text) <= 200 else text[:200] + "...",
    }


def classify_platform_error(
    error: BaseException,
    data_type: str | None = None,
    detail: str | None = None,
) -> HealthSyncError:
    """Convert any adapter-level failure into a typed ``HealthSyncError``.

    Already-typed errors are returned unchanged.

    Args:
        error:     The raw exception caught by the adapter.
        data_type: Data type being fetched, attached to token errors.
        detail:    Error text from the response body, if any.

    Returns:
        The typed error the adapter should raise (``raise ... from error``).
    """
    if isinstance(error, HealthSyncError):
        return error

    status = _status_code_of(error)
    message = detail or str(error) or type(error).__name__
    text = f"{error} {detail or ''}".lower()

    if any(p in text for p in TOKEN_INVALID_PATTERNS) or status == 410:
        return TokenInvalidError(message, cause=error, data_type=data_type)

    if is_rate_limit_signal(error) or any(p in text for p in RATE_LIMIT_PATTERNS):
        retry_after: float | None = None
        if isinstance(error, httpx.HTTPStatusError):
            header = error.response.headers.get("Retry-After")
            try:
                retry_after = float(header) if header is not None else None
            except ValueError:
                retry_after = None
        return RateLimitError(message, cause=error, status_code=status, retry_after=retry_after)

    if isinstance(error, (httpx.TimeoutException, TimeoutError)) or status in (408, 504):
        return PlatformTimeoutError(message, cause=error, status_code=status)

    if any(pattern in text for pattern in TIMEOUT_PATTERNS):
        return PlatformTimeoutError(message, cause=error, status_code=status)

    logger.debug("Unclassified platform error %s: %s", type(error).__name__, message)
    return PlatformError(message, cause=error, status_code=status)
