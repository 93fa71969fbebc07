"""Typed error kinds for the HealthSync resilience core.

The core only ever sees this closed set of exceptions.  Turning raw
transport failures (HTTP status codes, platform error strings) into one of
these kinds is the job of the platform adapter boundary; see
``src.healthsync.adapters.classification``.

Hierarchy::

    HealthSyncError
    ├── TransientPlatformError      retried with backoff
    │   ├── RateLimitError
    │   └── PlatformTimeoutError
    ├── TokenInvalidError           triggers full-sync fallback
    ├── PlatformError               any other platform failure, not retried
    ├── CircuitBreakerOpen          rejected without invoking the operation
    ├── ConfigurationError          fails fast, never retried
    └── StorageError                persisted state could not be read/written
"""

from __future__ import annotations


class HealthSyncError(Exception):
    """Base class for all HealthSync errors.

    Attributes:
        message: Human-readable description.
        cause:   The underlying exception, if this error wraps one.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientPlatformError(HealthSyncError):
    """A platform failure that may succeed if retried later."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.status_code = status_code


class RateLimitError(TransientPlatformError):
    """The platform rejected the call because of rate limiting or quota."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, cause, status_code)
        self.retry_after = retry_after


class PlatformTimeoutError(TransientPlatformError):
    """The platform call timed out."""


class TokenInvalidError(HealthSyncError):
    """The change-feed continuation token is expired, corrupted, or unknown."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        data_type: str | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.data_type = data_type


class PlatformError(HealthSyncError):
    """A non-transient platform failure (bad request, permission, server bug)."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.status_code = status_code


class CircuitBreakerOpen(HealthSyncError):
    """Raised while the circuit breaker is open; the operation was not invoked.

    Attributes:
        consecutive_failures: Failure count that tripped the breaker.
        opened_at:            Monotonic clock reading when the breaker opened.
        retry_after:          Seconds until a half-open probe will be allowed.
    """

    def __init__(
        self,
        message: str,
        consecutive_failures: int = 0,
        opened_at: float | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.consecutive_failures = consecutive_failures
        self.opened_at = opened_at
        self.retry_after = retry_after


class ConfigurationError(HealthSyncError):
    """Invalid caller configuration (e.g. sync frequency below the minimum)."""


class StorageError(HealthSyncError):
    """Persisted sync state could not be read or written."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.key = key
