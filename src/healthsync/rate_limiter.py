"""Retrying call executor with exponential backoff and a circuit breaker.

Every platform call made by the sync engine goes through ``RateLimiter.execute``.
Transient failures (rate limits, timeouts) are retried with exponential
backoff; anything else surfaces on the first failure.  Repeated failures trip
a circuit breaker that rejects calls outright until a cooldown has elapsed,
after which exactly one probe call decides whether the circuit closes again.

Rate limiting should be a safety net, not routine.  A sustained hit rate
above 10% is logged as a warning: it usually means calls are being made in a
loop that could be batched.

Circuit-breaker counters live in memory for the lifetime of the limiter
instance and reset on restart.

Usage::

    limiter = RateLimiter(RateLimiterConfig(max_retries=3, initial_delay=0.1))
    records = await limiter.execute(
        lambda: platform.fetch_raw_records("steps", window),
        operation_name="fetch steps",
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from src.healthsync.adapters.classification import describe_error, is_rate_limit_signal
from src.healthsync.base import utc_now
from src.healthsync.errors import CircuitBreakerOpen, TransientPlatformError

logger = logging.getLogger("healthsync.rate_limiter")

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class RateLimiterConfig:
    """Retry and circuit-breaker settings.

    Attributes:
        max_retries:           Total attempts per operation, first call included.
        initial_delay:         Delay before the second attempt (seconds).
        max_delay:             Upper bound on any single delay (seconds).
        backoff_multiplier:    Growth factor between successive delays.
        circuit_threshold:     Consecutive failed attempts that open the circuit.
        circuit_reset_seconds: How long the circuit stays open before a probe.
        enable_backoff:        False = constant ``initial_delay`` between attempts.
        hit_rate_warning_threshold:      Hit rate above which a warning is logged.
        hit_rate_warning_min_operations: Operations required before warning.
    """

    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 16.0
    backoff_multiplier: float = 2.0
    circuit_threshold: int = 10
    circuit_reset_seconds: float = 300.0
    enable_backoff: bool = True
    hit_rate_warning_threshold: float = 0.1
    hit_rate_warning_min_operations: int = 20


# ---------------------------------------------------------------------------
# State & statistics
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RateLimitStats:
    """Counters for one limiter instance.

    ``total_operations`` counts completed ``execute`` calls, while
    ``total_attempts`` counts every invocation of an operation including
    retries.  ``rate_limit_hits`` and ``consecutive_failures`` are counted
    per failed attempt.
    """

    total_operations: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_attempts: int = 0
    rate_limit_hits: int = 0
    consecutive_failures: int = 0
    last_rate_limit_hit_at: datetime | None = None
    total_retry_delay: float = 0.0
    total_retries: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.success_count / self.total_operations

    @property
    def rate_limit_hit_rate(self) -> float:
        """Share of attempts that were answered with a rate-limit signal."""
        if self.total_attempts == 0:
            return 0.0
        return self.rate_limit_hits / self.total_attempts

    @property
    def average_retries_per_operation(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.total_retries / self.total_operations

    @property
    def is_healthy(self) -> bool:
        if self.total_operations < 10:
            return True
        return self.success_rate > 0.95 and self.rate_limit_hit_rate < 0.1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_rate_limit_hit_at"] = (
            self.last_rate_limit_hit_at.isoformat() if self.last_rate_limit_hit_at else None
        )
        data.update(
            success_rate=round(self.success_rate, 4),
            rate_limit_hit_rate=round(self.rate_limit_hit_rate, 4),
            average_retries_per_operation=round(self.average_retries_per_operation, 4),
            is_healthy=self.is_healthy,
        )
        return data

    def get_report(self) -> str:
        lines = [
            "Rate Limiter Statistics",
            "=======================",
            f"Total operations: {self.total_operations}",
            f"Successful: {self.success_count}",
            f"Failed: {self.failure_count}",
            f"Success rate: {self.success_rate * 100:.1f}%",
            "",
            f"Rate limit hits: {self.rate_limit_hits}",
            f"Rate limit hit rate: {self.rate_limit_hit_rate * 100:.1f}%",
            f"Total retries: {self.total_retries}",
            f"Avg retries/op: {self.average_retries_per_operation:.2f}",
            f"Total retry delay: {self.total_retry_delay:.1f}s",
        ]
        if self.last_rate_limit_hit_at is not None:
            lines.append(f"Last hit: {self.last_rate_limit_hit_at.isoformat()}")
        lines.append(f"Health: {'healthy' if self.is_healthy else 'UNHEALTHY'}")
        return "\n".join(lines)


@dataclass
class _ErrorSample:
    at: datetime
    operation: str
    rate_limited: bool
    details: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Executes async operations with retry, backoff and circuit breaking.

    Args:
        config: Retry / breaker settings. Defaults to ``RateLimiterConfig()``.
        sleep:  Awaitable sleep used between attempts (injected in tests).
        clock:  Monotonic clock in seconds used for the breaker cooldown.
        name:   Label used in log lines.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ) -> None:
        self.config = config or RateLimiterConfig()
        self.name = name
        self._sleep = sleep
        self._clock = clock
        self._stats = RateLimitStats()
        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._probe_in_flight = False
        self._recent_errors: deque[_ErrorSample] = deque(maxlen=50)

    @classmethod
    def from_preset(cls, preset: str, **kwargs: Any) -> "RateLimiter":
        """Build a limiter from a named preset in ``sync_config.yaml``.

        Known presets: conservative, aggressive, fast, no_backoff.
        """
        from src.healthsync.config_loader import get_sync_config

        config = get_sync_config().rate_limiter_preset(preset)
        kwargs.setdefault("name", preset)
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def circuit_state(self) -> CircuitState:
        return self._refresh_circuit()

    @property
    def is_circuit_open(self) -> bool:
        return self._refresh_circuit() is CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._stats.consecutive_failures

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    def get_stats(self) -> RateLimitStats:
        """Return a snapshot copy of the current counters."""
        return replace(self._stats)

    def reset_stats(self) -> None:
        """Zero the statistics; circuit state and its failure streak are kept."""
        self._stats = RateLimitStats(consecutive_failures=self._stats.consecutive_failures)
        self._recent_errors.clear()

    def reset_circuit(self) -> None:
        """Force the breaker closed."""
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False
        self._stats.consecutive_failures = 0
        logger.info("[%s] Circuit breaker manually reset", self.name)

    def get_delay_for_attempt(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        cfg = self.config
        if not cfg.enable_backoff:
            return cfg.initial_delay
        exponent = max(attempt, 1) - 1
        return min(cfg.initial_delay * (cfg.backoff_multiplier ** exponent), cfg.max_delay)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, operation: Operation[T], operation_name: str | None = None) -> T:
        """Run ``operation`` with retries and circuit breaking.

        Args:
            operation:      Zero-argument coroutine function to invoke.
            operation_name: Label used in logs and diagnostics.

        Returns:
            The operation's result.

        Raises:
            CircuitBreakerOpen: The circuit is open; the operation was not invoked.
            Exception:          The operation's last error once retries are
                                exhausted, or its first non-transient error.
        """
        name = operation_name or getattr(operation, "__name__", "operation")
        is_probe = self._admit(name)
        cfg = self.config
        attempt = 0

        try:
            while True:
                attempt += 1
                self._stats.total_attempts += 1
                try:
                    result = await operation()
                except Exception as exc:
                    rate_limited = is_rate_limit_signal(exc)
                    transient = rate_limited or isinstance(exc, TransientPlatformError)
                    self._record_failed_attempt(name, exc, rate_limited)

                    if is_probe:
                        self._finish_failure()
                        self._open_circuit(name, reason="half-open probe failed")
                        raise

                    if self._stats.consecutive_failures >= cfg.circuit_threshold:
                        self._finish_failure()
                        self._open_circuit(name, reason="failure threshold reached")
                        raise

                    if not transient or attempt >= cfg.max_retries:
                        self._finish_failure()
                        logger.error(
                            "[%s] %s failed after %d attempt(s): %s (rate_limited=%s, consecutive_failures=%d)",
                            self.name,
                            name,
                            attempt,
                            exc,
                            rate_limited,
                            self._stats.consecutive_failures,
                        )
                        raise

                    delay = self._delay_after(attempt, exc)
                    logger.warning(
                        "[%s] %s hit a transient failure (attempt %d/%d), retrying in %.2fs: %s",
                        self.name,
                        name,
                        attempt,
                        cfg.max_retries,
                        delay,
                        exc,
                    )
                    self._stats.total_retries += 1
                    self._stats.total_retry_delay += delay
                    await self._sleep(delay)
                    if not is_probe and self._refresh_circuit() is not CircuitState.CLOSED:
                        # Another call tripped the breaker while this one was backing off.
                        try:
                            is_probe = self._admit(name)
                        except CircuitBreakerOpen:
                            self._finish_failure()
                            raise
                    continue

                self._finish_success(name, attempt, is_probe)
                return result
        finally:
            if is_probe:
                self._probe_in_flight = False

    async def execute_sequential(
        self,
        operations: list[Operation[T]],
        operation_name: str | None = None,
    ) -> list[T]:
        """Run several operations one after another, each with its own retries.

        Stops at the first operation that ultimately fails.
        """
        label = operation_name or "operation"
        results: list[T] = []
        for index, operation in enumerate(operations, start=1):
            results.append(
                await self.execute(operation, f"{label} {index}/{len(operations)}")
            )
        return results

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def analyze_errors(self) -> str:
        """Human-readable analysis of recent failures with recommendations."""
        stats = self._stats
        lines = [
            "Rate Limiter Error Analysis",
            "===========================",
            f"Circuit: {self.circuit_state.value}",
            f"Total operations: {stats.total_operations}",
            f"Rate limit hits: {stats.rate_limit_hits}",
            f"Rate limit hit rate: {stats.rate_limit_hit_rate * 100:.1f}%",
            "",
        ]

        by_type = Counter(sample.details.get("type", "Unknown") for sample in self._recent_errors)
        if by_type:
            lines.append("Recent failures by type:")
            for kind, count in by_type.most_common():
                lines.append(f"  {kind}: {count}")
            lines.append("")

        min_ops = self.config.hit_rate_warning_min_operations
        if stats.rate_limit_hit_rate > self.config.hit_rate_warning_threshold and stats.total_operations > min_ops:
            lines += [
                "WARNING: rate limit hit rate is HIGH (>10%).",
                "Check for API calls made in tight loops, operations that could be",
                "batched, or logic errors that cause excessive calls.",
                "Rate limiting should be rare, not routine.",
            ]
        elif stats.rate_limit_hit_rate > 0.05 and stats.total_operations > min_ops:
            lines.append("NOTICE: rate limit hit rate is moderate (>5%). Review API usage patterns.")
        else:
            lines.append("Rate limiting is within normal levels.")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refresh_circuit(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.config.circuit_reset_seconds:
                self._state = CircuitState.HALF_OPEN
                logger.info("[%s] Circuit breaker half-open, next call is a probe", self.name)
        return self._state

    def _admit(self, name: str) -> bool:
        """Decide whether a call may proceed; returns True for the half-open probe."""
        state = self._refresh_circuit()
        if state is CircuitState.CLOSED:
            return False
        if state is CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True

        retry_after: float | None = None
        if state is CircuitState.OPEN and self._opened_at is not None:
            retry_after = max(
                self.config.circuit_reset_seconds - (self._clock() - self._opened_at), 0.0
            )
        logger.error(
            "[%s] Circuit breaker %s, refusing %s (consecutive_failures=%d)",
            self.name,
            state.value,
            name,
            self._stats.consecutive_failures,
        )
        raise CircuitBreakerOpen(
            f"Circuit breaker is {state.value} after {self._stats.consecutive_failures} "
            "consecutive failures; refusing to call the platform",
            consecutive_failures=self._stats.consecutive_failures,
            opened_at=self._opened_at,
            retry_after=retry_after,
        )

    def _delay_after(self, attempt: int, error: BaseException) -> float:
        delay = self.get_delay_for_attempt(attempt)
        retry_after = getattr(error, "retry_after", None)
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            delay = min(float(retry_after), self.config.max_delay)
        return delay

    def _record_failed_attempt(self, name: str, error: BaseException, rate_limited: bool) -> None:
        self._stats.consecutive_failures += 1
        if rate_limited:
            self._stats.rate_limit_hits += 1
            self._stats.last_rate_limit_hit_at = utc_now()
        self._recent_errors.append(
            _ErrorSample(
                at=utc_now(),
                operation=name,
                rate_limited=rate_limited,
                details=describe_error(error),
            )
        )

    def _finish_failure(self) -> None:
        self._stats.total_operations += 1
        self._stats.failure_count += 1

    def _finish_success(self, name: str, attempts: int, was_probe: bool) -> None:
        stats = self._stats
        stats.total_operations += 1
        stats.success_count += 1
        if was_probe:
            logger.info("[%s] Probe %s succeeded, circuit closed", self.name, name)
            self._state = CircuitState.CLOSED
            self._opened_at = None
        if self._state is CircuitState.CLOSED:
            stats.consecutive_failures = 0

        if attempts > 1:
            logger.info("[%s] %s succeeded after %d attempts", self.name, name, attempts)

        cfg = self.config
        if (
            stats.rate_limit_hit_rate > cfg.hit_rate_warning_threshold
            and stats.total_operations > cfg.hit_rate_warning_min_operations
        ):
            logger.warning(
                "[%s] Rate limit hit rate is HIGH (%.1f%% over %d operations); "
                "check for calls made in loops that could be batched",
                self.name,
                stats.rate_limit_hit_rate * 100,
                stats.total_operations,
            )

    def _open_circuit(self, name: str, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.error(
            "[%s] Circuit breaker OPEN after %s failed (%s, consecutive_failures=%d); "
            "cooling down for %.0fs",
            self.name,
            name,
            reason,
            self._stats.consecutive_failures,
            self.config.circuit_reset_seconds,
        )

    def __repr__(self) -> str:
        cfg = self.config
        return (
            f"RateLimiter(name={self.name!r}, max_retries={cfg.max_retries}, "
            f"initial_delay={cfg.initial_delay}, max_delay={cfg.max_delay}, "
            f"backoff={cfg.enable_backoff}, circuit_threshold={cfg.circuit_threshold})"
        )
