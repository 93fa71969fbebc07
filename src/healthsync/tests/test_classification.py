"""Tests for mapping raw adapter failures onto typed errors."""

from __future__ import annotations

import httpx
import pytest

from src.healthsync.adapters.classification import (
    classify_platform_error,
    describe_error,
    is_rate_limit_signal,
)
from src.healthsync.errors import (
    PlatformError,
    PlatformTimeoutError,
    RateLimitError,
    TokenInvalidError,
)


def _status_error(status: int, headers: dict | None = None, text: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://platform.test/v1/changes/steps")
    response = httpx.Response(status, headers=headers, text=text, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestRateLimitSignal:
    @pytest.mark.parametrize(
        "error",
        [
            RateLimitError("slow down"),
            RuntimeError("Rate limit exceeded"),
            RuntimeError("Quota exceeded for today"),
            RuntimeError("request was throttled"),
            PlatformError("unavailable", status_code=503),
        ],
    )
    def test_recognised(self, error: Exception) -> None:
        assert is_rate_limit_signal(error)

    def test_ordinary_error_is_not_a_signal(self) -> None:
        assert not is_rate_limit_signal(ValueError("bad request"))


class TestClassify:
    def test_typed_errors_pass_through(self) -> None:
        error = TokenInvalidError("expired")
        assert classify_platform_error(error) is error

    def test_429_with_retry_after(self) -> None:
        classified = classify_platform_error(_status_error(429, headers={"Retry-After": "12"}))
        assert isinstance(classified, RateLimitError)
        assert classified.retry_after == 12.0
        assert classified.status_code == 429

    def test_unparseable_retry_after_is_ignored(self) -> None:
        classified = classify_platform_error(_status_error(429, headers={"Retry-After": "soon"}))
        assert isinstance(classified, RateLimitError)
        assert classified.retry_after is None

    def test_gone_is_token_invalid(self) -> None:
        classified = classify_platform_error(_status_error(410), data_type="steps")
        assert isinstance(classified, TokenInvalidError)
        assert classified.data_type == "steps"

    def test_token_message_in_detail(self) -> None:
        classified = classify_platform_error(_status_error(400), detail="Invalid sync token")
        assert isinstance(classified, TokenInvalidError)
        assert classified.message == "Invalid sync token"

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ReadTimeout("read timed out"),
            TimeoutError(),
            _status_error(504),
            RuntimeError("deadline exceeded"),
        ],
    )
    def test_timeouts(self, error: Exception) -> None:
        assert isinstance(classify_platform_error(error), PlatformTimeoutError)

    def test_everything_else_is_platform_error(self) -> None:
        classified = classify_platform_error(_status_error(403))
        assert type(classified) is PlatformError
        assert classified.status_code == 403
        assert isinstance(classified.cause, httpx.HTTPStatusError)


class TestDescribeError:
    def test_429(self) -> None:
        assert describe_error(RateLimitError("Too many requests"))["type"] == "HTTP 429 - Too Many Requests"

    def test_quota(self) -> None:
        details = describe_error(RuntimeError("quota exceeded"))
        assert details["type"] == "Quota Exceeded"
        assert "quota" in details["advice"].lower()

    def test_long_messages_are_truncated(self) -> None:
        details = describe_error(ValueError("x" * 500))
        assert details["type"] == "ValueError"
        assert len(details["raw_error"]) == 203
