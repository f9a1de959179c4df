"""Tests for error classification and retry/backoff helpers."""

import random

import pytest
import requests

from xsearch.errors import (
    AuthenticationError,
    ErrorType,
    RateLimitedError,
    ValidationError,
    XClientError,
    classify_error,
    compute_delay,
    format_delay,
    friendly_message,
    is_retryable,
    with_retry,
)


class TestClassifyError:
    def test_rate_limit_uses_advertised_delay(self) -> None:
        c = classify_error(RateLimitedError("slow down", retry_after=42))
        assert c.type is ErrorType.RATE_LIMIT
        assert c.should_retry
        assert c.suggested_delay == 42

    def test_status_code_beats_message(self) -> None:
        # The message looks like a network error but the status is authoritative.
        c = classify_error(XClientError("network connection failed", status_code=401))
        assert c.type is ErrorType.AUTHENTICATION
        assert not c.should_retry

    def test_server_error_is_temporary(self) -> None:
        assert classify_error(XClientError("boom", status_code=503)).type is ErrorType.TEMPORARY

    def test_exception_types(self) -> None:
        assert classify_error(AuthenticationError("x")).type is ErrorType.AUTHENTICATION
        assert classify_error(ValidationError("x")).type is ErrorType.VALIDATION
        assert classify_error(requests.ConnectionError("x")).type is ErrorType.NETWORK
        assert classify_error(TimeoutError()).type is ErrorType.NETWORK

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("ECONNRESET while reading", ErrorType.NETWORK),
            ("Too Many Requests", ErrorType.RATE_LIMIT),
            ("502 Bad Gateway", ErrorType.TEMPORARY),
            ("Unauthorized", ErrorType.AUTHENTICATION),
            ("user not found", ErrorType.VALIDATION),
            ("something odd", ErrorType.UNKNOWN),
        ],
    )
    def test_message_patterns(self, message: str, expected: ErrorType) -> None:
        assert classify_error(RuntimeError(message)).type is expected

    def test_pattern_order_network_first(self) -> None:
        # Matches both a network and a rate-limit pattern.
        assert classify_error("network rate limit").type is ErrorType.NETWORK

    def test_unknown_is_retryable(self) -> None:
        assert is_retryable("weird")
        assert not is_retryable(ValidationError("bad"))

    def test_friendly_message(self) -> None:
        assert "bearer token" in friendly_message(XClientError("denied", status_code=403))


class TestBackoff:
    def test_exponential_without_jitter(self) -> None:
        assert [compute_delay(a, 2, 60, jitter_percent=0) for a in range(4)] == [2, 4, 8, 16]

    def test_capped(self) -> None:
        assert compute_delay(10, 2, 60, jitter_percent=0) == 60

    def test_jitter_within_band(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            delay = compute_delay(2, 2, 60, jitter_percent=25, rng=rng)
            assert 6 <= delay <= 10

    def test_format_delay(self) -> None:
        assert format_delay(0.5) == "500ms"
        assert format_delay(2.5) == "2.5s"
        assert format_delay(125) == "2m 5s"


class TestWithRetry:
    pytestmark = pytest.mark.asyncio

    async def test_retries_then_succeeds(self) -> None:
        calls = 0
        sleeps: list[float] = []

        async def op() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise requests.ConnectionError("reset")
            return "ok"

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        assert await with_retry(op, sleep=fake_sleep) == "ok"
        assert calls == 3
        assert len(sleeps) == 2

    async def test_non_retryable_raises_immediately(self) -> None:
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise AuthenticationError("bad token")

        async def fake_sleep(seconds: float) -> None:
            raise AssertionError("should not sleep")

        with pytest.raises(AuthenticationError):
            await with_retry(op, sleep=fake_sleep)
        assert calls == 1

    async def test_gives_up_after_max_attempts(self) -> None:
        calls = 0

        async def op() -> None:
            nonlocal calls
            calls += 1
            raise TimeoutError("slow")

        async def fake_sleep(seconds: float) -> None:
            return None

        with pytest.raises(TimeoutError):
            await with_retry(op, preset="aggressive", sleep=fake_sleep)
        assert calls == 5
