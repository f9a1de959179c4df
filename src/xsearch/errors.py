"""Exception types, error classification and retry/backoff helpers.

The classifier decides whether a failure raised by the X API (or by the
network underneath it) is worth retrying, and how long to wait first.
Calling code combines the suggested delay with exponential backoff and
jitter via :func:`compute_delay` / :func:`with_retry`.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Exceptions ─────────────────────────────────────────────────────────────


class XSearchError(Exception):
    """Base class for errors surfaced to the caller."""


class ValidationError(XSearchError):
    """Invalid input; never retried."""


class ConflictError(XSearchError):
    """A uniquely-named resource already exists."""


class NotFoundError(XSearchError):
    """A referenced session/topic/job does not exist."""


class AuthenticationError(XSearchError):
    """Missing or rejected credentials; never retried."""


class XClientError(XSearchError):
    """Raised when the X API returns an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(XClientError):
    """The X API answered 429; ``retry_after`` is the advertised wait in seconds."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


# ── Classification ─────────────────────────────────────────────────────────


class ErrorType(StrEnum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TEMPORARY = "temporary"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    type: ErrorType
    should_retry: bool
    suggested_delay: float | None
    friendly_message: str


_CLASSIFICATIONS: dict[ErrorType, ErrorClassification] = {
    ErrorType.NETWORK: ErrorClassification(
        ErrorType.NETWORK, True, 2.0, "Network connection issue. Retrying..."
    ),
    ErrorType.RATE_LIMIT: ErrorClassification(
        ErrorType.RATE_LIMIT, True, 60.0, "Rate limited by X. Waiting before retry..."
    ),
    ErrorType.TEMPORARY: ErrorClassification(
        ErrorType.TEMPORARY, True, 5.0, "X service temporarily unavailable. Retrying..."
    ),
    ErrorType.AUTHENTICATION: ErrorClassification(
        ErrorType.AUTHENTICATION,
        False,
        None,
        "Authentication failed. Please check your X API bearer token.",
    ),
    ErrorType.VALIDATION: ErrorClassification(
        ErrorType.VALIDATION, False, None, "Invalid request. Please check your input."
    ),
    ErrorType.UNKNOWN: ErrorClassification(
        ErrorType.UNKNOWN, True, 3.0, "An unexpected error occurred. Retrying..."
    ),
}

# Checked in this order; the first category with a matching pattern wins.
_PATTERNS: list[tuple[ErrorType, list[re.Pattern[str]]]] = [
    (
        ErrorType.NETWORK,
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"ECONNREFUSED",
                r"ENOTFOUND",
                r"ETIMEDOUT",
                r"ECONNRESET",
                r"ENETUNREACH",
                r"EHOSTUNREACH",
                r"socket hang up",
                r"network",
                r"connection.*(failed|refused|reset|aborted)",
                r"request.*timed? ?out",
                r"dns.*lookup.*failed",
                r"name or service not known",
            )
        ],
    ),
    (
        ErrorType.RATE_LIMIT,
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"rate.?limit",
                r"too many requests",
                r"\b429\b",
                r"quota.*exceeded",
                r"temporarily.*unavailable",
                r"try again later",
            )
        ],
    ),
    (
        ErrorType.TEMPORARY,
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\b50[0234]\b",
                r"internal.*server.*error",
                r"service.*unavailable",
                r"gateway.*timeout",
                r"bad.*gateway",
                r"temporarily",
            )
        ],
    ),
    (
        ErrorType.AUTHENTICATION,
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\b401\b",
                r"\b403\b",
                r"unauthori[sz]ed",
                r"forbidden",
                r"invalid.*token",
                r"auth.*token",
                r"authentication",
                r"not.*logged.*in",
                r"session.*expired",
            )
        ],
    ),
    (
        ErrorType.VALIDATION,
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\b400\b",
                r"\b422\b",
                r"invalid.*input",
                r"validation.*error",
                r"required.*parameter",
                r"missing.*argument",
                r"invalid.*format",
                r"user.*not.*found",
                r"does.*not.*exist",
            )
        ],
    ),
]


def _from_status(status: int) -> ErrorType | None:
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status in (401, 403):
        return ErrorType.AUTHENTICATION
    if status in (400, 422):
        return ErrorType.VALIDATION
    if status >= 500:
        return ErrorType.TEMPORARY
    return None


def _from_type(error: BaseException) -> ErrorType | None:
    if isinstance(error, AuthenticationError):
        return ErrorType.AUTHENTICATION
    if isinstance(error, ValidationError):
        return ErrorType.VALIDATION
    if isinstance(error, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)):
        return ErrorType.NETWORK
    return None


def classify_error(error: BaseException | str) -> ErrorClassification:
    """Map *error* to an :class:`ErrorClassification`."""
    if isinstance(error, BaseException):
        status = getattr(error, "status_code", None)
        error_type = _from_status(status) if isinstance(status, int) else None
        if error_type is None:
            error_type = _from_type(error)
        if error_type is not None:
            return _with_advertised_delay(_CLASSIFICATIONS[error_type], error)

    message = str(error)
    for error_type, patterns in _PATTERNS:
        if any(p.search(message) for p in patterns):
            return _CLASSIFICATIONS[error_type]
    return _CLASSIFICATIONS[ErrorType.UNKNOWN]


def _with_advertised_delay(
    classification: ErrorClassification, error: BaseException
) -> ErrorClassification:
    retry_after = getattr(error, "retry_after", None)
    if classification.type is ErrorType.RATE_LIMIT and retry_after is not None:
        return ErrorClassification(
            classification.type,
            classification.should_retry,
            float(retry_after),
            classification.friendly_message,
        )
    return classification


def is_retryable(error: BaseException | str) -> bool:
    return classify_error(error).should_retry


def friendly_message(error: BaseException | str) -> str:
    return classify_error(error).friendly_message


# ── Backoff ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BackoffConfig:
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter_percent: float = 25.0


RETRY_PRESETS: dict[str, BackoffConfig] = {
    # Fewer retries, longer delays.
    "conservative": BackoffConfig(max_attempts=2, base_delay=5.0, max_delay=120.0),
    "standard": BackoffConfig(max_attempts=3, base_delay=2.0, max_delay=60.0),
    "aggressive": BackoffConfig(max_attempts=5, base_delay=1.0, max_delay=30.0),
    "rate_limit": BackoffConfig(
        max_attempts=3, base_delay=60.0, max_delay=300.0, jitter_percent=10.0
    ),
}


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_percent: float = 25.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for a zero-based *attempt*, jittered and capped."""
    delay = base_delay * (2**attempt)
    if jitter_percent:
        spread = delay * jitter_percent / 100
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, max_delay))


def format_delay(seconds: float) -> str:
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    preset: str = "standard",
    operation_name: str = "X API call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation*, retrying retryable failures per the classifier.

    Non-retryable errors and the last failure after ``max_attempts`` are
    re-raised unchanged.
    """
    config = RETRY_PRESETS[preset]
    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as exc:
            classification = classify_error(exc)
            if not classification.should_retry or attempt == config.max_attempts - 1:
                raise
            base = max(config.base_delay, classification.suggested_delay or 0.0)
            delay = compute_delay(attempt, base, config.max_delay, config.jitter_percent)
            logger.warning(
                "%s failed (attempt %d/%d): %s Waiting %s",
                operation_name,
                attempt + 1,
                config.max_attempts,
                classification.friendly_message,
                format_delay(delay),
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
