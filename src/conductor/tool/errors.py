"""Classify exceptions escaping tool handlers into ``Failure`` values."""

from __future__ import annotations

import asyncio

from conductor.llm.message import Failure, FailureKind

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit", "too many requests")
_TIMEOUT_MARKERS = ("timeout", "timed out", "aborted")
_CONNECTION_MARKERS = (
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "network",
    "dns",
    "502",
    "503",
    "504",
)


def classify_exception(exc: BaseException) -> Failure:
    """Best-effort mapping of an exception onto a failure kind.

    Typed checks come first; message sniffing covers HTTP client errors that
    only carry a status code in their text.
    """
    message = str(exc) or type(exc).__name__

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return Failure(FailureKind.TIMEOUT, message, retryable=True)
    if isinstance(exc, ConnectionError):
        return Failure(FailureKind.CONNECTION, message, retryable=True)
    if isinstance(exc, (FileNotFoundError, KeyError, LookupError)):
        return Failure(FailureKind.NOT_FOUND, message, retryable=False)
    if isinstance(exc, PermissionError):
        return Failure(FailureKind.UNAVAILABLE, message, retryable=False)

    m = message.lower()
    if any(marker in m for marker in _RATE_LIMIT_MARKERS):
        return Failure(FailureKind.RATE_LIMITED, message, retryable=True)
    if any(marker in m for marker in _TIMEOUT_MARKERS):
        return Failure(FailureKind.TIMEOUT, message, retryable=True)
    if any(marker in m for marker in _CONNECTION_MARKERS):
        return Failure(FailureKind.CONNECTION, message, retryable=True)
    if "401" in m or "403" in m:
        return Failure(FailureKind.UNAVAILABLE, f"Auth error: {message}", retryable=False)
    if "404" in m:
        return Failure(FailureKind.NOT_FOUND, message, retryable=False)
    if "400" in m or isinstance(exc, (ValueError, TypeError)):
        return Failure(FailureKind.INVALID_ARGUMENTS, message, retryable=False)

    return Failure(FailureKind.EXECUTION_FAILED, message, retryable=False)
