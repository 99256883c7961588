"""Trace sink interface and a best-effort wrapper around it.

The agent loop opens a span at every phase transition, per tool execution
and per subagent. Sinks are external collaborators: whatever they do,
including raising, must never change control flow. ``Tracer`` enforces that.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = ("password", "token", "secret", "key", "auth", "credential")
_MAX_ARG_CHARS = 200


@runtime_checkable
class Span(Protocol):
    def end(self, outcome: dict[str, Any]) -> None: ...


@runtime_checkable
class TraceSink(Protocol):
    def start_span(self, name: str, metadata: dict[str, Any]) -> Span: ...


class _NullSpan:
    def end(self, outcome: dict[str, Any]) -> None:
        pass


class NullTraceSink:
    """Discards everything."""

    def start_span(self, name: str, metadata: dict[str, Any]) -> Span:
        return _NullSpan()


class _LoggingSpan:
    def __init__(self, name: str) -> None:
        self._name = name
        self._start = time.monotonic()

    def end(self, outcome: dict[str, Any]) -> None:
        elapsed_ms = (time.monotonic() - self._start) * 1000
        logger.debug("span %s ended in %.0fms: %s", self._name, elapsed_ms, outcome)


class LoggingTraceSink:
    """Writes spans to the ``conductor.tracing`` logger at DEBUG level."""

    def start_span(self, name: str, metadata: dict[str, Any]) -> Span:
        logger.debug("span %s started: %s", name, metadata)
        return _LoggingSpan(name)


class SpanHandle:
    """A span that swallows sink failures and can only end once."""

    def __init__(self, span: Span | None, name: str) -> None:
        self._span = span
        self._name = name
        self._ended = False

    def end(self, **outcome: Any) -> None:
        if self._ended:
            return
        self._ended = True
        if self._span is None:
            return
        try:
            self._span.end(outcome)
        except Exception as e:
            logger.warning("Trace sink failed to end span %s: %s", self._name, e)


class Tracer:
    """Best-effort front for a ``TraceSink``."""

    def __init__(self, sink: TraceSink | None = None) -> None:
        self._sink = sink or NullTraceSink()

    def start(self, name: str, **metadata: Any) -> SpanHandle:
        try:
            span = self._sink.start_span(name, metadata)
        except Exception as e:
            logger.warning("Trace sink failed to start span %s: %s", name, e)
            span = None
        return SpanHandle(span, name)


def sanitize_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Redact secrets and cut long strings before arguments reach a trace."""
    sanitized: dict[str, Any] = {}
    for key, value in arguments.items():
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > _MAX_ARG_CHARS:
            sanitized[key] = value[:_MAX_ARG_CHARS] + "...[truncated]"
        else:
            sanitized[key] = value
    return sanitized
