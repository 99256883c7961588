"""Tool dispatcher: run tool uses under timeout and retry policy.

Two guarantees callers rely on:

* ``execute_one`` and ``execute_batch`` never raise for tool-level problems.
  Handler exceptions, timeouts and bad arguments all come back as
  ``Failure`` values inside a ``ToolResultPart``.
* ``execute_batch`` returns exactly one result per tool use, in input order,
  so the agent loop can pair every ``ToolUse`` with its ``ToolResult``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential_jitter,
)

from conductor.cancel import CancelToken
from conductor.llm.message import (
    Failure,
    FailureKind,
    Message,
    Outcome,
    Success,
    ToolResultPart,
    ToolUse,
)
from conductor.tool.errors import classify_exception
from conductor.tool.registry import ToolHandler, ToolRegistry
from conductor.tracing import Tracer, sanitize_arguments

logger = logging.getLogger(__name__)

TOOL_TIMEOUT_SECONDS = 30.0
MAX_ATTEMPTS = 3
BATCH_CONCURRENCY = 5


@dataclass
class DispatchPolicy:
    """Timeout, retry and concurrency limits for tool execution."""

    timeout_seconds: float = TOOL_TIMEOUT_SECONDS
    max_attempts: int = MAX_ATTEMPTS
    batch_concurrency: int = BATCH_CONCURRENCY
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 10.0


@dataclass
class DispatchRecord:
    """What happened to one tool use, retries included."""

    tool_use: ToolUse
    result: ToolResultPart
    attempts: int = 1
    duration_ms: float = 0.0

    @property
    def outcome(self) -> Outcome:
        return self.result.outcome

    @property
    def ok(self) -> bool:
        return self.result.outcome.ok

    def to_message(self) -> Message:
        return Message(role="tool", parts=[self.result])


@dataclass
class BatchStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    attempts: int = 0
    duration_ms: float = 0.0


@dataclass
class AggregatedResult:
    """All records of a batch, in the order the tool uses were given."""

    records: list[DispatchRecord] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)

    @property
    def successes(self) -> list[DispatchRecord]:
        return [r for r in self.records if r.ok]

    @property
    def failures(self) -> list[DispatchRecord]:
        return [r for r in self.records if not r.ok]

    def to_messages(self) -> list[Message]:
        return [r.to_message() for r in self.records]


class ToolDispatcher:
    """Executes tool uses against a frozen ``ToolRegistry``."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: DispatchPolicy | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._registry = registry
        self.policy = policy or DispatchPolicy()
        self._tracer = tracer or Tracer()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute_one(
        self,
        tool_use: ToolUse,
        handler: ToolHandler,
        cancel: CancelToken | None = None,
    ) -> ToolResultPart:
        """Run one attempt of a tool use with a timeout.

        The timeout is the policy timeout, shortened to whatever is left of
        the caller's deadline.
        """
        cancel = cancel or CancelToken()
        if cancel.cancelled:
            return _result(
                tool_use,
                Failure(FailureKind.CANCELLED, f"Not started: {cancel.reason}"),
            )
        if tool_use.arguments_error:
            return _result(
                tool_use,
                Failure(FailureKind.INVALID_ARGUMENTS, tool_use.arguments_error),
            )

        timeout = cancel.remaining(self.policy.timeout_seconds)
        span = self._tracer.start(
            f"tool:{tool_use.name}",
            tool_use_id=tool_use.id,
            timeout=timeout,
            arguments=sanitize_arguments(tool_use.arguments),
        )

        try:
            outcome = await asyncio.wait_for(
                handler(tool_use.arguments, cancel.child(timeout)), timeout=timeout
            )
        except asyncio.TimeoutError:
            if timeout is not None and timeout < self.policy.timeout_seconds:
                # The caller's deadline cut this call short; retrying is pointless.
                outcome = Failure(
                    FailureKind.CANCELLED,
                    f"Tool {tool_use.name} interrupted: {cancel.reason or 'deadline exceeded'}",
                )
            else:
                outcome = Failure(
                    FailureKind.TIMEOUT,
                    f"Tool {tool_use.name} exceeded {self.policy.timeout_seconds:g}s timeout",
                    retryable=True,
                )
        except Exception as e:
            logger.error("Tool %s raised: %s", tool_use.name, e, exc_info=True)
            outcome = classify_exception(e)

        if not isinstance(outcome, (Success, Failure)):
            outcome = Failure(
                FailureKind.EXECUTION_FAILED,
                f"Tool {tool_use.name} returned {type(outcome).__name__}, not an outcome",
            )

        span.end(ok=outcome.ok, kind=None if outcome.ok else outcome.kind.value)
        return _result(tool_use, outcome)

    async def execute_with_retry(
        self,
        tool_use: ToolUse,
        handler: ToolHandler,
        cancel: CancelToken | None = None,
    ) -> DispatchRecord:
        """Run a tool use, retrying retryable failures with backoff and jitter."""
        cancel = cancel or CancelToken()
        attempts = 0
        start = time.monotonic()

        async def _attempt() -> ToolResultPart:
            nonlocal attempts
            attempts += 1
            return await self.execute_one(tool_use, handler, cancel)

        def _should_retry(part: ToolResultPart) -> bool:
            outcome = part.outcome
            return (
                isinstance(outcome, Failure) and outcome.retryable and not cancel.cancelled
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.policy.backoff_seconds,
                max=self.policy.backoff_max_seconds,
                jitter=self.policy.backoff_seconds,
            ),
            retry=retry_if_result(_should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        part = await retrying(_attempt)

        if not part.outcome.ok:
            logger.info(
                "Tool %s failed after %d attempt(s): %s",
                tool_use.name,
                attempts,
                part.outcome.message,
            )
        return DispatchRecord(
            tool_use=tool_use,
            result=part,
            attempts=attempts,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def execute_batch(
        self, tool_uses: list[ToolUse], cancel: CancelToken | None = None
    ) -> AggregatedResult:
        """Run tool uses in chunks of at most ``batch_concurrency``.

        Every call in a chunk runs to completion regardless of its siblings;
        the next chunk starts once the previous one has settled.
        """
        cancel = cancel or CancelToken()
        start = time.monotonic()
        size = max(1, self.policy.batch_concurrency)
        records: list[DispatchRecord] = []

        for i in range(0, len(tool_uses), size):
            chunk = tool_uses[i : i + size]
            records.extend(
                await asyncio.gather(*(self._dispatch(tu, cancel) for tu in chunk))
            )

        stats = BatchStats(
            total=len(records),
            succeeded=sum(1 for r in records if r.ok),
            failed=sum(1 for r in records if not r.ok),
            attempts=sum(r.attempts for r in records),
            duration_ms=(time.monotonic() - start) * 1000,
        )
        logger.info(
            "Dispatched %d tool use(s): %d ok, %d failed",
            stats.total,
            stats.succeeded,
            stats.failed,
        )
        return AggregatedResult(records=records, stats=stats)

    async def _dispatch(self, tool_use: ToolUse, cancel: CancelToken) -> DispatchRecord:
        handler = self._registry.get(tool_use.name)
        if handler is None:
            # The model asked for a tool that does not exist; let it correct itself.
            outcome = Failure(
                FailureKind.NOT_FOUND,
                f"Unknown tool: {tool_use.name}. "
                f"Available tools: {', '.join(self._registry.names())}",
            )
            return DispatchRecord(tool_use=tool_use, result=_result(tool_use, outcome))
        return await self.execute_with_retry(tool_use, handler, cancel)


def _result(tool_use: ToolUse, outcome: Outcome) -> ToolResultPart:
    return ToolResultPart(tool_use_id=tool_use.id, outcome=outcome)
