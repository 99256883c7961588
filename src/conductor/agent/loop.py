"""The agent loop controller: the state machine behind one turn.

    GATHER -> ACT -> VERIFY -> DONE
                 ^      |
                 |      v
               GATHER <- RETRY          (anything) -> TERMINAL_FAILURE

Each ACT issues exactly one model call. Tool uses in the reply are executed
and their results appended before the next model call, then the loop stays
in ACT; this does not consume a verification attempt. A reply with no tool
uses goes to VERIFY. A failed verification appends feedback and goes back
through RETRY and GATHER.

A turn always ends. Iterations (model calls) are capped, verification
attempts are capped, and the whole turn runs under one deadline.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential_jitter,
)

from conductor.agent.agent import Agent
from conductor.agent.citations import Citation, CitationCollector
from conductor.agent.gather import ContextGatherer
from conductor.agent.verification import (
    DEGRADED_RESPONSE,
    MAX_VERIFICATION_ATTEMPTS,
    VerificationOutcome,
    VerificationRequest,
    Verifier,
    build_retry_prompt,
    degraded_response,
)
from conductor.cancel import CancelToken
from conductor.context import Conversation
from conductor.context.compaction import Compactor
from conductor.errors import FatalModelError, ModelError, TransientModelError
from conductor.llm.message import (
    Failure,
    FailureKind,
    Message,
    TokenUsage,
    ToolResultPart,
    ToolUse,
)
from conductor.llm.provider import ChatProvider
from conductor.llm.streaming import GenerateResult, generate
from conductor.session.wire import EventType, Wire, WireEvent
from conductor.tool.dispatcher import DispatchRecord, ToolDispatcher
from conductor.tracing import SpanHandle, Tracer

if TYPE_CHECKING:
    from conductor.agent.orchestrator import SubagentOrchestrator

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
MODEL_ATTEMPTS = 3
TURN_TIMEOUT_SECONDS = 240.0


class Phase(enum.Enum):
    GATHER = "gather"
    ACT = "act"
    VERIFY = "verify"
    RETRY = "retry"
    DONE = "done"
    TERMINAL_FAILURE = "terminal_failure"


class TurnOutcome(enum.Enum):
    """Why did the turn end?"""

    COMPLETE = "complete"  # Verified response
    DEGRADED = "degraded"  # Verification attempts exhausted
    MAX_ITERATIONS = "max_iterations"
    TIMEOUT = "timeout"
    MODEL_ERROR = "model_error"


# User-safe text for every terminal failure. Never includes internal detail.
FAILURE_RESPONSES: dict[TurnOutcome, str] = {
    TurnOutcome.DEGRADED: DEGRADED_RESPONSE,
    TurnOutcome.MAX_ITERATIONS: (
        "I couldn't finish working on this within my step limit. "
        "Try narrowing the question or splitting it into smaller parts."
    ),
    TurnOutcome.TIMEOUT: (
        "I ran out of time working on this. Try a more specific question."
    ),
    TurnOutcome.MODEL_ERROR: (
        "I'm having trouble reaching my language model right now. "
        "Please try again in a moment."
    ),
}


@dataclass
class RunOptions:
    """Per-turn limits. Defaults match the documented policy."""

    max_iterations: int = MAX_ITERATIONS
    max_verification_attempts: int = MAX_VERIFICATION_ATTEMPTS
    model_attempts: int = MODEL_ATTEMPTS
    model_backoff_seconds: float = 1.0
    model_backoff_max_seconds: float = 10.0
    turn_timeout_seconds: float | None = TURN_TIMEOUT_SECONDS
    compaction_threshold: float | None = None
    high_stakes: bool = False


@dataclass
class ToolTraceEntry:
    """One executed tool use, as reported in the final response."""

    tool_use_id: str
    name: str
    ok: bool
    kind: str | None = None
    attempts: int = 1
    duration_ms: float = 0.0


@dataclass
class FinalResponse:
    text: str
    outcome: TurnOutcome
    citations: list[Citation] = field(default_factory=list)
    tool_trace: list[ToolTraceEntry] = field(default_factory=list)
    verification: VerificationOutcome | None = None
    iterations: int = 0
    conversation: Conversation = field(default_factory=Conversation)
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def ok(self) -> bool:
        return self.outcome is TurnOutcome.COMPLETE


@dataclass
class _TurnState:
    """Everything one turn mutates. Built fresh per ``run`` call."""

    conversation: Conversation
    cancel: CancelToken
    wire: Wire | None
    user_message: str
    high_stakes: bool
    options: RunOptions
    citations: CitationCollector = field(default_factory=CitationCollector)
    tool_trace: list[ToolTraceEntry] = field(default_factory=list)
    phase: Phase = Phase.GATHER
    span: SpanHandle | None = None
    iteration: int = 0
    verification_attempt: int = 0
    candidate: str = ""
    verification: VerificationOutcome | None = None
    outcome: TurnOutcome | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    tools_ran: bool = False
    gathered: bool = False
    context: str = ""
    # Shared by every research call of the turn.
    subagent_slots: asyncio.Semaphore | None = None


class AgentLoop:
    """Runs turns for one agent profile.

    The loop object holds only read-only collaborators, so one instance can
    serve concurrent turns; per-turn state lives in ``_TurnState``.
    """

    def __init__(
        self,
        agent: Agent,
        provider: ChatProvider,
        dispatcher: ToolDispatcher,
        verifier: Verifier | None = None,
        compactor: Compactor | None = None,
        orchestrator: SubagentOrchestrator | None = None,
        tracer: Tracer | None = None,
        options: RunOptions | None = None,
        gatherer: ContextGatherer | None = None,
    ) -> None:
        self.agent = agent
        self._provider = provider
        self._dispatcher = dispatcher
        self._verifier = verifier or Verifier()
        self._compactor = compactor
        self._orchestrator = orchestrator
        self._gatherer = gatherer
        self._tracer = tracer or Tracer()
        self.options = options or RunOptions(max_iterations=agent.max_iterations)

        self._tool_specs = dispatcher.registry.get_specs()
        if orchestrator is not None:
            self._tool_specs.append(orchestrator.tool_spec())

    # --- Public entry points ---

    async def run(
        self,
        conversation: Conversation,
        options: RunOptions | None = None,
        cancel: CancelToken | None = None,
        wire: Wire | None = None,
    ) -> FinalResponse:
        """Run one turn to completion. Never raises for model or tool failures.

        ``conversation`` is copied; the caller's object is never modified.
        The returned ``FinalResponse.conversation`` is the updated history.
        """
        options = options or self.options
        state = _TurnState(
            conversation=conversation.copy(),
            cancel=CancelToken(timeout=options.turn_timeout_seconds, parent=cancel),
            wire=wire,
            user_message=_last_user_text(conversation),
            high_stakes=options.high_stakes or self.agent.config.high_stakes,
            options=options,
        )

        self._send(state, EventType.TURN_BEGIN, {"agent": self.agent.name})
        start = time.monotonic()
        turn_span = self._tracer.start("turn", agent=self.agent.name)
        try:
            await self._drive(state)
        finally:
            if state.span is not None:
                state.span.end(phase=state.phase.value)

        response = self._final_response(state)
        turn_span.end(
            outcome=response.outcome.value,
            iterations=response.iterations,
            duration_ms=(time.monotonic() - start) * 1000,
        )
        logger.info(
            "Agent %s: turn ended %s after %d iteration(s)",
            self.agent.name,
            response.outcome.value,
            response.iterations,
        )
        self._send(state, EventType.TURN_END, {"outcome": response.outcome.value})
        self._send(state, EventType.FINAL, {"response": response})
        return response

    async def stream(
        self,
        conversation: Conversation,
        options: RunOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[WireEvent]:
        """Run one turn, yielding wire events as they happen.

        Text events are drafts: a draft can still fail verification. The last
        event is ``FINAL`` carrying the ``FinalResponse``.
        """
        wire = Wire()
        queue = wire.subscribe()
        task = asyncio.create_task(self.run(conversation, options, cancel, wire=wire))
        task.add_done_callback(lambda _: wire.close())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                task.cancel()
        # Surface unexpected errors from run().
        await task

    # --- State machine ---

    async def _drive(self, state: _TurnState) -> None:
        self._enter(state, Phase.GATHER)
        while state.phase not in (Phase.DONE, Phase.TERMINAL_FAILURE):
            if state.phase is Phase.GATHER:
                await self._gather(state)
            elif state.phase is Phase.ACT:
                await self._act(state)
            elif state.phase is Phase.VERIFY:
                await self._verify(state)
            elif state.phase is Phase.RETRY:
                self._retry(state)

    def _enter(self, state: _TurnState, phase: Phase) -> None:
        if state.span is not None:
            state.span.end(to=phase.value)
        state.phase = phase
        state.span = self._tracer.start(
            f"phase:{phase.value}", agent=self.agent.name, iteration=state.iteration
        )
        logger.debug("Agent %s: -> %s", self.agent.name, phase.value)
        if state.wire is not None:
            state.wire.send_phase(phase.value, state.iteration)

    def _fail(self, state: _TurnState, outcome: TurnOutcome, detail: str) -> None:
        logger.warning("Agent %s: %s (%s)", self.agent.name, outcome.value, detail)
        state.outcome = outcome
        if state.wire is not None:
            state.wire.send_error(detail)
        self._enter(state, Phase.TERMINAL_FAILURE)

    async def _gather(self, state: _TurnState) -> None:
        _close_pending_tool_uses(state.conversation)
        if not state.gathered:
            # Once per turn; retries reuse the same context.
            state.gathered = True
            await self._gather_context(state)
        await self._maybe_compact(state)
        self._enter(state, Phase.ACT)

    async def _act(self, state: _TurnState) -> None:
        if state.iteration >= state.options.max_iterations:
            self._fail(
                state,
                TurnOutcome.MAX_ITERATIONS,
                f"hit iteration limit ({state.options.max_iterations})",
            )
            return
        if state.cancel.cancelled:
            self._fail(state, TurnOutcome.TIMEOUT, state.cancel.reason)
            return

        if state.tools_ran:
            await self._maybe_compact(state)
            state.tools_ran = False

        state.iteration += 1
        logger.info(
            "Agent %s: iteration %d/%d",
            self.agent.name,
            state.iteration,
            state.options.max_iterations,
        )

        try:
            result = await self._call_model(state)
        except asyncio.TimeoutError:
            self._fail(state, TurnOutcome.TIMEOUT, "turn deadline exceeded")
            return
        except FatalModelError as e:
            self._fail(state, TurnOutcome.MODEL_ERROR, f"fatal model error: {e}")
            return
        except ModelError as e:
            if state.cancel.cancelled:
                # Retries were cut short by the deadline.
                self._fail(state, TurnOutcome.TIMEOUT, state.cancel.reason)
            else:
                self._fail(state, TurnOutcome.MODEL_ERROR, f"model unavailable: {e}")
            return

        _add_usage(state.usage, result.usage)
        state.conversation.append(result.message)

        tool_uses = result.tool_uses
        if tool_uses:
            await self._run_tools(state, tool_uses)
            state.tools_ran = True
            # Stay in ACT; the next model call sees the results.
            return

        state.candidate = result.message.text
        self._enter(state, Phase.VERIFY)

    async def _verify(self, state: _TurnState) -> None:
        state.verification_attempt += 1
        request = VerificationRequest(
            user_message=state.user_message,
            citations=state.citations.citations,
            high_stakes=state.high_stakes,
        )
        outcome = await self._verifier.verify(
            state.candidate, request, attempt=state.verification_attempt, cancel=state.cancel
        )
        state.verification = outcome
        if state.wire is not None:
            state.wire.send_verification(outcome.passed, outcome.attempt, outcome.feedback)

        if outcome.passed:
            state.outcome = TurnOutcome.COMPLETE
            self._enter(state, Phase.DONE)
        elif state.verification_attempt >= state.options.max_verification_attempts:
            self._fail(
                state,
                TurnOutcome.DEGRADED,
                f"verification failed {state.verification_attempt} time(s)",
            )
        else:
            self._enter(state, Phase.RETRY)

    def _retry(self, state: _TurnState) -> None:
        assert state.verification is not None
        state.conversation.append(
            Message.user(
                build_retry_prompt(
                    state.candidate,
                    state.verification.feedback,
                    state.verification_attempt,
                    state.options.max_verification_attempts,
                )
            )
        )
        self._enter(state, Phase.GATHER)

    # --- Collaborators ---

    def _system_prompt(self, state: _TurnState) -> str:
        if not state.context:
            return self.agent.system_prompt
        return f"{self.agent.system_prompt}\n\n{state.context}"

    async def _gather_context(self, state: _TurnState) -> None:
        if self._gatherer is None:
            return
        try:
            state.context = await self._gatherer.gather(
                state.user_message, state.citations, state.cancel
            )
        except Exception as e:
            # Context is optional; the turn proceeds without it.
            logger.warning("Context gather failed: %s", e, exc_info=True)
            return
        if state.context and state.wire is not None:
            state.wire.send_status(f"Gathered {len(state.citations)} source(s) from memory")

    async def _maybe_compact(self, state: _TurnState) -> None:
        if self._compactor is None:
            return
        before = len(state.conversation)
        compacted = await self._compactor.maybe_compact(
            state.conversation,
            threshold=state.options.compaction_threshold,
            cancel=state.cancel,
            reserved=len(self._system_prompt(state)) // 4,
        )
        if compacted is not state.conversation:
            state.conversation = compacted
            self._send(
                state,
                EventType.COMPACTION,
                {"before": before, "after": len(compacted)},
            )

    async def _call_model(self, state: _TurnState) -> GenerateResult:
        """One model call, retrying transient failures with backoff.

        Raises ``asyncio.TimeoutError`` when the turn deadline passes and
        ``ModelError`` when retries are exhausted or the error is fatal.
        """
        options = state.options
        cancel = state.cancel
        wire = state.wire

        def _on_text(text: str) -> None:
            if wire is not None:
                wire.send_text(text)

        retrying = AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(options.model_attempts),
                lambda _: cancel.cancelled,
            ),
            wait=wait_exponential_jitter(
                initial=options.model_backoff_seconds,
                max=options.model_backoff_max_seconds,
                jitter=options.model_backoff_seconds,
            ),
            retry=retry_if_exception_type(TransientModelError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if cancel.cancelled:
                    raise asyncio.TimeoutError()
                return await asyncio.wait_for(
                    generate(
                        provider=self._provider,
                        system=self._system_prompt(state),
                        messages=state.conversation.get_messages(),
                        tools=self._tool_specs or None,
                        on_text=_on_text,
                    ),
                    timeout=cancel.remaining(),
                )
        raise ModelError("model call was not attempted")  # pragma: no cover

    async def _run_tools(self, state: _TurnState, tool_uses: list[ToolUse]) -> None:
        """Execute every tool use and append exactly one result for each, in order."""
        research_name = self._orchestrator.tool_name if self._orchestrator else None
        regular = [tu for tu in tool_uses if tu.name != research_name]
        research = [tu for tu in tool_uses if tu.name == research_name]

        for tu in tool_uses:
            if state.wire is not None:
                state.wire.send_tool_use(tu.id, tu.name, tu.arguments)

        results: dict[int, ToolResultPart] = {}
        if research and state.subagent_slots is None:
            assert self._orchestrator is not None
            state.subagent_slots = self._orchestrator.slots()

        async def _dispatch_regular() -> None:
            if not regular:
                return
            batch = await self._dispatcher.execute_batch(regular, state.cancel)
            for tu, record in zip(regular, batch.records):
                results[id(tu)] = record.result
                self._record_tool(state, record)

        async def _dispatch_research(tu: ToolUse) -> None:
            assert self._orchestrator is not None
            start = time.monotonic()
            outcome = await self._orchestrator.research(
                tu, state.cancel, wire=state.wire, slots=state.subagent_slots
            )
            results[id(tu)] = outcome.result
            for sub in outcome.available:
                state.citations.add(
                    source=research_name or "research",
                    title=sub.task.instructions[:80],
                    excerpt=sub.text,
                )
            state.tool_trace.append(
                ToolTraceEntry(
                    tool_use_id=tu.id,
                    name=tu.name,
                    ok=outcome.result.outcome.ok,
                    kind=_kind(outcome.result),
                    duration_ms=(time.monotonic() - start) * 1000,
                )
            )

        await asyncio.gather(
            _dispatch_regular(), *(_dispatch_research(tu) for tu in research)
        )

        for tu in tool_uses:
            part = results.get(id(tu)) or ToolResultPart(
                tool_use_id=tu.id,
                outcome=Failure(FailureKind.EXECUTION_FAILED, "Tool produced no result"),
            )
            state.conversation.append(Message(role="tool", parts=[part]))
            if state.wire is not None:
                state.wire.send_tool_result(tu.id, tu.name, part.content, part.is_error)

    def _record_tool(self, state: _TurnState, record: DispatchRecord) -> None:
        state.tool_trace.append(
            ToolTraceEntry(
                tool_use_id=record.tool_use.id,
                name=record.tool_use.name,
                ok=record.ok,
                kind=_kind(record.result),
                attempts=record.attempts,
                duration_ms=record.duration_ms,
            )
        )
        tool = self._dispatcher.registry.get(record.tool_use.name)
        if record.ok and tool is not None and tool.citable:
            state.citations.add(
                source=record.tool_use.name,
                title=_describe_call(record.tool_use),
                excerpt=record.result.content,
            )

    def _final_response(self, state: _TurnState) -> FinalResponse:
        outcome = state.outcome or TurnOutcome.MODEL_ERROR
        if outcome is TurnOutcome.COMPLETE:
            text = state.candidate
        elif outcome is TurnOutcome.DEGRADED:
            text = degraded_response(state.verification_attempt)
        else:
            text = FAILURE_RESPONSES[outcome]
        return FinalResponse(
            text=text,
            outcome=outcome,
            citations=state.citations.citations,
            tool_trace=state.tool_trace,
            verification=state.verification,
            iterations=state.iteration,
            conversation=state.conversation,
            usage=state.usage,
        )

    def _send(self, state: _TurnState, type_: EventType, data: dict[str, Any]) -> None:
        if state.wire is not None:
            state.wire.send(WireEvent(type=type_, data=data))


def _last_user_text(conversation: Conversation) -> str:
    for msg in reversed(conversation.messages):
        if msg.role == "user":
            return msg.text
    return ""


def _close_pending_tool_uses(conversation: Conversation) -> None:
    """Answer tool uses left unanswered by an interrupted earlier turn."""
    for tool_use_id in conversation.pending_tool_uses():
        logger.warning("Closing unanswered tool use %s", tool_use_id)
        conversation.append(
            Message.tool_result(
                tool_use_id,
                Failure(FailureKind.CANCELLED, "The previous turn ended before this call finished"),
            )
        )


def _add_usage(total: TokenUsage, usage: TokenUsage) -> None:
    total.input_tokens += usage.input_tokens
    total.output_tokens += usage.output_tokens
    total.total_tokens += usage.total_tokens


def _kind(part: ToolResultPart) -> str | None:
    outcome = part.outcome
    return outcome.kind.value if isinstance(outcome, Failure) else None


def _describe_call(tool_use: ToolUse) -> str:
    args = ", ".join(f"{k}={v!r}" for k, v in list(tool_use.arguments.items())[:3])
    text = f"{tool_use.name}({args})"
    return text if len(text) <= 80 else text[:77] + "..."
