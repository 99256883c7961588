"""Subagent orchestrator: bounded-parallel research with isolated context.

Each subagent is a full ``AgentLoop`` turn seeded only with its task's
instructions and curated context. It never sees the parent conversation.
At most ``max_concurrent`` subagents run at once; the rest queue. Every task
settles: a crash or a missed deadline becomes an error result, never an
exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from conductor.agent.agent import Agent
from conductor.agent.loop import AgentLoop, RunOptions, TurnOutcome
from conductor.agent.verification import VerificationRules, Verifier
from conductor.cancel import CancelToken
from conductor.context import Conversation
from conductor.llm.message import (
    Failure,
    FailureKind,
    Message,
    Outcome,
    Success,
    ToolResultPart,
    ToolUse,
)
from conductor.llm.provider import ChatProvider
from conductor.llm.streaming import generate
from conductor.session.wire import EventType, Wire, WireEvent
from conductor.tool.dispatcher import DispatchPolicy, ToolDispatcher
from conductor.tool.registry import ToolRegistry
from conductor.tracing import Tracer

logger = logging.getLogger(__name__)

MAX_CONCURRENT_SUBAGENTS = 3
SUBAGENT_DEADLINE_SECONDS = 60.0
RESULT_TOKEN_CAP = 2000

RESEARCH_TOOL_NAME = "research"

SUMMARIZE_SYSTEM = """\
Condense the research report you are given. Keep every concrete fact, name, \
number and source reference; drop narration. Stay under {max_words} words.
"""


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass
class SubagentBudget:
    max_tokens: int = RESULT_TOKEN_CAP
    max_duration_ms: int = int(SUBAGENT_DEADLINE_SECONDS * 1000)


@dataclass
class SubagentTask:
    """Work for one subagent. Holds no parent-conversation messages."""

    instructions: str
    curated_context: str = ""
    budget: SubagentBudget = field(default_factory=SubagentBudget)

    def seed_message(self) -> Message:
        text = f"## Task\n{self.instructions}"
        if self.curated_context:
            text += f"\n\n## Context\n{self.curated_context}"
        return Message.user(text)


@dataclass
class SubagentResult:
    task: SubagentTask
    ok: bool
    text: str = ""
    error: str = ""
    duration_ms: float = 0.0
    iterations: int = 0
    condensed: bool = False


@dataclass
class ResearchOutcome:
    """What the controller gets back for one research tool use."""

    result: ToolResultPart
    results: list[SubagentResult] = field(default_factory=list)

    @property
    def available(self) -> list[SubagentResult]:
        return [r for r in self.results if r.ok]


# ---------------------------------------------------------------------------
# Research tool request
# ---------------------------------------------------------------------------


class ResearchTask(BaseModel):
    instructions: str = Field(
        description=(
            "Self-contained instructions for one subagent. It cannot see this "
            "conversation, so say exactly what to find."
        ),
    )
    context: str = Field(
        default="",
        description="Only the facts from this conversation the subagent needs.",
    )


class ResearchRequest(BaseModel):
    tasks: list[ResearchTask] = Field(
        min_length=1,
        description="Independent research tasks; they run in parallel.",
    )


def research_tool_spec(name: str = RESEARCH_TOOL_NAME) -> dict[str, Any]:
    schema = ResearchRequest.model_json_schema()
    schema.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": (
                "Run independent research tasks in parallel subagents and get "
                "back their reports. Use for questions that need several "
                "separate lookups."
            ),
            "parameters": schema,
        },
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SubagentOrchestrator:
    """Spawns isolated subagent turns and aggregates their reports."""

    tool_name = RESEARCH_TOOL_NAME

    def __init__(
        self,
        agent: Agent,
        provider: ChatProvider,
        tool_registry: ToolRegistry,
        summarizer: ChatProvider | None = None,
        policy: DispatchPolicy | None = None,
        tracer: Tracer | None = None,
        max_concurrent: int = MAX_CONCURRENT_SUBAGENTS,
        deadline_seconds: float = SUBAGENT_DEADLINE_SECONDS,
        result_token_cap: int = RESULT_TOKEN_CAP,
    ) -> None:
        self._tracer = tracer or Tracer()
        self._summarizer = summarizer or provider
        self.max_concurrent = max_concurrent
        self.deadline_seconds = deadline_seconds
        self.result_token_cap = result_token_cap
        # Subagents get the orchestrator's tools minus research itself, so
        # they cannot spawn further subagents.
        self._loop = AgentLoop(
            agent=agent,
            provider=provider,
            dispatcher=ToolDispatcher(
                agent.tool_registry(tool_registry), policy=policy, tracer=self._tracer
            ),
            verifier=Verifier(VerificationRules(min_length=0)),
            tracer=self._tracer,
            options=RunOptions(
                max_iterations=agent.max_iterations,
                turn_timeout_seconds=deadline_seconds,
            ),
        )

    def tool_spec(self) -> dict[str, Any]:
        return research_tool_spec(self.tool_name)

    def slots(self) -> asyncio.Semaphore:
        """A fresh concurrency bound to share across ``spawn`` calls of one turn."""
        return asyncio.Semaphore(self.max_concurrent)

    async def research(
        self,
        tool_use: ToolUse,
        cancel: CancelToken | None = None,
        wire: Wire | None = None,
        slots: asyncio.Semaphore | None = None,
    ) -> ResearchOutcome:
        """Handle one research tool use. Always returns a result for its id.

        Pass the same ``slots`` to every research call of a turn so the
        subagent bound holds across them.
        """
        if tool_use.arguments_error:
            return ResearchOutcome(
                result=_result(
                    tool_use, Failure(FailureKind.INVALID_ARGUMENTS, tool_use.arguments_error)
                )
            )
        try:
            request = ResearchRequest.model_validate(tool_use.arguments)
        except ValidationError as e:
            return ResearchOutcome(
                result=_result(
                    tool_use,
                    Failure(
                        FailureKind.INVALID_ARGUMENTS,
                        f"Invalid parameters for {self.tool_name}: {e}",
                    ),
                )
            )

        tasks = [
            SubagentTask(instructions=t.instructions, curated_context=t.context)
            for t in request.tasks
        ]
        results = await self.spawn(tasks, cancel, wire=wire, slots=slots)
        block = aggregate_results(results)

        if any(r.ok for r in results):
            outcome: Outcome = Success(payload=block)
        else:
            outcome = Failure(FailureKind.UNAVAILABLE, block)
        return ResearchOutcome(result=_result(tool_use, outcome), results=results)

    async def spawn(
        self,
        tasks: list[SubagentTask],
        cancel: CancelToken | None = None,
        wire: Wire | None = None,
        slots: asyncio.Semaphore | None = None,
    ) -> list[SubagentResult]:
        """Run every task, at most ``max_concurrent`` at a time.

        With ``slots`` the bound is shared with every other call holding the
        same semaphore. Results come back in task order, one per task.
        """
        cancel = cancel or CancelToken()
        semaphore = slots or self.slots()

        async def _bounded(index: int, task: SubagentTask) -> SubagentResult:
            async with semaphore:
                return await self._run_one(index, task, cancel, wire)

        logger.info(
            "Spawning %d subagent(s), %d at a time", len(tasks), self.max_concurrent
        )
        settled = await asyncio.gather(
            *(_bounded(i, t) for i, t in enumerate(tasks)), return_exceptions=True
        )

        results: list[SubagentResult] = []
        for task, item in zip(tasks, settled):
            if isinstance(item, BaseException):
                logger.error("Subagent crashed: %s", item)
                results.append(
                    SubagentResult(
                        task=task, ok=False, error=str(item) or type(item).__name__
                    )
                )
            else:
                results.append(item)
        return results

    async def _run_one(
        self,
        index: int,
        task: SubagentTask,
        cancel: CancelToken,
        wire: Wire | None,
    ) -> SubagentResult:
        deadline = min(self.deadline_seconds, task.budget.max_duration_ms / 1000)
        # The parent turn may have less time left than the subagent deadline.
        parent_bound = cancel.remaining(deadline) < deadline
        token = cancel.child(deadline)
        start = time.monotonic()
        span = self._tracer.start(
            "subagent", index=index, instructions=task.instructions[:200]
        )
        _send(wire, EventType.SUBAGENT_BEGIN, {"index": index, "task": task.instructions[:200]})

        # A fresh conversation; nothing from the parent is shared.
        conversation = Conversation(messages=[task.seed_message()])
        try:
            response = await asyncio.wait_for(
                self._loop.run(conversation, cancel=token),
                timeout=token.remaining(deadline),
            )
        except asyncio.TimeoutError:
            result = SubagentResult(
                task=task, ok=False, error=_timeout_error(token, deadline, parent_bound)
            )
        except Exception as e:
            logger.error("Subagent %d failed: %s", index, e, exc_info=True)
            result = SubagentResult(task=task, ok=False, error=str(e))
        else:
            if response.outcome is TurnOutcome.COMPLETE:
                text, condensed = await self._cap(
                    response.text, task.budget.max_tokens, token
                )
                result = SubagentResult(
                    task=task,
                    ok=True,
                    text=text,
                    iterations=response.iterations,
                    condensed=condensed,
                )
            elif response.outcome is TurnOutcome.TIMEOUT:
                result = SubagentResult(
                    task=task,
                    ok=False,
                    error=_timeout_error(token, deadline, parent_bound),
                    iterations=response.iterations,
                )
            else:
                result = SubagentResult(
                    task=task,
                    ok=False,
                    error=f"Ended without an answer ({response.outcome.value})",
                    iterations=response.iterations,
                )

        result.duration_ms = (time.monotonic() - start) * 1000
        span.end(ok=result.ok, error=result.error or None, duration_ms=result.duration_ms)
        _send(
            wire,
            EventType.SUBAGENT_END,
            {"index": index, "ok": result.ok, "error": result.error},
        )
        return result

    async def _cap(
        self, text: str, max_tokens: int, cancel: CancelToken | None = None
    ) -> tuple[str, bool]:
        """Bound a report to ``max_tokens`` (estimated at 4 chars per token).

        The summary call runs inside the subagent's deadline; when the
        deadline hits first the report is truncated instead.
        """
        cap = min(max_tokens, self.result_token_cap)
        max_chars = cap * 4
        if len(text) <= max_chars:
            return text, False

        summary = ""
        if cancel is not None and cancel.cancelled:
            logger.warning("Subagent deadline passed before summary, truncating")
        else:
            try:
                result = await asyncio.wait_for(
                    generate(
                        provider=self._summarizer,
                        system=SUMMARIZE_SYSTEM.format(max_words=int(cap * 0.7)),
                        messages=[Message.user(text)],
                    ),
                    timeout=cancel.remaining() if cancel is not None else None,
                )
                summary = result.message.text.strip()
            except asyncio.TimeoutError:
                logger.warning("Subagent report summary hit the deadline, truncating")
            except Exception as e:
                logger.warning("Subagent report summary failed, truncating: %s", e)

        if summary and len(summary) <= max_chars:
            return summary, True
        cut = (summary or text)[:max_chars]
        return cut + "\n[truncated]", True


def aggregate_results(results: list[SubagentResult]) -> str:
    """One block with explicit available and unavailable sections."""
    available = [(i, r) for i, r in enumerate(results, 1) if r.ok]
    unavailable = [(i, r) for i, r in enumerate(results, 1) if not r.ok]

    lines = [f"## Available ({len(available)}/{len(results)})"]
    if available:
        for i, r in available:
            lines.append(f"\n### [{i}] {r.task.instructions[:120]}\n{r.text}")
    else:
        lines.append("(none)")

    lines.append(f"\n## Unavailable ({len(unavailable)}/{len(results)})")
    if unavailable:
        for i, r in unavailable:
            lines.append(f"- [{i}] {r.task.instructions[:120]}: {r.error}")
    else:
        lines.append("(none)")

    return "\n".join(lines)


def _timeout_error(token: CancelToken, deadline: float, parent_bound: bool) -> str:
    reason = token.reason
    if reason and reason != "deadline exceeded":
        return f"Stopped early: {reason}"
    if parent_bound:
        return "Stopped early: the parent turn ran out of time"
    return f"Timed out after {deadline:g}s"


def _result(tool_use: ToolUse, outcome: Outcome) -> ToolResultPart:
    return ToolResultPart(tool_use_id=tool_use.id, outcome=outcome)


def _send(wire: Wire | None, type_: EventType, data: dict[str, Any]) -> None:
    if wire is not None:
        wire.send(WireEvent(type=type_, data=data))
