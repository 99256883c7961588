"""Tests for conductor.agent.orchestrator (subagents, research tool)."""

from __future__ import annotations

import asyncio
import time
from typing import Any

from conductor.agent.agent import Agent
from conductor.agent.orchestrator import (
    SubagentBudget,
    SubagentOrchestrator,
    SubagentResult,
    SubagentTask,
    aggregate_results,
)
from conductor.cancel import CancelToken
from conductor.errors import FatalModelError
from conductor.llm.message import FailureKind, ToolUse
from conductor.llm.provider import ProviderConfig
from conductor.session.wire import EventType, Wire
from conductor.tool.dispatcher import DispatchPolicy
from conductor.tool.registry import ToolRegistry

from conftest import ScriptedProvider, text_reply

FAST = DispatchPolicy(backoff_seconds=0, backoff_max_seconds=0)
REPORT = "Report: the refund window for annual plans is 30 days."


class RoutingProvider:
    """Fails any subagent whose task mentions 'broken'; answers the rest."""

    def __init__(self) -> None:
        self._config = ProviderConfig(model="test/routing")
        self.calls: list[list[dict[str, Any]]] = []

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def stream(self, system, messages, tools=None):
        self.calls.append(messages)
        if "broken" in messages[0]["content"]:
            raise FatalModelError("invalid api key")
        for chunk in text_reply(REPORT):
            yield chunk


def _orchestrator(
    provider: Any, registry: ToolRegistry, **kwargs: Any
) -> SubagentOrchestrator:
    return SubagentOrchestrator(
        agent=Agent.default_subagent(),
        provider=provider,
        tool_registry=registry,
        policy=FAST,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# SubagentTask
# ---------------------------------------------------------------------------


class TestSubagentTask:
    def test_seed_message(self) -> None:
        task = SubagentTask("Find the refund window", curated_context="Plan: annual")
        assert task.seed_message().text == (
            "## Task\nFind the refund window\n\n## Context\nPlan: annual"
        )

    def test_seed_message_without_context(self) -> None:
        assert SubagentTask("Find it").seed_message().text == "## Task\nFind it"


# ---------------------------------------------------------------------------
# spawn
# ---------------------------------------------------------------------------


class TestSpawn:
    async def test_concurrency_is_bounded(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT), delay=0.05)
        orchestrator = _orchestrator(provider, registry)
        tasks = [SubagentTask(f"Find fact {i}") for i in range(5)]

        results = await orchestrator.spawn(tasks)

        assert provider.peak == 3
        assert [r.task for r in results] == tasks
        assert all(r.ok for r in results)
        assert results[0].text == REPORT

    async def test_subagent_sees_only_its_seed(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT))
        orchestrator = _orchestrator(provider, registry)

        await orchestrator.spawn([SubagentTask("Find the refund window", "Plan: annual")])

        call = provider.calls[0]
        assert call["messages"] == [
            {"role": "user", "content": "## Task\nFind the refund window\n\n## Context\nPlan: annual"}
        ]
        tool_names = {t["function"]["name"] for t in call["tools"]}
        assert tool_names == {"echo", "lookup", "sleep"}

    async def test_failure_is_isolated(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(RoutingProvider(), registry)
        results = await orchestrator.spawn(
            [SubagentTask("Find A"), SubagentTask("broken task"), SubagentTask("Find C")]
        )
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error == "Ended without an answer (model_error)"

    async def test_deadline(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT), delay=1.0)
        orchestrator = _orchestrator(provider, registry, deadline_seconds=0.1)

        results = await orchestrator.spawn([SubagentTask("Slow task")])

        assert results[0].ok is False
        assert results[0].error == "Timed out after 0.1s"
        assert results[0].duration_ms < 900

    async def test_parent_deadline_reported(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT), delay=1.0)
        orchestrator = _orchestrator(provider, registry)

        results = await orchestrator.spawn(
            [SubagentTask("Slow task")], CancelToken(timeout=0.1)
        )

        assert results[0].ok is False
        assert results[0].error == "Stopped early: the parent turn ran out of time"

    async def test_parent_cancel_reason_reported(self, registry: ToolRegistry) -> None:
        cancel = CancelToken()
        cancel.cancel("user left")
        orchestrator = _orchestrator(ScriptedProvider(default=text_reply(REPORT)), registry)

        results = await orchestrator.spawn([SubagentTask("Find it")], cancel)

        assert results[0].error == "Stopped early: user left"

    async def test_shared_slots_bound_across_spawns(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT), delay=0.05)
        orchestrator = _orchestrator(provider, registry)
        slots = orchestrator.slots()

        first, second = await asyncio.gather(
            orchestrator.spawn([SubagentTask(f"A{i}") for i in range(3)], slots=slots),
            orchestrator.spawn([SubagentTask(f"B{i}") for i in range(3)], slots=slots),
        )

        assert provider.peak == 3
        assert all(r.ok for r in first + second)

    async def test_task_budget_tightens_deadline(self, registry: ToolRegistry) -> None:
        provider = ScriptedProvider(default=text_reply(REPORT), delay=1.0)
        orchestrator = _orchestrator(provider, registry)
        task = SubagentTask("Slow task", budget=SubagentBudget(max_duration_ms=100))

        results = await orchestrator.spawn([task])

        assert results[0].ok is False

    async def test_wire_events(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(ScriptedProvider(default=text_reply(REPORT)), registry)
        wire = Wire()
        q = wire.subscribe()

        await orchestrator.spawn([SubagentTask("Find it")], wire=wire)

        types = []
        while not q.empty():
            types.append(q.get_nowait().type)
        assert types == [EventType.SUBAGENT_BEGIN, EventType.SUBAGENT_END]


# ---------------------------------------------------------------------------
# Result cap
# ---------------------------------------------------------------------------


class TestResultCap:
    async def test_long_report_is_summarized(self, registry: ToolRegistry) -> None:
        long_report = "The refund window is 30 days. " * 20
        summarizer = ScriptedProvider([text_reply("Refund window: 30 days.")])
        orchestrator = _orchestrator(
            ScriptedProvider(default=text_reply(long_report)),
            registry,
            summarizer=summarizer,
            result_token_cap=20,
        )

        results = await orchestrator.spawn([SubagentTask("Find the refund window")])

        assert results[0].text == "Refund window: 30 days."
        assert results[0].condensed is True
        assert len(summarizer.calls) == 1

    async def test_failed_summary_truncates(self, registry: ToolRegistry) -> None:
        long_report = "x" * 200
        orchestrator = _orchestrator(
            ScriptedProvider(default=text_reply(long_report)),
            registry,
            summarizer=ScriptedProvider([ConnectionError("down")]),
            result_token_cap=10,
        )

        results = await orchestrator.spawn([SubagentTask("Find it")])

        assert results[0].text == "x" * 40 + "\n[truncated]"
        assert results[0].condensed is True

    async def test_slow_summary_stays_within_deadline(self, registry: ToolRegistry) -> None:
        long_report = "y" * 12_000
        orchestrator = _orchestrator(
            ScriptedProvider(default=text_reply(long_report)),
            registry,
            summarizer=ScriptedProvider(default=text_reply("short"), delay=1.5),
            deadline_seconds=0.5,
        )

        start = time.monotonic()
        results = await orchestrator.spawn([SubagentTask("Find it")])
        elapsed = time.monotonic() - start

        assert elapsed < 1.0
        assert results[0].duration_ms < 1000
        assert results[0].ok is True
        assert results[0].text == "y" * 8000 + "\n[truncated]"

    async def test_short_report_untouched(self, registry: ToolRegistry) -> None:
        summarizer = ScriptedProvider()
        orchestrator = _orchestrator(
            ScriptedProvider(default=text_reply(REPORT)), registry, summarizer=summarizer
        )
        results = await orchestrator.spawn([SubagentTask("Find it")])
        assert results[0].condensed is False
        assert summarizer.calls == []


# ---------------------------------------------------------------------------
# aggregate_results
# ---------------------------------------------------------------------------


class TestAggregateResults:
    def test_mixed(self) -> None:
        results = [
            SubagentResult(task=SubagentTask("Find A"), ok=True, text="A is 1"),
            SubagentResult(task=SubagentTask("Find B"), ok=False, error="Timed out after 60s"),
        ]
        block = aggregate_results(results)
        assert block == (
            "## Available (1/2)\n"
            "\n### [1] Find A\nA is 1\n"
            "\n## Unavailable (1/2)\n"
            "- [2] Find B: Timed out after 60s"
        )

    def test_all_available(self) -> None:
        block = aggregate_results(
            [SubagentResult(task=SubagentTask("Find A"), ok=True, text="A")]
        )
        assert block.endswith("## Unavailable (0/1)\n(none)")


# ---------------------------------------------------------------------------
# research
# ---------------------------------------------------------------------------


class TestResearch:
    async def test_invalid_arguments(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(ScriptedProvider(), registry)
        outcome = await orchestrator.research(
            ToolUse(id="r1", name="research", arguments={"tasks": []})
        )
        assert outcome.result.tool_use_id == "r1"
        assert outcome.result.outcome.kind is FailureKind.INVALID_ARGUMENTS
        assert outcome.results == []

    async def test_malformed_json(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(ScriptedProvider(), registry)
        outcome = await orchestrator.research(
            ToolUse(id="r1", name="research", arguments={}, arguments_error="not valid JSON")
        )
        assert outcome.result.outcome.kind is FailureKind.INVALID_ARGUMENTS

    async def test_partial_success(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(RoutingProvider(), registry)
        tool_use = ToolUse(
            id="r1",
            name="research",
            arguments={
                "tasks": [
                    {"instructions": "Find the refund window"},
                    {"instructions": "broken lookup", "context": "n/a"},
                ]
            },
        )

        outcome = await orchestrator.research(tool_use)

        assert outcome.result.outcome.ok is True
        assert len(outcome.available) == 1
        payload = outcome.result.outcome.payload
        assert "## Available (1/2)" in payload
        assert "## Unavailable (1/2)" in payload
        assert REPORT in payload

    async def test_all_failed_is_unavailable(self, registry: ToolRegistry) -> None:
        orchestrator = _orchestrator(RoutingProvider(), registry)
        outcome = await orchestrator.research(
            ToolUse(id="r1", name="research", arguments={"tasks": [{"instructions": "broken"}]})
        )
        assert outcome.result.outcome.kind is FailureKind.UNAVAILABLE
        assert "## Available (0/1)" in outcome.result.outcome.message

    def test_tool_spec(self, registry: ToolRegistry) -> None:
        spec = _orchestrator(ScriptedProvider(), registry).tool_spec()
        assert spec["function"]["name"] == "research"
        assert "tasks" in spec["function"]["parameters"]["properties"]
