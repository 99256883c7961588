"""Wiring: build a ready-to-run agent loop from configuration.

All validation happens here, at startup: unknown tool names in profiles
and malformed settings raise ``ConfigurationError`` before any turn runs.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass

from conductor.agent.agent import Agent, discover_agents
from conductor.agent.gather import ContextGatherer
from conductor.agent.loop import AgentLoop, RunOptions
from conductor.agent.orchestrator import SubagentOrchestrator
from conductor.agent.verification import (
    MARKDOWN_PATTERNS,
    ForbiddenPattern,
    VerificationRules,
    Verifier,
)
from conductor.config import ConductorConfig
from conductor.context.compaction import Compactor
from conductor.errors import ConfigurationError
from conductor.llm.provider import ChatProvider, create_provider
from conductor.memory import FileMemoryStore, MemoryStore
from conductor.tool.base import BaseTool
from conductor.tool.builtin import MemoryTool, ThinkTool
from conductor.tool.dispatcher import DispatchPolicy, ToolDispatcher
from conductor.tool.registry import ToolRegistry
from conductor.tracing import TraceSink, Tracer

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """All components needed to run turns, shared by the CLI and embedders."""

    loop: AgentLoop
    provider: ChatProvider
    fast_provider: ChatProvider
    tool_registry: ToolRegistry
    orchestrator: SubagentOrchestrator | None = None


def build_providers(config: ConductorConfig) -> tuple[ChatProvider, ChatProvider]:
    provider = create_provider(
        model=config.llm.model,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
        context_window=config.llm.context_window,
    )
    fast_provider = create_provider(
        model=config.llm.fast_model,
        temperature=0.2,  # Low temperature for deterministic summaries
        max_tokens=config.llm.max_tokens,
        context_window=config.llm.context_window,
    )
    return provider, fast_provider


def build_memory_store(config: ConductorConfig) -> FileMemoryStore:
    return FileMemoryStore(os.path.expanduser(config.tools.memory_dir))


def build_tool_registry(
    config: ConductorConfig,
    extra_tools: Iterable[BaseTool] = (),
    store: MemoryStore | None = None,
) -> ToolRegistry:
    """Register the builtin tools plus ``extra_tools``, then freeze."""
    registry = ToolRegistry()
    store = store or build_memory_store(config)
    registry.register_many([ThinkTool(), MemoryTool(store)])
    registry.register_many(extra_tools)
    return registry.freeze()


def build_verification_rules(config: ConductorConfig) -> VerificationRules:
    vc = config.verification
    patterns: list[ForbiddenPattern] = list(MARKDOWN_PATTERNS) if vc.forbid_markdown else []
    for i, pattern in enumerate(vc.forbidden_patterns, 1):
        try:
            re.compile(pattern)
        except re.error as e:
            raise ConfigurationError(f"Bad forbidden pattern {pattern!r}: {e}") from e
        patterns.append(
            ForbiddenPattern(
                code=f"FORBIDDEN_PATTERN_{i}",
                pattern=pattern,
                message=f"Response must not match {pattern!r}",
            )
        )
    return VerificationRules(
        min_length=vc.min_length,
        max_length=vc.max_length,
        forbidden_patterns=patterns,
        require_citations=vc.require_citations,
    )


def load_profiles(config: ConductorConfig) -> tuple[Agent, Agent]:
    """The primary and subagent profiles, from ``agents_dir`` or defaults."""
    primary = Agent.default()
    subagent = Agent.default_subagent(config.subagents.max_iterations)
    if config.agents_dir and os.path.isdir(config.agents_dir):
        for agent in discover_agents([config.agents_dir]):
            if agent.config.mode == "primary":
                primary = agent
            else:
                subagent = agent
    return primary, subagent


def build_pipeline(
    config: ConductorConfig,
    provider: ChatProvider | None = None,
    fast_provider: ChatProvider | None = None,
    extra_tools: Iterable[BaseTool] = (),
    agent: Agent | None = None,
    subagent: Agent | None = None,
    trace_sink: TraceSink | None = None,
) -> Pipeline:
    """Set up all components for running turns.

    This is synchronous setup, no async needed.
    """
    if provider is None or fast_provider is None:
        default_provider, default_fast = build_providers(config)
        provider = provider or default_provider
        fast_provider = fast_provider or default_fast

    if agent is None or subagent is None:
        default_agent, default_subagent = load_profiles(config)
        agent = agent or default_agent
        subagent = subagent or default_subagent

    tracer = Tracer(trace_sink)
    store = build_memory_store(config)
    registry = build_tool_registry(config, extra_tools, store)
    policy = DispatchPolicy(
        timeout_seconds=config.tools.timeout_seconds,
        max_attempts=config.tools.max_attempts,
        batch_concurrency=config.tools.batch_concurrency,
        backoff_seconds=config.tools.backoff_seconds,
        backoff_max_seconds=config.tools.backoff_max_seconds,
    )

    orchestrator = None
    if config.subagents.enabled:
        orchestrator = SubagentOrchestrator(
            agent=subagent,
            provider=provider,
            tool_registry=registry,
            summarizer=fast_provider,
            policy=policy,
            tracer=tracer,
            max_concurrent=config.subagents.max_concurrent,
            deadline_seconds=config.subagents.deadline_seconds,
            result_token_cap=config.subagents.result_token_cap,
        )

    compactor = None
    if config.compaction.enabled:
        compactor = Compactor(
            summarizer=fast_provider,
            context_window=config.llm.context_window,
            threshold=config.compaction.threshold,
            keep_recent=config.compaction.keep_recent,
            tracer=tracer,
        )

    gatherer = None
    if config.gather.enabled:
        gatherer = ContextGatherer(
            store,
            max_items=config.gather.max_items,
            max_entries=config.gather.max_entries,
            timeout_seconds=config.gather.timeout_seconds,
        )

    lc = config.loop
    loop = AgentLoop(
        agent=agent,
        provider=provider,
        dispatcher=ToolDispatcher(agent.tool_registry(registry), policy=policy, tracer=tracer),
        verifier=Verifier(build_verification_rules(config), judge=fast_provider, tracer=tracer),
        compactor=compactor,
        orchestrator=orchestrator,
        gatherer=gatherer,
        tracer=tracer,
        options=RunOptions(
            max_iterations=min(lc.max_iterations, agent.max_iterations),
            max_verification_attempts=lc.max_verification_attempts,
            model_attempts=lc.model_attempts,
            model_backoff_seconds=lc.model_backoff_seconds,
            turn_timeout_seconds=lc.turn_timeout_seconds,
            high_stakes=config.verification.high_stakes,
        ),
    )
    logger.info(
        "Pipeline ready: agent %s, %d tool(s), subagents %s",
        agent.name,
        len(registry),
        "on" if orchestrator else "off",
    )
    return Pipeline(
        loop=loop,
        provider=provider,
        fast_provider=fast_provider,
        tool_registry=registry,
        orchestrator=orchestrator,
    )
