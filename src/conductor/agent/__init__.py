"""Agent system: profiles, the loop controller, verification, subagents."""

from conductor.agent.agent import Agent, AgentConfig, discover_agents
from conductor.agent.citations import Citation, CitationCollector
from conductor.agent.loop import (
    AgentLoop,
    FinalResponse,
    Phase,
    RunOptions,
    ToolTraceEntry,
    TurnOutcome,
)
from conductor.agent.orchestrator import (
    ResearchRequest,
    SubagentBudget,
    SubagentOrchestrator,
    SubagentResult,
    SubagentTask,
    aggregate_results,
)
from conductor.agent.verification import (
    VerificationOutcome,
    VerificationRequest,
    VerificationRules,
    Verifier,
)

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentLoop",
    "Citation",
    "CitationCollector",
    "FinalResponse",
    "Phase",
    "ResearchRequest",
    "RunOptions",
    "SubagentBudget",
    "SubagentOrchestrator",
    "SubagentResult",
    "SubagentTask",
    "ToolTraceEntry",
    "TurnOutcome",
    "VerificationOutcome",
    "VerificationRequest",
    "VerificationRules",
    "Verifier",
    "aggregate_results",
    "discover_agents",
]
