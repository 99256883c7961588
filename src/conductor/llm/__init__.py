"""LLM abstraction layer: unified via litellm with streaming."""

from conductor.llm.message import (
    ContentPart,
    Failure,
    FailureKind,
    Message,
    Outcome,
    Success,
    TextPart,
    TokenUsage,
    ToolResultPart,
    ToolUse,
    ToolUsePart,
)
from conductor.llm.provider import (
    ChatProvider,
    LiteLLMProvider,
    ProviderConfig,
    create_provider,
)
from conductor.llm.streaming import GenerateResult, generate

__all__ = [
    "ContentPart",
    "Failure",
    "FailureKind",
    "Message",
    "Outcome",
    "Success",
    "TextPart",
    "TokenUsage",
    "ToolResultPart",
    "ToolUse",
    "ToolUsePart",
    "ChatProvider",
    "LiteLLMProvider",
    "ProviderConfig",
    "create_provider",
    "GenerateResult",
    "generate",
]
