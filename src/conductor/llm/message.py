"""Message types for the LLM abstraction.

A Message carries an ordered list of content blocks. Blocks form a closed
tagged variant: text, tool use, and tool result. A tool result's outcome is
itself a closed variant: ``Success`` or ``Failure``.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)


class FailureKind(enum.Enum):
    """Why a tool invocation failed."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CONNECTION = "connection"
    INVALID_ARGUMENTS = "invalid_arguments"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    EXECUTION_FAILED = "execution_failed"
    CANCELLED = "cancelled"


# Hints appended to failures so the model knows whether to fix its call,
# wait, or report the gap to the user.
_FAILURE_HINTS: dict[FailureKind, str] = {
    FailureKind.TIMEOUT: "The tool did not respond in time. Treat it as unavailable.",
    FailureKind.RATE_LIMITED: "The tool is rate limited right now.",
    FailureKind.CONNECTION: "The tool service could not be reached.",
    FailureKind.INVALID_ARGUMENTS: "Fix the arguments and call the tool again.",
    FailureKind.NOT_FOUND: "The requested item does not exist.",
    FailureKind.UNAVAILABLE: "The tool is unavailable right now.",
    FailureKind.EXECUTION_FAILED: "Try a different approach.",
    FailureKind.CANCELLED: "The request ran out of time.",
}


@dataclass(frozen=True)
class Success:
    """A tool produced a payload."""

    payload: Any = ""
    ok: Literal[True] = True

    def render(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class Failure:
    """A tool failed. ``retryable`` tells the dispatcher whether to try again."""

    kind: FailureKind = FailureKind.EXECUTION_FAILED
    message: str = ""
    retryable: bool = False
    ok: Literal[False] = False

    def render(self) -> str:
        return f"Error [{self.kind.value}]: {self.message}\n{_FAILURE_HINTS[self.kind]}"


Outcome = Success | Failure


@dataclass
class TextPart:
    """A text content block."""

    type: Literal["text"] = "text"
    text: str = ""


@dataclass
class ToolUsePart:
    """A tool invocation requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    arguments: str = ""  # JSON string, as streamed by the model


@dataclass
class ToolResultPart:
    """The result paired with a ``ToolUsePart`` of the same id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    outcome: Outcome = field(default_factory=Success)

    @property
    def content(self) -> str:
        return self.outcome.render()

    @property
    def is_error(self) -> bool:
        return not self.outcome.ok


ContentPart = TextPart | ToolUsePart | ToolResultPart


@dataclass
class ToolUse:
    """A complete tool invocation with decoded arguments.

    ``arguments_error`` is set when the model emitted arguments that are not
    a JSON object; the dispatcher turns that into a validation failure
    instead of calling the handler.
    """

    id: str
    name: str
    arguments: dict[str, Any]
    arguments_error: str = ""


@dataclass
class TokenUsage:
    """Token usage stats from an LLM call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Message:
    """A conversation message with typed content blocks."""

    role: Literal["system", "user", "assistant", "tool"]
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Concatenated text content."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_uses(self) -> list[ToolUse]:
        """All tool invocations in this message, arguments decoded."""
        uses = []
        for p in self.parts:
            if not isinstance(p, ToolUsePart):
                continue
            error = ""
            try:
                args = json.loads(p.arguments) if p.arguments else {}
            except json.JSONDecodeError as e:
                logger.warning(
                    "Failed to parse tool arguments for %s: %s",
                    p.name,
                    p.arguments[:200],
                )
                args, error = {}, f"arguments are not valid JSON: {e}"
            if not error and not isinstance(args, dict):
                args, error = {}, "arguments must be a JSON object"
            uses.append(
                ToolUse(id=p.id, name=p.name, arguments=args, arguments_error=error)
            )
        return uses

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    # --- Convenience constructors ---

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", parts=[TextPart(text=text)])

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", parts=[TextPart(text=text)])

    @classmethod
    def assistant(
        cls, text: str = "", tool_uses: list[ToolUsePart] | None = None
    ) -> Message:
        parts: list[ContentPart] = []
        if text:
            parts.append(TextPart(text=text))
        if tool_uses:
            parts.extend(tool_uses)
        return cls(role="assistant", parts=parts)

    @classmethod
    def tool_result(cls, tool_use_id: str, outcome: Outcome) -> Message:
        return cls(
            role="tool",
            parts=[ToolResultPart(tool_use_id=tool_use_id, outcome=outcome)],
        )

    def to_openai_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format (the shape litellm accepts)."""
        if self.role == "tool":
            for p in self.parts:
                if isinstance(p, ToolResultPart):
                    return {
                        "role": "tool",
                        "tool_call_id": p.tool_use_id,
                        "content": p.content,
                    }
            return {"role": "tool", "content": ""}

        if self.role == "assistant":
            result: dict[str, Any] = {"role": "assistant"}
            text = self.text
            result["content"] = text if text else None
            uses = [p for p in self.parts if isinstance(p, ToolUsePart)]
            if uses:
                result["tool_calls"] = [
                    {
                        "id": p.id,
                        "type": "function",
                        "function": {"name": p.name, "arguments": p.arguments},
                    }
                    for p in uses
                ]
            return result

        # system or user
        return {"role": self.role, "content": self.text}
