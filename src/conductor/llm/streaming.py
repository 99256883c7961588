"""Streaming generation primitive."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from conductor.llm.message import (
    ContentPart,
    Message,
    TextPart,
    TokenUsage,
    ToolUse,
    ToolUsePart,
)
from conductor.llm.provider import ChatProvider

logger = logging.getLogger(__name__)

# Type alias for tool specs in OpenAI format
ToolSpec = dict[str, Any]

OnText = Callable[[str], None] | None
OnToolUse = Callable[[str, str, str], None] | None  # (tool_use_id, name, arguments)


@dataclass
class GenerateResult:
    """Result of a single LLM generation."""

    message: Message
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None

    @property
    def tool_uses(self) -> list[ToolUse]:
        return self.message.tool_uses

    @property
    def has_tool_uses(self) -> bool:
        return len(self.tool_uses) > 0


async def generate(
    provider: ChatProvider,
    system: str,
    messages: list[Message],
    tools: list[ToolSpec] | None = None,
    on_text: OnText = None,
    on_tool_use: OnToolUse = None,
) -> GenerateResult:
    """Stream one LLM response into a single assistant message.

    One API call, one assistant message. Text deltas are published through
    ``on_text`` as they arrive; tool uses are reported once complete.
    """
    api_messages = [m.to_openai_dict() for m in messages]

    text_buffer = ""
    tool_buffers: dict[int, dict[str, Any]] = {}  # index -> {id, name, arguments}
    usage = TokenUsage()
    finish_reason = None

    async for chunk in provider.stream(system, api_messages, tools):
        fr = chunk.get("finish_reason")
        if fr:
            finish_reason = fr

        delta = chunk.get("delta", {})

        content = delta.get("content")
        if content:
            text_buffer += content
            if on_text:
                on_text(content)
                # Let stream subscribers run between chunks.
                await asyncio.sleep(0)

        for tc_delta in delta.get("tool_calls") or []:
            idx = tc_delta.get("index", 0)
            buf = tool_buffers.setdefault(idx, {"id": "", "name": "", "arguments": ""})
            if tc_delta.get("id"):
                buf["id"] = tc_delta["id"]
            func = tc_delta.get("function") or {}
            if func.get("name"):
                buf["name"] = func["name"]
            if func.get("arguments"):
                buf["arguments"] += func["arguments"]

        if chunk.get("usage"):
            u = chunk["usage"]
            usage = TokenUsage(
                input_tokens=u.get("prompt_tokens", 0),
                output_tokens=u.get("completion_tokens", 0),
                total_tokens=u.get("total_tokens", 0),
            )

    parts: list[ContentPart] = []
    if text_buffer:
        parts.append(TextPart(text=text_buffer))

    for idx in sorted(tool_buffers):
        buf = tool_buffers[idx]
        if not buf["id"]:
            # Some providers omit ids; pairing needs one.
            buf["id"] = f"call_{idx}"
        parts.append(
            ToolUsePart(id=buf["id"], name=buf["name"], arguments=buf["arguments"])
        )
        if on_tool_use:
            on_tool_use(buf["id"], buf["name"], buf["arguments"])

    message = Message(role="assistant", parts=parts)
    return GenerateResult(message=message, usage=usage, finish_reason=finish_reason)
