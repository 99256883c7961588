"""Shared fakes: a scripted chat provider and a few tools."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any, ClassVar

import pytest
from pydantic import BaseModel

from conductor.cancel import CancelToken
from conductor.llm.message import Failure, FailureKind, Outcome, Success
from conductor.llm.provider import ProviderConfig
from conductor.tool.base import BaseTool
from conductor.tool.registry import ToolRegistry

Chunks = list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Scripted replies
# ---------------------------------------------------------------------------


def text_reply(text: str) -> Chunks:
    """Chunks for a plain text answer, streamed in two pieces."""
    half = len(text) // 2
    chunks: Chunks = []
    for piece in (text[:half], text[half:]):
        if piece:
            chunks.append({"finish_reason": None, "delta": {"content": piece}})
    chunks.append(
        {
            "finish_reason": "stop",
            "delta": {},
            "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        }
    )
    return chunks


def tool_reply(*calls: tuple[str, str, Any], text: str = "") -> Chunks:
    """Chunks for a reply with tool uses: ``(id, name, arguments)`` each.

    ``arguments`` may be a dict (JSON-encoded here) or a raw string.
    """
    chunks: Chunks = []
    if text:
        chunks.append({"finish_reason": None, "delta": {"content": text}})
    for index, (call_id, name, arguments) in enumerate(calls):
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        chunks.append(
            {
                "finish_reason": None,
                "delta": {
                    "tool_calls": [
                        {
                            "index": index,
                            "id": call_id,
                            "function": {"name": name, "arguments": raw},
                        }
                    ]
                },
            }
        )
    chunks.append({"finish_reason": "tool_calls", "delta": {}})
    return chunks


Reply = Chunks | BaseException | Callable[[int], Any]


class ScriptedProvider:
    """A ChatProvider that plays back one scripted reply per ``stream`` call.

    A reply is a chunk list, an exception to raise, or a callable taking the
    call index and returning either. When the script runs out, ``default``
    is used.
    """

    def __init__(
        self,
        replies: list[Reply] | None = None,
        default: Reply | None = None,
        delay: float = 0.0,
        context_window: int = 200_000,
    ) -> None:
        self._replies = list(replies or [])
        self._default = default
        self.delay = delay
        self._config = ProviderConfig(model="test/scripted", context_window=context_window)
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.peak = 0

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ):
        index = len(self.calls)
        self.calls.append({"system": system, "messages": messages, "tools": tools})
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            reply = self._replies.pop(0) if self._replies else self._default
            if callable(reply) and not isinstance(reply, BaseException):
                reply = reply(index)
            if reply is None:
                reply = text_reply("")
            if isinstance(reply, BaseException):
                raise reply
            for chunk in reply:
                yield chunk
        finally:
            self.active -= 1


def assert_tool_uses_paired(messages: list[dict[str, Any]]) -> None:
    """Every assistant tool call is answered before the next assistant turn."""
    pending: list[str] = []
    for msg in messages:
        if msg["role"] == "assistant":
            assert not pending, f"unanswered tool calls: {pending}"
            pending = [tc["id"] for tc in msg.get("tool_calls") or []]
        elif msg["role"] == "tool":
            assert msg["tool_call_id"] in pending
            pending.remove(msg["tool_call_id"])
    assert not pending, f"unanswered tool calls: {pending}"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class EchoParams(BaseModel):
    text: str = ""


class EchoTool(BaseTool[EchoParams]):
    name: ClassVar[str] = "echo"
    description: ClassVar[str] = "Echo the text back"
    param_model: ClassVar[type[BaseModel]] = EchoParams

    async def execute(self, params: EchoParams, cancel: CancelToken) -> Outcome:
        return Success(payload=f"echo: {params.text}")


class LookupParams(BaseModel):
    key: str


class MissingTool(BaseTool[LookupParams]):
    """Always reports that the key does not exist."""

    name: ClassVar[str] = "lookup"
    description: ClassVar[str] = "Look a key up"
    param_model: ClassVar[type[BaseModel]] = LookupParams

    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, params: LookupParams, cancel: CancelToken) -> Outcome:
        self.calls += 1
        return Failure(FailureKind.NOT_FOUND, f"No entry for {params.key}")


class FlakyParams(BaseModel):
    pass


class FlakyTool(BaseTool[FlakyParams]):
    """Times out ``failures`` times, then succeeds."""

    name: ClassVar[str] = "flaky"
    description: ClassVar[str] = "Sometimes times out"
    param_model: ClassVar[type[BaseModel]] = FlakyParams

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, params: FlakyParams, cancel: CancelToken) -> Outcome:
        self.calls += 1
        if self.calls <= self.failures:
            raise TimeoutError("upstream timed out")
        return Success(payload="finally")


class SleepParams(BaseModel):
    seconds: float = 0.05


class SleepTool(BaseTool[SleepParams]):
    """Sleeps, tracking how many calls run at once."""

    name: ClassVar[str] = "sleep"
    description: ClassVar[str] = "Sleep for a while"
    param_model: ClassVar[type[BaseModel]] = SleepParams

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def execute(self, params: SleepParams, cancel: CancelToken) -> Outcome:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(params.seconds)
        finally:
            self.active -= 1
        return Success(payload=f"slept {params.seconds}")


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([EchoTool(), MissingTool(), SleepTool()]).freeze()
