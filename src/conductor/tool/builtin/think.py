"""Think tool: scratchpad for reasoning without acting."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, Field

from conductor.cancel import CancelToken
from conductor.llm.message import Outcome, Success
from conductor.tool.base import BaseTool


class ThinkParams(BaseModel):
    thought: str = Field(
        description=(
            "Your internal reasoning: plan the next tool calls, weigh sources, "
            "or decide what is still missing before answering."
        )
    )


class ThinkTool(BaseTool[ThinkParams]):
    """Records reasoning in the conversation. No side effects."""

    name: ClassVar[str] = "think"
    description: ClassVar[str] = (
        "Think through the request before acting. No side effects, "
        "the thought is only recorded in the conversation."
    )
    param_model: ClassVar[type[BaseModel]] = ThinkParams
    citable: ClassVar[bool] = False

    async def execute(self, params: ThinkParams, cancel: CancelToken) -> Outcome:
        return Success(payload="Thought recorded.")
