"""Base tool classes with Pydantic parameter validation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from conductor.cancel import CancelToken
from conductor.llm.message import Failure, FailureKind, Outcome, Success
from conductor.tool.errors import classify_exception
from conductor.tool.truncation import truncate_output

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class BaseTool(ABC, Generic[T]):
    """Base class for all tools.

    Each tool declares its parameters as a Pydantic model and returns an
    outcome value. Nothing a tool does can raise past ``__call__``:
    validation errors become non-retryable ``INVALID_ARGUMENTS`` failures,
    and any exception from ``execute`` is classified into a ``Failure``.

    Usage:
        class LookupParams(BaseModel):
            key: str

        class LookupTool(BaseTool[LookupParams]):
            name = "lookup"
            description = "Look a key up"
            param_model = LookupParams

            async def execute(self, params, cancel):
                return Success(payload="value")
    """

    name: ClassVar[str]
    description: ClassVar[str]
    param_model: ClassVar[type[BaseModel]]
    # Successful results become numbered citations.
    citable: ClassVar[bool] = True

    async def __call__(
        self, arguments: dict[str, Any], cancel: CancelToken | None = None
    ) -> Outcome:
        """Validate arguments, execute, and bound the payload size."""
        try:
            params = self.param_model.model_validate(arguments)
        except ValidationError as e:
            return Failure(
                FailureKind.INVALID_ARGUMENTS,
                f"Invalid parameters for {self.name}: {e}",
                retryable=False,
            )

        try:
            outcome = await self.execute(params, cancel or CancelToken())  # type: ignore[arg-type]
        except Exception as e:
            logger.error("Tool %s execution error: %s", self.name, e, exc_info=True)
            return classify_exception(e)

        if isinstance(outcome, Success) and isinstance(outcome.payload, str):
            return Success(payload=truncate_output(outcome.payload))
        return outcome

    @abstractmethod
    async def execute(self, params: T, cancel: CancelToken) -> Outcome:
        """Execute the tool with validated parameters."""
        ...

    def to_openai_spec(self) -> dict[str, Any]:
        """Convert to OpenAI function tool specification."""
        schema = self.param_model.model_json_schema()
        # LLMs don't need the title pydantic adds
        schema.pop("title", None)

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }
