"""Memory tool: expose the path-addressed memory store to the model."""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import BaseModel, Field

from conductor.cancel import CancelToken
from conductor.llm.message import Failure, FailureKind, Outcome, Success
from conductor.memory import (
    MemoryExistsError,
    MemoryNotFoundError,
    MemoryPathError,
    MemoryStore,
)
from conductor.tool.base import BaseTool


class MemoryParams(BaseModel):
    command: Literal["view", "create", "update", "delete"] = Field(
        description=(
            "'view' reads an entry or lists a directory, 'create' writes a new "
            "entry, 'update' replaces an existing entry, 'delete' removes one."
        )
    )
    path: str = Field(
        default="",
        description="Relative path such as 'preferences/user.md'. Empty lists the root.",
    )
    content: str = Field(
        default="", description="New content for 'create' and 'update'."
    )


class MemoryTool(BaseTool[MemoryParams]):
    """Read and write persistent memory entries."""

    name: ClassVar[str] = "memory"
    description: ClassVar[str] = (
        "Persistent memory shared across conversations. View, create, update "
        "or delete entries addressed by path. Check memory before asking the "
        "user for something they may have told you already."
    )
    param_model: ClassVar[type[BaseModel]] = MemoryParams
    citable: ClassVar[bool] = False

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    async def execute(self, params: MemoryParams, cancel: CancelToken) -> Outcome:
        try:
            if params.command == "view":
                content = await self._store.view(params.path)
                return Success(payload=content or "(empty)")
            if params.command == "create":
                await self._store.create(params.path, params.content)
                return Success(payload=f"Created {params.path}")
            if params.command == "update":
                await self._store.update(params.path, params.content)
                return Success(payload=f"Updated {params.path}")
            await self._store.delete(params.path)
            return Success(payload=f"Deleted {params.path}")
        except MemoryNotFoundError as e:
            return Failure(FailureKind.NOT_FOUND, str(e))
        except (MemoryPathError, MemoryExistsError) as e:
            return Failure(FailureKind.INVALID_ARGUMENTS, str(e))
