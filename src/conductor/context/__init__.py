"""Conversation: the ordered message history of one thread."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles

from conductor.llm.message import (
    Failure,
    FailureKind,
    Message,
    Outcome,
    Success,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompactionCheckpoint:
    """Marks the summary that replaced a prefix of the conversation."""

    summary_text: str
    cutoff_index: int
    estimated_tokens: int


@dataclass
class Conversation:
    """Append-only message history owned by one agent loop invocation.

    Compaction never edits a conversation in place; it returns a new one
    whose first message is the summary.
    """

    messages: list[Message] = field(default_factory=list)
    thread_id: str = ""
    checkpoint: CompactionCheckpoint | None = None

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def extend(self, messages: list[Message]) -> None:
        self.messages.extend(messages)

    def get_messages(self) -> list[Message]:
        """Messages for the model (a shallow copy of the list)."""
        return list(self.messages)

    def copy(self) -> Conversation:
        """A fully independent copy; no message storage is shared."""
        return Conversation(
            messages=copy.deepcopy(self.messages),
            thread_id=self.thread_id,
            checkpoint=self.checkpoint,
        )

    def pending_tool_uses(self) -> list[str]:
        """Ids of tool uses that have no matching tool result yet."""
        pending: dict[str, None] = {}
        for msg in self.messages:
            for part in msg.parts:
                if isinstance(part, ToolUsePart):
                    pending[part.id] = None
                elif isinstance(part, ToolResultPart):
                    pending.pop(part.tool_use_id, None)
        return list(pending)

    def estimate_tokens(self) -> int:
        """Rough token estimate: ~4 characters per token."""
        return estimate_message_tokens(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    async def save(self, path: Path) -> None:
        """Write the conversation to a JSONL file, one message per line."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            for msg in self.messages:
                await f.write(json.dumps(_message_to_dict(msg), ensure_ascii=False) + "\n")

    @classmethod
    async def restore(cls, path: Path, thread_id: str = "") -> Conversation:
        """Load a conversation saved with ``save``. Missing files give an empty one."""
        conv = cls(thread_id=thread_id)
        path = Path(path)
        if not path.exists():
            return conv

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed JSONL line in %s", path)
                    continue
                if "role" in data:
                    conv.messages.append(_dict_to_message(data))
        return conv


def estimate_message_tokens(messages: list[Message]) -> int:
    total_chars = sum(len(json.dumps(_message_to_dict(m))) for m in messages)
    return total_chars // 4


def _outcome_to_dict(outcome: Outcome) -> dict[str, Any]:
    if isinstance(outcome, Success):
        return {"ok": True, "payload": outcome.payload}
    return {
        "ok": False,
        "kind": outcome.kind.value,
        "message": outcome.message,
        "retryable": outcome.retryable,
    }


def _dict_to_outcome(data: dict[str, Any]) -> Outcome:
    if data.get("ok", True):
        return Success(payload=data.get("payload", ""))
    return Failure(
        kind=FailureKind(data.get("kind", FailureKind.EXECUTION_FAILED.value)),
        message=data.get("message", ""),
        retryable=data.get("retryable", False),
    )


def _message_to_dict(msg: Message) -> dict[str, Any]:
    """Serialize a Message to a dict for JSONL storage."""
    result: dict[str, Any] = {"role": msg.role}

    text = msg.text
    if text:
        result["content"] = text

    uses = [p for p in msg.parts if isinstance(p, ToolUsePart)]
    if uses:
        result["tool_uses"] = [
            {"id": p.id, "name": p.name, "arguments": p.arguments} for p in uses
        ]

    results = msg.tool_results
    if results:
        result["tool_results"] = [
            {"tool_use_id": p.tool_use_id, "outcome": _outcome_to_dict(p.outcome)}
            for p in results
        ]

    return result


def _dict_to_message(data: dict[str, Any]) -> Message:
    """Deserialize a dict from JSONL to a Message."""
    parts: list[Any] = []
    if data.get("content"):
        parts.append(TextPart(text=data["content"]))
    for tu in data.get("tool_uses", []):
        parts.append(
            ToolUsePart(
                id=tu.get("id", ""),
                name=tu.get("name", ""),
                arguments=tu.get("arguments", ""),
            )
        )
    for tr in data.get("tool_results", []):
        parts.append(
            ToolResultPart(
                tool_use_id=tr.get("tool_use_id", ""),
                outcome=_dict_to_outcome(tr.get("outcome", {})),
            )
        )
    return Message(role=data["role"], parts=parts)
