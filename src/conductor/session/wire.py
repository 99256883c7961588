"""Wire protocol: decouples the agent loop from whoever renders its output.

Events flow from the loop to subscribers. A chat transport, the CLI and
tests all consume the same event stream.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    TURN_BEGIN = "turn_begin"
    TURN_END = "turn_end"
    PHASE = "phase"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    SUBAGENT_BEGIN = "subagent_begin"
    SUBAGENT_END = "subagent_end"
    COMPACTION = "compaction"
    VERIFICATION = "verification"
    ERROR = "error"
    STATUS = "status"
    FINAL = "final"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: agent loop -> subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_text(self, text: str) -> None:
        self.send(WireEvent(type=EventType.TEXT, data={"text": text}))

    def send_status(self, message: str) -> None:
        self.send(WireEvent(type=EventType.STATUS, data={"message": message}))

    def send_error(self, error: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"error": error}))

    def send_phase(self, phase: str, iteration: int) -> None:
        self.send(
            WireEvent(
                type=EventType.PHASE, data={"phase": phase, "iteration": iteration}
            )
        )

    def send_tool_use(self, tool_use_id: str, name: str, arguments: dict[str, Any]) -> None:
        self.send(
            WireEvent(
                type=EventType.TOOL_USE,
                data={"id": tool_use_id, "name": name, "arguments": arguments},
            )
        )

    def send_tool_result(
        self, tool_use_id: str, name: str, content: str, is_error: bool
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.TOOL_RESULT,
                data={
                    "id": tool_use_id,
                    "name": name,
                    "content": content[:500],
                    "is_error": is_error,
                },
            )
        )

    def send_verification(self, passed: bool, attempt: int, feedback: str) -> None:
        self.send(
            WireEvent(
                type=EventType.VERIFICATION,
                data={"passed": passed, "attempt": attempt, "feedback": feedback},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
