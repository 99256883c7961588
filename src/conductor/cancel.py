"""Deadline-based cancellation tokens.

A token is passed into every suspending operation (model calls, tool calls,
subagent loops). Child tokens inherit the parent's cancellation and can only
tighten the deadline, never extend it.
"""

from __future__ import annotations

import time


class CancelToken:
    """Cooperative cancellation with an optional monotonic deadline."""

    def __init__(
        self,
        timeout: float | None = None,
        parent: CancelToken | None = None,
    ) -> None:
        self._parent = parent
        self._cancelled = False
        self._reason = ""
        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self.deadline: float | None = deadline

    def child(self, timeout: float | None = None) -> CancelToken:
        """Derive a token that expires no later than this one."""
        return CancelToken(timeout=timeout, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def reason(self) -> str:
        if self._cancelled:
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "deadline exceeded"
        return ""

    def remaining(self, default: float | None = None) -> float | None:
        """Seconds left before the deadline, capped by ``default``.

        Returns ``default`` when there is no deadline, and ``0.0`` once the
        token is cancelled.
        """
        if self.cancelled:
            return 0.0
        if self.deadline is None:
            return default
        left = max(0.0, self.deadline - time.monotonic())
        return left if default is None else min(left, default)
