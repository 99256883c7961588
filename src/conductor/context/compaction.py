"""Context compaction: fold an over-long history into one summary message.

The compactor replaces the oldest contiguous prefix of a conversation with a
single system message and keeps the most recent messages verbatim. The
cutoff only ever lands on a boundary where every tool use before it already
has its result before it; if the natural cutoff would strand a pair, the
cutoff moves earlier.

Running ``maybe_compact`` on its own output is a no-op: a prefix that holds
nothing but the previous summary is never re-summarized.
"""

from __future__ import annotations

import asyncio
import logging
import math

from conductor.cancel import CancelToken
from conductor.context import CompactionCheckpoint, Conversation, estimate_message_tokens
from conductor.llm.message import Message, TextPart, ToolResultPart, ToolUsePart
from conductor.llm.provider import ChatProvider
from conductor.llm.streaming import generate
from conductor.tracing import Tracer

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"
DEFAULT_THRESHOLD = 0.8
DEFAULT_KEEP_RECENT = 5

COMPACTION_SYSTEM = """\
You are a context compactor for an assistant. Summarize the conversation so \
far into a compact, information-dense summary that replaces the original \
messages.

Use these sections:
- Preferences: how the user wants things done.
- Facts & Decisions: what was established or agreed.
- Open Items: questions and tasks still pending.
- Key Context: anything else needed to continue.

Summarize tool outputs by their conclusions, not raw data. Use bullet points.
"""

COMPACTION_USER_TEMPLATE = """\
Summarize the following conversation. The summary will replace it.

---

{conversation}
"""


def is_summary_message(message: Message) -> bool:
    return message.role == "system" and message.text.startswith(SUMMARY_PREFIX)


def find_cutoff(messages: list[Message], keep_recent: int) -> int:
    """Largest index ``c <= len - keep_recent`` that does not split a tool pair.

    Returns 0 when no such boundary exists.
    """
    target = len(messages) - keep_recent
    if target <= 0:
        return 0

    # safe[c] is True when every tool use in messages[:c] is answered in messages[:c]
    safe = [True]
    open_ids: set[str] = set()
    for msg in messages[:target]:
        for part in msg.parts:
            if isinstance(part, ToolUsePart):
                open_ids.add(part.id)
            elif isinstance(part, ToolResultPart):
                open_ids.discard(part.tool_use_id)
        safe.append(not open_ids)

    for c in range(target, 0, -1):
        if safe[c]:
            return c
    return 0


class Compactor:
    """Summarizes old conversation prefixes with a (usually cheap) model."""

    def __init__(
        self,
        summarizer: ChatProvider,
        context_window: int,
        threshold: float = DEFAULT_THRESHOLD,
        keep_recent: int = DEFAULT_KEEP_RECENT,
        tracer: Tracer | None = None,
    ) -> None:
        self._summarizer = summarizer
        self.context_window = context_window
        self.threshold = threshold
        self.keep_recent = keep_recent
        self._tracer = tracer or Tracer()

    def token_budget(self, threshold: float | None = None) -> int:
        if threshold is None:
            threshold = self.threshold
        return math.floor(self.context_window * threshold)

    def should_compact(
        self, conversation: Conversation, threshold: float | None = None, reserved: int = 0
    ) -> bool:
        return conversation.estimate_tokens() + reserved >= self.token_budget(threshold)

    async def maybe_compact(
        self,
        conversation: Conversation,
        threshold: float | None = None,
        cancel: CancelToken | None = None,
        reserved: int = 0,
    ) -> Conversation:
        """Return a compacted conversation, or ``conversation`` itself if none is needed.

        ``reserved`` counts tokens outside the conversation (the system prompt)
        toward the budget. A failed summarization leaves the history unchanged.
        """
        if not self.should_compact(conversation, threshold, reserved):
            return conversation

        messages = conversation.messages
        start = 1 if messages and is_summary_message(messages[0]) else 0
        cutoff = find_cutoff(messages, self.keep_recent)
        if cutoff <= start:
            logger.debug(
                "Nothing to compact: cutoff %d, %d message(s)", cutoff, len(messages)
            )
            return conversation

        span = self._tracer.start("compaction", messages=len(messages), cutoff=cutoff)
        summary = await self._summarize(messages[:cutoff], cancel)
        if not summary:
            span.end(ok=False)
            return conversation

        summary_msg = Message.system(f"{SUMMARY_PREFIX}\n\n{summary}")
        kept = messages[cutoff:]
        estimated = estimate_message_tokens([summary_msg, *kept])
        compacted = Conversation(
            messages=[summary_msg, *kept],
            thread_id=conversation.thread_id,
            checkpoint=CompactionCheckpoint(
                summary_text=summary, cutoff_index=cutoff, estimated_tokens=estimated
            ),
        )
        logger.info(
            "Compacted %d messages into %d-char summary (~%d tokens left)",
            cutoff,
            len(summary),
            estimated,
        )
        span.end(ok=True, summarized=cutoff, estimated_tokens=estimated)
        return compacted

    async def _summarize(
        self, messages: list[Message], cancel: CancelToken | None
    ) -> str:
        conversation_text = _render_messages_for_summary(messages)
        if not conversation_text.strip():
            return ""
        if cancel is not None and cancel.cancelled:
            return ""

        prompt = COMPACTION_USER_TEMPLATE.format(conversation=conversation_text)
        try:
            result = await asyncio.wait_for(
                generate(
                    provider=self._summarizer,
                    system=COMPACTION_SYSTEM,
                    messages=[Message.user(prompt)],
                ),
                timeout=cancel.remaining() if cancel is not None else None,
            )
        except asyncio.TimeoutError:
            logger.warning("Compaction summary hit the turn deadline, keeping full history")
            return ""
        except Exception as e:
            logger.warning("Compaction summary failed, keeping full history: %s", e)
            return ""

        summary = result.message.text.strip()
        if not summary:
            logger.warning("Compaction produced empty summary")
        return summary


def _render_messages_for_summary(
    messages: list[Message], max_chars: int = 50000
) -> str:
    """Render messages as readable text for the summarizer.

    Truncates individual messages to avoid overwhelming it.
    """
    lines: list[str] = []
    total_chars = 0

    for msg in messages:
        if total_chars >= max_chars:
            lines.append("[... earlier messages omitted for brevity]")
            break

        role = msg.role.upper()
        for part in msg.parts:
            if isinstance(part, TextPart):
                text = part.text[:2000]
                lines.append(f"[{role}]: {text}")
                total_chars += len(text)
            elif isinstance(part, ToolUsePart):
                lines.append(f"[{role} TOOL USE]: {part.name}({part.arguments[:200]})")
                total_chars += 50 + len(part.name)
            elif isinstance(part, ToolResultPart):
                content = part.content
                if len(content) > 1000:
                    content = content[:1000] + f"... [{len(part.content)} chars total]"
                error_tag = " [ERROR]" if part.is_error else ""
                lines.append(f"[TOOL RESULT{error_tag}]: {content}")
                total_chars += len(content)

    return "\n\n".join(lines)
