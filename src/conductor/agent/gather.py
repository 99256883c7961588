"""Context gathering: memory entries relevant to the current question.

Ranking is keyword overlap, no embeddings. The walk is bounded in entries
read, characters read, directory depth and wall time. Every excerpt that makes
it into the context block is registered as a numbered citation, so the model
can cite memory the same way it cites tool results.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from conductor.agent.citations import CitationCollector
from conductor.agent.verification import extract_keywords
from conductor.cancel import CancelToken
from conductor.memory import MemoryNotFoundError, MemoryPathError, MemoryStore

logger = logging.getLogger(__name__)

MAX_ITEMS = 5
MAX_ENTRIES = 50
MAX_DEPTH = 6
MAX_ENTRY_CHARS = 100_000
MAX_TOTAL_CHARS = 250_000
GATHER_TIMEOUT_SECONDS = 5.0

CONTEXT_HEADER = (
    "## Gathered context\n"
    "Stored notes that may be relevant. Cite them as [n] when you rely on them."
)

_READ_ERRORS = (MemoryNotFoundError, MemoryPathError, OSError, UnicodeDecodeError)


@dataclass
class GatheredItem:
    path: str
    score: int
    excerpt: str


def score_overlap(keywords: set[str], text: str) -> int:
    """Number of query keywords that appear in ``text``."""
    return len(keywords & set(extract_keywords(text)))


def find_excerpt(content: str, keywords: set[str]) -> str:
    """A window around the earliest keyword hit, or the head of the entry."""
    lowered = content.lower()
    hits = [i for i in (lowered.find(k) for k in keywords) if i != -1]
    if not hits:
        return content if len(content) <= 300 else content[:300] + "..."
    first = min(hits)
    start = max(0, first - 150)
    end = min(len(content), first + 250)
    excerpt = content[start:end]
    return ("..." if start > 0 else "") + excerpt + ("..." if end < len(content) else "")


class ContextGatherer:
    """Ranks memory store entries against the user's message."""

    source = "memory"

    def __init__(
        self,
        store: MemoryStore,
        max_items: int = MAX_ITEMS,
        max_entries: int = MAX_ENTRIES,
        max_depth: int = MAX_DEPTH,
        timeout_seconds: float = GATHER_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self.max_items = max_items
        self.max_entries = max_entries
        self.max_depth = max_depth
        self.timeout_seconds = timeout_seconds

    async def gather(
        self,
        query: str,
        citations: CitationCollector,
        cancel: CancelToken | None = None,
    ) -> str:
        """Return a context block for ``query``, or ``""`` when nothing matches.

        Each included entry is added to ``citations`` and labelled with its id.
        """
        keywords = set(extract_keywords(query))
        if not keywords:
            return ""
        if cancel is not None and cancel.cancelled:
            return ""

        timeout = (
            cancel.remaining(self.timeout_seconds)
            if cancel is not None
            else self.timeout_seconds
        )
        try:
            items = await asyncio.wait_for(self._rank(keywords), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Context gather timed out, continuing without it")
            return ""
        if not items:
            return ""

        lines = [CONTEXT_HEADER]
        for item in items:
            citation = citations.add(source=self.source, title=item.path, excerpt=item.excerpt)
            lines.append(f"\n[{citation.id}] {item.path}\n{item.excerpt}")
        logger.info("Gathered %d memory item(s) for the turn", len(items))
        return "\n".join(lines)

    async def _rank(self, keywords: set[str]) -> list[GatheredItem]:
        scored: list[GatheredItem] = []
        entries_read = 0
        chars_read = 0
        queue: deque[tuple[str, int]] = deque([("", 0)])

        while queue and entries_read < self.max_entries:
            directory, depth = queue.popleft()
            try:
                listing = await self._store.view(directory)
            except _READ_ERRORS as e:
                logger.debug("Skipping memory directory %r: %s", directory, e)
                continue

            for name in listing.splitlines():
                if not name:
                    continue
                path = f"{directory}{name}"
                if name.endswith("/"):
                    if depth < self.max_depth:
                        queue.append((path, depth + 1))
                    continue
                if entries_read >= self.max_entries or chars_read >= MAX_TOTAL_CHARS:
                    break

                try:
                    content = await self._store.view(path)
                except _READ_ERRORS as e:
                    logger.debug("Skipping memory entry %r: %s", path, e)
                    continue
                entries_read += 1
                if len(content) > MAX_ENTRY_CHARS:
                    continue
                chars_read += len(content)

                score = score_overlap(keywords, f"{path} {content}")
                if score > 0:
                    scored.append(GatheredItem(path, score, find_excerpt(content, keywords)))

        # Stable sort: ties keep walk order.
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[: self.max_items]
