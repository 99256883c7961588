"""Citations: numbered sources gathered from successful tool results."""

from __future__ import annotations

import re
from dataclasses import dataclass

_MARKER = re.compile(r"\[(\d+)\]")
_FOOTER = re.compile(r"\bSources:", re.IGNORECASE)


@dataclass(frozen=True)
class Citation:
    """A source the response may cite as ``[id]``. Ids start at 1."""

    id: int
    source: str
    title: str
    excerpt: str = ""


class CitationCollector:
    """Numbers sources in the order they are gathered during a turn."""

    def __init__(self) -> None:
        self._citations: list[Citation] = []

    def add(self, source: str, title: str, excerpt: str = "") -> Citation:
        citation = Citation(
            id=len(self._citations) + 1,
            source=source,
            title=title,
            excerpt=excerpt[:200],
        )
        self._citations.append(citation)
        return citation

    @property
    def citations(self) -> list[Citation]:
        return list(self._citations)

    def __len__(self) -> int:
        return len(self._citations)


def cited_ids(text: str) -> list[int]:
    """Unique ``[n]`` marker ids in order of first appearance."""
    seen: dict[int, None] = {}
    for match in _MARKER.finditer(text):
        n = int(match.group(1))
        if n > 0:
            seen[n] = None
    return list(seen)


def has_citations(text: str) -> bool:
    """True if the text has an inline ``[n]`` marker or a ``Sources:`` footer."""
    return bool(cited_ids(text)) or bool(_FOOTER.search(text))


def format_citation_footer(citations: list[Citation]) -> str:
    if not citations:
        return ""
    lines = [f"- [{c.id}] {c.title}" for c in citations]
    return "\n\nSources:\n" + "\n".join(lines)
