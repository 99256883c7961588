"""Tests for conductor.agent.gather (memory context for a turn)."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from conductor.agent.citations import CitationCollector
from conductor.agent.gather import CONTEXT_HEADER, ContextGatherer, find_excerpt, score_overlap
from conductor.cancel import CancelToken
from conductor.memory import FileMemoryStore

QUESTION = "What is the refund window for annual plans?"


@pytest.fixture
def store(tmp_path: Path) -> FileMemoryStore:
    return FileMemoryStore(tmp_path / "memory")


class _SlowStore:
    def __init__(self, inner: FileMemoryStore, delay: float) -> None:
        self._inner = inner
        self.delay = delay

    async def view(self, path: str) -> str:
        await asyncio.sleep(self.delay)
        return await self._inner.view(path)


class _CountingStore:
    def __init__(self, inner: FileMemoryStore) -> None:
        self._inner = inner
        self.viewed: list[str] = []

    async def view(self, path: str) -> str:
        self.viewed.append(path)
        return await self._inner.view(path)


# ---------------------------------------------------------------------------
# Scoring and excerpts
# ---------------------------------------------------------------------------


class TestScoring:
    def test_overlap_counts_distinct_keywords(self) -> None:
        keywords = {"refund", "annual", "plans"}
        assert score_overlap(keywords, "Annual plans, annual PLANS!") == 2
        assert score_overlap(keywords, "monthly billing") == 0

    def test_excerpt_of_short_entry_is_whole(self) -> None:
        assert find_excerpt("no match here", {"refund"}) == "no match here"

    def test_excerpt_without_hit_is_head(self) -> None:
        content = "x" * 500
        assert find_excerpt(content, {"refund"}) == "x" * 300 + "..."

    def test_excerpt_window_around_first_hit(self) -> None:
        content = "a" * 400 + "refund" + "b" * 400
        excerpt = find_excerpt(content, {"refund"})

        assert excerpt.startswith("...")
        assert excerpt.endswith("...")
        assert "refund" in excerpt
        assert len(excerpt) == 400 + 6

    def test_excerpt_is_case_insensitive(self) -> None:
        assert find_excerpt("REFUND policy", {"refund"}) == "REFUND policy"


# ---------------------------------------------------------------------------
# Gathering
# ---------------------------------------------------------------------------


class TestGather:
    async def test_block_lists_cited_entries(self, store: FileMemoryStore) -> None:
        await store.create("billing/refunds.md", "Annual plans are refundable within 30 days.")
        await store.create("recipes/pasta.md", "Boil salted water first.")
        citations = CitationCollector()

        block = await ContextGatherer(store).gather(QUESTION, citations)

        assert block.startswith(CONTEXT_HEADER)
        assert "[1] billing/refunds.md\nAnnual plans are refundable within 30 days." in block
        assert "pasta" not in block
        assert [(c.id, c.source, c.title) for c in citations.citations] == [
            (1, "memory", "billing/refunds.md")
        ]

    async def test_best_match_first_and_capped(self, store: FileMemoryStore) -> None:
        await store.create("a.md", "annual report")
        await store.create("b.md", "refund window for annual plans")
        await store.create("c.md", "annual plans")
        citations = CitationCollector()

        await ContextGatherer(store, max_items=2).gather(QUESTION, citations)

        assert [c.title for c in citations.citations] == ["b.md", "c.md"]

    async def test_numbering_continues_existing_citations(self, store: FileMemoryStore) -> None:
        await store.create("refunds.md", "annual plans")
        citations = CitationCollector()
        citations.add(source="echo", title="earlier")

        block = await ContextGatherer(store).gather(QUESTION, citations)

        assert "[2] refunds.md" in block

    async def test_nested_directories_within_depth(self, store: FileMemoryStore) -> None:
        await store.create("a/b/c/refunds.md", "annual plans")
        citations = CitationCollector()

        await ContextGatherer(store, max_depth=3).gather(QUESTION, citations)
        assert [c.title for c in citations.citations] == ["a/b/c/refunds.md"]

        shallow = CitationCollector()
        await ContextGatherer(store, max_depth=2).gather(QUESTION, shallow)
        assert len(shallow) == 0

    async def test_entries_read_are_bounded(self, store: FileMemoryStore) -> None:
        for i in range(10):
            await store.create(f"note{i}.md", "annual plans")
        counting = _CountingStore(store)

        await ContextGatherer(counting, max_entries=3).gather(QUESTION, CitationCollector())

        assert [p for p in counting.viewed if p.endswith(".md")] == [
            "note0.md",
            "note1.md",
            "note2.md",
        ]

    async def test_no_keywords_reads_nothing(self, store: FileMemoryStore) -> None:
        counting = _CountingStore(store)
        block = await ContextGatherer(counting).gather("is it?", CitationCollector())

        assert block == ""
        assert counting.viewed == []

    async def test_empty_store(self, store: FileMemoryStore) -> None:
        citations = CitationCollector()
        assert await ContextGatherer(store).gather(QUESTION, citations) == ""
        assert len(citations) == 0


# ---------------------------------------------------------------------------
# Time bounds
# ---------------------------------------------------------------------------


class TestTimeBounds:
    async def test_slow_store_times_out(self, store: FileMemoryStore) -> None:
        await store.create("refunds.md", "annual plans")
        citations = CitationCollector()
        gatherer = ContextGatherer(_SlowStore(store, delay=1.0), timeout_seconds=0.1)

        start = time.monotonic()
        block = await gatherer.gather(QUESTION, citations)

        assert time.monotonic() - start < 0.5
        assert block == ""
        assert len(citations) == 0

    async def test_turn_deadline_tightens_timeout(self, store: FileMemoryStore) -> None:
        await store.create("refunds.md", "annual plans")
        gatherer = ContextGatherer(_SlowStore(store, delay=1.0), timeout_seconds=30)

        start = time.monotonic()
        block = await gatherer.gather(QUESTION, CitationCollector(), CancelToken(timeout=0.1))

        assert time.monotonic() - start < 0.5
        assert block == ""

    async def test_cancelled_token_skips(self, store: FileMemoryStore) -> None:
        await store.create("refunds.md", "annual plans")
        counting = _CountingStore(store)
        cancel = CancelToken()
        cancel.cancel("user left")

        block = await ContextGatherer(counting).gather(QUESTION, CitationCollector(), cancel)

        assert block == ""
        assert counting.viewed == []
