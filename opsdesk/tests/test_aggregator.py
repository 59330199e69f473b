"""Tests for SourceAggregator fan-out, timeouts and merge ordering."""

import asyncio
import logging

import pytest

from conftest import FakeEmbedder, make_item


class StaticConnector:
    """Connector returning fixed (id, score) pairs"""

    def __init__(self, name, scored, delay=0.0, error=None):
        self.name = name
        self._scored = scored
        self._delay = delay
        self._error = error
        self.queries = []

    async def search(self, query, k=5):
        from opsdesk.retriever.connector import SearchResult

        self.queries.append((query, k))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        results = [
            SearchResult(item=make_item(item_id, item_id.title()), score=score, source="someone-else")
            for item_id, score in self._scored
        ]
        return results[:k]


class TestSearchAll:
    @pytest.mark.asyncio
    async def test_merges_by_score_and_tags_source(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        aggregator = SourceAggregator([
            StaticConnector("articles", [("a1", 0.9), ("a2", 0.4)]),
            StaticConnector("tickets", [("t1", 0.7)]),
        ])
        results = await aggregator.search_all("vpn")

        assert [r.item_id for r in results] == ["a1", "t1", "a2"]
        assert [r.source for r in results] == ["articles", "tickets", "articles"]

    @pytest.mark.asyncio
    async def test_total_cap_and_per_source_k(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        articles = StaticConnector("articles", [(f"a{i}", 1.0 - i / 10) for i in range(5)])
        wiki = StaticConnector("wiki", [(f"w{i}", 0.95 - i / 10) for i in range(5)])
        aggregator = SourceAggregator([articles, wiki])

        results = await aggregator.search_all("vpn", per_source_k=3, total_cap=4)
        assert len(results) == 4
        assert articles.queries == [("vpn", 3)]
        assert [r.item_id for r in results] == ["a0", "w0", "a1", "w1"]

    @pytest.mark.asyncio
    async def test_equal_scores_break_ties_by_priority_then_id(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        aggregator = SourceAggregator(
            [
                StaticConnector("articles", [("b", 0.5), ("a", 0.5)]),
                StaticConnector("wiki", [("a", 0.5)]),
                StaticConnector("zeta", [("a", 0.5)]),
                StaticConnector("extra", [("a", 0.5)]),
            ],
            priority=["wiki", "articles"],
        )
        results = await aggregator.search_all("vpn", total_cap=10)

        assert [(r.source, r.item_id) for r in results] == [
            ("wiki", "a"),
            ("articles", "a"),
            ("articles", "b"),
            ("extra", "a"),
            ("zeta", "a"),
        ]

    @pytest.mark.asyncio
    async def test_slow_source_is_dropped(self, caplog):
        from opsdesk.retriever.aggregator import SourceAggregator

        aggregator = SourceAggregator(
            [
                StaticConnector("articles", [("a1", 0.2)]),
                StaticConnector("wiki", [("w1", 0.9)], delay=5.0),
            ],
            timeout=0.05,
        )
        with caplog.at_level(logging.WARNING, logger="opsdesk.retriever.aggregator"):
            results = await aggregator.search_all("vpn")

        assert [r.item_id for r in results] == ["a1"]
        assert "timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_source_is_dropped(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        aggregator = SourceAggregator([
            StaticConnector("articles", [("a1", 0.2)]),
            StaticConnector("tickets", [], error=RuntimeError("connection refused")),
        ])
        results = await aggregator.search_all("vpn")
        assert [r.item_id for r in results] == ["a1"]

    @pytest.mark.asyncio
    async def test_all_sources_failing_returns_empty(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        aggregator = SourceAggregator(
            [StaticConnector("tickets", [], error=RuntimeError("down"))],
        )
        assert await aggregator.search_all("vpn") == []

    @pytest.mark.asyncio
    async def test_no_connectors(self):
        from opsdesk.retriever.aggregator import SourceAggregator
        assert await SourceAggregator([]).search_all("vpn") == []


class SlowEmbedder(FakeEmbedder):
    """FakeEmbedder that takes ``delay`` seconds per call"""

    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def embed_single(self, text):
        await asyncio.sleep(self.delay)
        return await super().embed_single(text)


class TestDeterminism:
    @pytest.mark.asyncio
    async def test_repeated_calls_give_identical_order(self):
        from opsdesk.retriever.aggregator import SourceAggregator

        scored = {
            "articles": [("a2", 0.5), ("a1", 0.5), ("a3", 0.2)],
            "wiki": [("w1", 0.5), ("w2", 0.9)],
            "tickets": [("t1", 0.2)],
        }

        def build(delays):
            return SourceAggregator(
                [StaticConnector(name, pairs, delay=delays[name]) for name, pairs in scored.items()],
                priority=["tickets", "articles", "wiki"],
            )

        def order(results):
            return [(r.source, r.item_id, r.score) for r in results]

        aggregator = build({"articles": 0.0, "wiki": 0.0, "tickets": 0.0})
        first = order(await aggregator.search_all("vpn", total_cap=10))
        second = order(await aggregator.search_all("vpn", total_cap=10))
        # Same inputs, sources finishing in the opposite order
        reversed_timing = order(
            await build({"articles": 0.03, "wiki": 0.02, "tickets": 0.0}).search_all("vpn", total_cap=10)
        )

        assert first == second == reversed_timing
        assert [(s, i) for s, i, _ in first] == [
            ("wiki", "w2"), ("articles", "a1"), ("articles", "a2"), ("wiki", "w1"),
            ("tickets", "t1"), ("articles", "a3"),
        ]


class TestColdStart:
    @pytest.mark.asyncio
    async def test_slow_cold_start_survives_search_timeouts(self):
        from opsdesk.retriever.aggregator import SourceAggregator
        from opsdesk.retriever.connector import CollectionConnector
        from opsdesk.retriever.stores import InMemoryStore

        items = [make_item(f"KB-{i}", f"VPN note {i}", "vpn client") for i in range(10)]
        store = InMemoryStore(items)
        embedder = SlowEmbedder(delay=0.02)
        connector = CollectionConnector("articles", store, embedder, max_retries=0)
        aggregator = SourceAggregator([connector], timeout=0.05)

        # Loading ten items takes longer than the per-source timeout
        assert await aggregator.search_all("vpn") == []
        assert await aggregator.search_all("vpn") == []

        for _ in range(100):
            if connector.is_initialized:
                break
            await asyncio.sleep(0.02)
        assert connector.is_initialized

        results = await aggregator.search_all("vpn")
        assert results[0].source == "articles"

        item_calls = [c for c in embedder.calls if c != "vpn"]
        assert len(item_calls) == 10
        assert store.save_count == 1
