import litellm
import numpy as np
import pytest

from marginalia.embedder import Embedder
from marginalia.errors import RetrievalError, SearchError, ValidationError
from marginalia.highlights.store import HighlightRepository
from marginalia.search.service import SearchService, build_query, parse_limit
from marginalia.search.types import RankedCandidate, ScoredCandidate, SearchMode, SearchQuery
from tests.conftest import OTHER_USER, TEST_USER, add_highlight


class FakeRetriever:
    def __init__(self, ids: list[str] = (), error: Exception | None = None):
        self.ids = list(ids)
        self.error = error
        self.counts: list[int] = []

    async def search(self, query, user_id: str, count: int) -> list[RankedCandidate]:
        self.counts.append(count)
        if self.error:
            raise self.error
        return [
            RankedCandidate(id=row_id, native_score=1.0 / (i + 1), source_rank=i + 1)
            for i, row_id in enumerate(self.ids[:count])
        ]


def _query(text: str, mode: SearchMode, limit: int = 10, user_id: str = TEST_USER) -> SearchQuery:
    return SearchQuery(text=text, mode=mode, limit=limit, user_id=user_id)


class TestParseLimit:
    @pytest.mark.parametrize("value,expected", [(1, 1), (10, 10), (100, 100), (25.0, 25), ("7", 7), (" 42 ", 42)])
    def test_accepts(self, value, expected):
        assert parse_limit(value) == expected

    @pytest.mark.parametrize("value", [0, 101, -5, 2.5, "ten", "", None, True, False, [10], {"n": 1}])
    def test_rejects(self, value):
        with pytest.raises(ValidationError, match="Limit must be a number between 1 and 100"):
            parse_limit(value)


class TestBuildQuery:
    def test_valid(self):
        query = build_query("  stoicism  ", "hybrid", 5, user_id=TEST_USER)
        assert query == SearchQuery(text="stoicism", mode=SearchMode.HYBRID, limit=5, user_id=TEST_USER)

    def test_default_limit(self):
        assert build_query("stoicism", "keyword", user_id=TEST_USER).limit == 10

    @pytest.mark.parametrize("text", [None, "", "   ", 42, ["stoicism"]])
    def test_bad_query(self, text):
        with pytest.raises(ValidationError, match="Query is required"):
            build_query(text, "keyword", user_id=TEST_USER)

    @pytest.mark.parametrize("mode", [None, "", "fuzzy", "KEYWORD", 1])
    def test_bad_mode(self, mode):
        with pytest.raises(ValidationError, match="Mode is required and must be one of: keyword, semantic, hybrid"):
            build_query("stoicism", mode, user_id=TEST_USER)

    def test_bad_limit(self):
        with pytest.raises(ValidationError):
            build_query("stoicism", "keyword", 0, user_id=TEST_USER)


class TestKeywordMode:
    @pytest.mark.asyncio
    async def test_stoicism(self, repo: HighlightRepository, embedder: Embedder):
        for i in range(12):
            await add_highlight(repo, f"Entry {i} on stoicism" + " and virtue" * i)
        await add_highlight(repo, "Epicureans prized pleasure")
        await add_highlight(repo, "stoicism for someone else", user_id=OTHER_USER)

        response = await SearchService(repo, embedder).search(_query("stoicism", SearchMode.KEYWORD))

        assert response.mode == SearchMode.KEYWORD
        assert response.query == "stoicism"
        assert response.count == len(response.results) == 10
        assert all("stoicism" in h.text for h in response.results)
        assert all(h.text != "stoicism for someone else" for h in response.results)
        scores = [h.score for h in response.results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_native_score_passthrough(self, repo: HighlightRepository, embedder: Embedder):
        await add_highlight(repo, "memento mori")
        native = await repo.keyword_search("memento", TEST_USER, 10)

        response = await SearchService(repo, embedder).search(_query("memento", SearchMode.KEYWORD))
        assert [h.score for h in response.results] == [score for _, score in native]

    @pytest.mark.asyncio
    async def test_no_embedding_call(self, repo: HighlightRepository, embedder: Embedder, monkeypatch):
        async def fail(*args, **kwargs):
            raise AssertionError("keyword search must not embed")

        monkeypatch.setattr(litellm, "aembedding", fail)
        await add_highlight(repo, "memento mori")

        response = await SearchService(repo, embedder).search(_query("memento", SearchMode.KEYWORD))
        assert response.count == 1

    @pytest.mark.asyncio
    async def test_empty(self, repo: HighlightRepository, embedder: Embedder):
        response = await SearchService(repo, embedder).search(_query("nothing", SearchMode.KEYWORD))
        assert response.results == []
        assert response.count == 0


class TestSemanticMode:
    @pytest.mark.asyncio
    async def test_most_similar_first(self, repo: HighlightRepository, embedder: Embedder):
        courage = await add_highlight(repo, "What not to fear", embed_as="courage")
        await add_highlight(repo, "The constant will", embed_as="justice")
        await add_highlight(repo, "What not to fear", user_id=OTHER_USER, embed_as="courage")

        response = await SearchService(repo, embedder).search(_query("courage", SearchMode.SEMANTIC))

        assert response.count == 2
        assert response.results[0].id == courage
        assert response.results[0].score == pytest.approx(1.0, abs=1e-5)
        assert response.results[0].score >= response.results[1].score

    @pytest.mark.asyncio
    async def test_vectors_from_another_model_do_not_fail_search(self, repo: HighlightRepository, embedder: Embedder):
        courage = await add_highlight(repo, "What not to fear", embed_as="courage")
        stale = await add_highlight(repo, "Embedded by an older model")
        await repo.set_embedding(stale, np.ones(embedder.config.dim * 2))

        response = await SearchService(repo, embedder).search(_query("courage", SearchMode.SEMANTIC))

        assert [h.id for h in response.results] == [courage]

    @pytest.mark.asyncio
    async def test_embedding_failure(self, repo: HighlightRepository, embedder: Embedder, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("provider down")

        monkeypatch.setattr(litellm, "aembedding", broken)

        with pytest.raises(SearchError, match="Failed to perform semantic search") as exc_info:
            await SearchService(repo, embedder).search(_query("courage", SearchMode.SEMANTIC))
        assert exc_info.value.mode == SearchMode.SEMANTIC
        assert "provider down" in str(exc_info.value.__cause__)


class TestHybridMode:
    @pytest.mark.asyncio
    async def test_fused_order(self, repo: HighlightRepository, embedder: Embedder):
        for row_id in "ABCD":
            await add_highlight(repo, f"highlight {row_id}", highlight_id=row_id)
        semantic = FakeRetriever(["A", "B", "C"])
        lexical = FakeRetriever(["B", "C", "D"])
        service = SearchService(repo, embedder, lexical=lexical, semantic=semantic)

        response = await service.search(_query("anything", SearchMode.HYBRID))

        assert [h.id for h in response.results] == ["B", "C", "A", "D"]
        assert [h.score for h in response.results] == pytest.approx(
            [1 / 62 + 1 / 61, 1 / 63 + 1 / 62, 1 / 61, 1 / 63]
        )

    @pytest.mark.asyncio
    async def test_legs_overfetch(self, repo: HighlightRepository, embedder: Embedder):
        semantic, lexical = FakeRetriever(), FakeRetriever()
        service = SearchService(repo, embedder, lexical=lexical, semantic=semantic)

        await service.search(_query("anything", SearchMode.HYBRID, limit=7))

        assert semantic.counts == [14]
        assert lexical.counts == [14]

    @pytest.mark.asyncio
    async def test_truncated_to_limit(self, repo: HighlightRepository, embedder: Embedder):
        ids = [f"h{i}" for i in range(6)]
        for row_id in ids:
            await add_highlight(repo, row_id, highlight_id=row_id)
        service = SearchService(repo, embedder, lexical=FakeRetriever(ids), semantic=FakeRetriever(ids[::-1]))

        response = await service.search(_query("anything", SearchMode.HYBRID, limit=3))
        assert response.count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", ["lexical", "semantic"])
    async def test_leg_failure_fails_whole_search(self, repo: HighlightRepository, embedder: Embedder, failing):
        await add_highlight(repo, "highlight A", highlight_id="A")
        healthy = FakeRetriever(["A"])
        broken = FakeRetriever(error=RetrievalError("store unavailable"))
        legs = {"lexical": healthy, "semantic": healthy, failing: broken}
        service = SearchService(repo, embedder, **legs)

        with pytest.raises(SearchError, match="Failed to perform hybrid search") as exc_info:
            await service.search(_query("anything", SearchMode.HYBRID))
        assert isinstance(exc_info.value.__cause__, RetrievalError)

    @pytest.mark.asyncio
    async def test_shared_hit_ranks_first(self, repo: HighlightRepository, embedder: Embedder):
        both = await add_highlight(repo, "courage and fear", embed_as="courage")
        semantic_only = await add_highlight(repo, "a quiet garden", embed_as="garden")

        response = await SearchService(repo, embedder).search(_query("courage", SearchMode.HYBRID))

        assert [h.id for h in response.results] == [both, semantic_only]
        assert response.results[0].score == pytest.approx(2 / 61)
        assert response.results[1].score == pytest.approx(1 / 62)

    @pytest.mark.asyncio
    async def test_idempotent(self, repo: HighlightRepository, embedder: Embedder):
        await add_highlight(repo, "courage and fear", embed_as="courage")
        await add_highlight(repo, "fear of courage", embed_as="fear")
        service = SearchService(repo, embedder)

        first = await service.search(_query("courage", SearchMode.HYBRID))
        second = await service.search(_query("courage", SearchMode.HYBRID))
        assert first.to_dict() == second.to_dict()


class TestHydrate:
    @pytest.mark.asyncio
    async def test_preserves_order_and_drops_misses(self, repo: HighlightRepository, embedder: Embedder):
        first = await add_highlight(repo, "first")
        second = await add_highlight(repo, "second")
        foreign = await add_highlight(repo, "foreign", user_id=OTHER_USER)
        candidates = [
            ScoredCandidate(id=second, score=0.9),
            ScoredCandidate(id="does-not-exist", score=0.8),
            ScoredCandidate(id=foreign, score=0.7),
            ScoredCandidate(id=first, score=0.6),
        ]

        results = await SearchService(repo, embedder).hydrate(candidates, TEST_USER)

        assert [(h.id, h.score) for h in results] == [(second, 0.9), (first, 0.6)]

    @pytest.mark.asyncio
    async def test_empty(self, repo: HighlightRepository, embedder: Embedder):
        assert await SearchService(repo, embedder).hydrate([], TEST_USER) == []
