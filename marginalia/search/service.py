import asyncio
import re
from typing import Any

import aiosqlite

from marginalia.constants import (
    DEFAULT_SEARCH_LIMIT,
    MAX_SEARCH_LIMIT,
    MIN_SEARCH_LIMIT,
    RRF_K,
    RRF_OVERFETCH_FACTOR,
)
from marginalia.embedder import Embedder
from marginalia.errors import EmbeddingError, RetrievalError, SearchError, ValidationError
from marginalia.highlights.models import Highlight
from marginalia.highlights.store import HighlightRepository
from marginalia.logging import get_logger
from marginalia.search.ranking import rrf_fuse
from marginalia.search.retrieval import LexicalRetriever, SemanticRetriever
from marginalia.search.types import ScoredCandidate, SearchMode, SearchQuery, SearchResponse

_logger = get_logger(__name__)

_INTEGER = re.compile(r"[+-]?\d+")


def parse_limit(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Limit must be a number between 1 and 100")

    parsed: int | None = None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and _INTEGER.fullmatch(value.strip()):
        parsed = int(value.strip())

    if parsed is None or not MIN_SEARCH_LIMIT <= parsed <= MAX_SEARCH_LIMIT:
        raise ValidationError(f"Limit must be a number between {MIN_SEARCH_LIMIT} and {MAX_SEARCH_LIMIT}")
    return parsed


def build_query(text: Any, mode: Any, limit: Any = DEFAULT_SEARCH_LIMIT, *, user_id: str) -> SearchQuery:
    """Validate raw request fields into a SearchQuery.

    Raises ValidationError on a missing or blank query, an unknown mode,
    or a limit that is not an integer in [1, 100].
    """
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Query is required and must be a string")

    try:
        search_mode = SearchMode(mode)
    except (TypeError, ValueError):
        raise ValidationError("Mode is required and must be one of: keyword, semantic, hybrid") from None

    return SearchQuery(text=text.strip(), mode=search_mode, limit=parse_limit(limit), user_id=user_id)


class SearchService:
    def __init__(
        self,
        repo: HighlightRepository,
        embedder: Embedder,
        rrf_k: int = RRF_K,
        lexical: LexicalRetriever | None = None,
        semantic: SemanticRetriever | None = None,
    ):
        self.repo = repo
        self.embedder = embedder
        self.rrf_k = rrf_k
        self.lexical = lexical or LexicalRetriever(repo)
        self.semantic = semantic or SemanticRetriever(repo)

    async def search(self, query: SearchQuery) -> SearchResponse:
        try:
            candidates = await self._retrieve(query)
        except (RetrievalError, EmbeddingError) as e:
            _logger.error("%s search failed for user %s: %s", query.mode, query.user_id, e)
            raise SearchError(f"Failed to perform {query.mode} search", mode=query.mode) from e

        results = await self.hydrate(candidates, query.user_id)
        _logger.info(
            "%s search returned %d/%d results (limit %d)",
            query.mode,
            len(results),
            len(candidates),
            query.limit,
        )
        return SearchResponse(results=results, mode=query.mode, query=query.text)

    async def _retrieve(self, query: SearchQuery) -> list[ScoredCandidate]:
        match query.mode:
            case SearchMode.KEYWORD:
                ranked = await self.lexical.search(query.text, query.user_id, query.limit)
            case SearchMode.SEMANTIC:
                vector = await self.embedder.embed_one(query.text)
                ranked = await self.semantic.search(vector, query.user_id, query.limit)
            case SearchMode.HYBRID:
                return await self._hybrid(query)

        return [ScoredCandidate(id=c.id, score=c.native_score) for c in ranked[: query.limit]]

    async def _hybrid(self, query: SearchQuery) -> list[ScoredCandidate]:
        vector = await self.embedder.embed_one(query.text)
        count = query.limit * RRF_OVERFETCH_FACTOR

        # both legs must succeed; the first failure propagates
        semantic, keyword = await asyncio.gather(
            self.semantic.search(vector, query.user_id, count),
            self.lexical.search(query.text, query.user_id, count),
        )
        fused = rrf_fuse(semantic[:count], keyword[:count], limit=query.limit, k=self.rrf_k)
        return [ScoredCandidate(id=c.id, score=c.fused_score) for c in fused]

    async def hydrate(self, candidates: list[ScoredCandidate], user_id: str) -> list[Highlight]:
        """Load full records in candidate order. Rows that vanished or belong to another user are dropped."""
        try:
            rows = await asyncio.gather(*(self.repo.get_highlight(c.id, user_id) for c in candidates))
        except aiosqlite.Error as e:
            _logger.error("Hydration failed for user %s: %s", user_id, e)
            raise SearchError("Failed to load search results") from e

        return [row.with_score(c.score) for c, row in zip(candidates, rows) if row is not None]
