import numpy as np

from marginalia.database import serialize_embedding
from marginalia.highlights.store import HighlightRepository
from marginalia.search.types import RankedCandidate


def _ranked(rows: list[tuple[str, float]]) -> list[RankedCandidate]:
    return [RankedCandidate(id=row_id, native_score=score, source_rank=i + 1) for i, (row_id, score) in enumerate(rows)]


class LexicalRetriever:
    """Keyword leg: full-text relevance over the user's highlights."""

    def __init__(self, repo: HighlightRepository):
        self.repo = repo

    async def search(self, text: str, user_id: str, count: int) -> list[RankedCandidate]:
        return _ranked(await self.repo.keyword_search(text, user_id, count))


class SemanticRetriever:
    """Vector leg: cosine similarity against stored highlight embeddings."""

    def __init__(self, repo: HighlightRepository):
        self.repo = repo

    async def search(self, vector: np.ndarray, user_id: str, count: int) -> list[RankedCandidate]:
        return _ranked(await self.repo.vector_search(serialize_embedding(vector), user_id, count))
