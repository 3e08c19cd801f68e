from marginalia.constants import RRF_K
from marginalia.search.types import FusedCandidate, RankedCandidate, SearchMode


def rrf_fuse(
    semantic: list[RankedCandidate],
    keyword: list[RankedCandidate],
    limit: int,
    k: int = RRF_K,
) -> list[FusedCandidate]:
    """Reciprocal Rank Fusion of a semantic and a keyword ranking.

    Each candidate at 1-based position ``rank`` contributes ``1 / (k + rank)``;
    a candidate present in both lists gets the sum of its two contributions.
    Native scores are ignored, only positions matter.

    On an exact score tie the candidate first seen while accumulating wins.
    Semantic contributions are accumulated before keyword ones, so a
    semantic-first candidate sorts ahead (dict insertion order + stable sort).
    """
    scores: dict[str, float] = {}
    sources: dict[str, set[SearchMode]] = {}

    for mode, ranking in ((SearchMode.SEMANTIC, semantic), (SearchMode.KEYWORD, keyword)):
        for position, candidate in enumerate(ranking, start=1):
            scores[candidate.id] = scores.get(candidate.id, 0.0) + 1 / (k + position)
            sources.setdefault(candidate.id, set()).add(mode)

    fused = [
        FusedCandidate(id=cid, fused_score=score, contributing_sources=frozenset(sources[cid]))
        for cid, score in scores.items()
    ]
    fused.sort(key=lambda c: c.fused_score, reverse=True)
    return fused[:limit]
