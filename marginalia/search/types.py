from dataclasses import dataclass, field
from enum import StrEnum

from marginalia.highlights.models import Highlight


class SearchMode(StrEnum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class SearchQuery:
    """Validated search request. Build with ``build_query``."""

    text: str
    mode: SearchMode
    limit: int
    user_id: str


@dataclass(frozen=True)
class RankedCandidate:
    """A single retriever's hit before fusion or hydration."""

    id: str
    native_score: float
    source_rank: int  # 1-based position in its source list


@dataclass(frozen=True)
class FusedCandidate:
    """RRF output: summed reciprocal-rank contributions per candidate."""

    id: str
    fused_score: float
    contributing_sources: frozenset[SearchMode] = frozenset()


@dataclass(frozen=True)
class ScoredCandidate:
    """Final ordered id with the score that is reported on the hydrated result."""

    id: str
    score: float


@dataclass
class SearchResponse:
    results: list[Highlight]
    mode: SearchMode
    query: str
    count: int = field(init=False)

    def __post_init__(self) -> None:
        self.count = len(self.results)

    def to_dict(self) -> dict:
        return {
            "results": [h.to_dict() for h in self.results],
            "count": self.count,
            "mode": self.mode.value,
            "query": self.query,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SearchResponse":
        return cls(
            results=[Highlight.from_dict(item) for item in data.get("results") or []],
            mode=SearchMode(data["mode"]),
            query=data.get("query", ""),
        )
