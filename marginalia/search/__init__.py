from marginalia.search.ranking import rrf_fuse
from marginalia.search.retrieval import LexicalRetriever, SemanticRetriever
from marginalia.search.service import SearchService, build_query, parse_limit
from marginalia.search.types import (
    FusedCandidate,
    RankedCandidate,
    ScoredCandidate,
    SearchMode,
    SearchQuery,
    SearchResponse,
)

__all__ = [
    "FusedCandidate",
    "LexicalRetriever",
    "RankedCandidate",
    "ScoredCandidate",
    "SearchMode",
    "SearchQuery",
    "SearchResponse",
    "SearchService",
    "SemanticRetriever",
    "build_query",
    "parse_limit",
    "rrf_fuse",
]
