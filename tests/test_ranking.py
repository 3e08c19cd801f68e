import pytest

from marginalia.search.ranking import rrf_fuse
from marginalia.search.types import RankedCandidate, SearchMode


def ranked(*ids: str) -> list[RankedCandidate]:
    # native scores deliberately on a different scale per list; fusion must ignore them
    return [RankedCandidate(id=cid, native_score=100.0 - i, source_rank=i + 1) for i, cid in enumerate(ids)]


class TestRrfFuse:
    def test_agreement_scenario_exact_order(self):
        fused = rrf_fuse(ranked("A", "B", "C"), ranked("B", "C", "D"), limit=10)

        assert [c.id for c in fused] == ["B", "C", "A", "D"]
        scores = {c.id: c.fused_score for c in fused}
        assert scores["B"] == pytest.approx(1 / 62 + 1 / 61)
        assert scores["C"] == pytest.approx(1 / 63 + 1 / 62)
        assert scores["A"] == pytest.approx(1 / 61)
        assert scores["D"] == pytest.approx(1 / 63)

    def test_contributions_are_summed_not_maxed(self):
        fused = rrf_fuse(ranked("A"), ranked("A"), limit=10)
        assert fused[0].fused_score == pytest.approx(2 / 61)

    def test_contributing_sources(self):
        fused = {c.id: c for c in rrf_fuse(ranked("A", "B"), ranked("B", "C"), limit=10)}

        assert fused["A"].contributing_sources == {SearchMode.SEMANTIC}
        assert fused["B"].contributing_sources == {SearchMode.SEMANTIC, SearchMode.KEYWORD}
        assert fused["C"].contributing_sources == {SearchMode.KEYWORD}

    def test_scores_non_increasing(self):
        fused = rrf_fuse(ranked(*"ABCDEFG"), ranked(*"GFEDXYZ"), limit=20)
        scores = [c.fused_score for c in fused]
        assert scores == sorted(scores, reverse=True)

    def test_shared_candidate_beats_single_list_top(self):
        fused = rrf_fuse(ranked("A", "B"), ranked("B", "C"), limit=10)
        assert fused[0].id == "B"

    def test_tie_prefers_semantic_first(self):
        fused = rrf_fuse(ranked("S"), ranked("K"), limit=10)
        assert [c.id for c in fused] == ["S", "K"]
        assert fused[0].fused_score == fused[1].fused_score

        swapped = rrf_fuse(ranked("K"), ranked("S"), limit=10)
        assert [c.id for c in swapped] == ["K", "S"]

    def test_truncates_to_limit(self):
        fused = rrf_fuse(ranked(*"ABCDE"), ranked(*"FGHIJ"), limit=3)
        assert len(fused) == 3

    def test_results_come_from_inputs(self):
        semantic, keyword = ranked("A", "B", "C"), ranked("C", "D")
        fused = rrf_fuse(semantic, keyword, limit=10)
        known = {c.id for c in semantic} | {c.id for c in keyword}
        assert {c.id for c in fused} <= known

    def test_empty_inputs(self):
        assert rrf_fuse([], [], limit=10) == []
        assert [c.id for c in rrf_fuse([], ranked("A", "B"), limit=10)] == ["A", "B"]

    def test_k_parameter(self):
        k60 = {c.id: c.fused_score for c in rrf_fuse(ranked("A", "B"), [], limit=10, k=60)}
        k10 = {c.id: c.fused_score for c in rrf_fuse(ranked("A", "B"), [], limit=10, k=10)}

        # With smaller k, the rank difference has more impact
        assert k10["A"] / k10["B"] > k60["A"] / k60["B"]

    def test_deterministic(self):
        semantic, keyword = ranked(*"ABCDEF"), ranked(*"DCBXYZ")
        first = [c.id for c in rrf_fuse(semantic, keyword, limit=5)]
        second = [c.id for c in rrf_fuse(semantic, keyword, limit=5)]
        assert first == second
