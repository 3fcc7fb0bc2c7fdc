"""
tests/test_ranking.py — Tie-Aware Standings
============================================
Pure function tests (no database).
"""

from __future__ import annotations

import pytest

from tally.engine.ranking import compute_standings, leader_info, rank_label


def _ranks(scores: list[int]) -> list[int]:
    entries = [(f"p{i}", s) for i, s in enumerate(scores)]
    return [s.rank for s in compute_standings(entries)]


class TestScenarios:
    @pytest.mark.parametrize(
        "scores, expected",
        [
            ([15, 10, 10, 10, 8], [1, 4, 4, 4, 5]),
            ([20, 20, 15], [2, 2, 3]),
            ([0, 0, 0, 0], [2, 2, 2, 2]),
            ([25, 20, 15], [1, 2, 3]),
            ([7], [1]),
        ],
    )
    def test_house_rules(self, scores, expected):
        assert _ranks(scores) == expected

    def test_empty(self):
        assert compute_standings([]) == []

    def test_output_sorted_by_score_desc(self):
        result = compute_standings([("a", 3), ("b", 9), ("c", 5)])
        assert [s.participant_id for s in result] == ["b", "c", "a"]

    def test_ties_keep_input_order(self):
        result = compute_standings([("x", 4), ("y", 9), ("z", 4), ("w", 4)])
        assert [s.participant_id for s in result] == ["y", "x", "z", "w"]


class TestLaws:
    SAMPLES = [
        [15, 10, 10, 10, 8],
        [20, 20, 15],
        [0, 0, 0, 0],
        [25, 20, 15],
        [9, 9, 9, 3, 3, 1],
        [50, 40, 40, 30, 30, 30, 0],
    ]

    @pytest.mark.parametrize("scores", SAMPLES)
    def test_equal_scores_equal_ranks(self, scores):
        result = compute_standings([(f"p{i}", s) for i, s in enumerate(scores)])
        by_score: dict[int, set[int]] = {}
        for s in result:
            by_score.setdefault(s.score, set()).add(s.rank)
        assert all(len(ranks) == 1 for ranks in by_score.values())

    @pytest.mark.parametrize("scores", SAMPLES)
    def test_higher_score_never_ranks_worse(self, scores):
        result = compute_standings([(f"p{i}", s) for i, s in enumerate(scores)])
        for a in result:
            for b in result:
                if a.score > b.score:
                    assert a.rank <= b.rank

    @pytest.mark.parametrize("scores", SAMPLES)
    def test_rank_one_only_for_unique_leader(self, scores):
        result = compute_standings([(f"p{i}", s) for i, s in enumerate(scores)])
        top = max(scores)
        holders = scores.count(top)
        firsts = [s for s in result if s.rank == 1]
        if holders == 1:
            assert len(firsts) == 1 and firsts[0].score == top
        else:
            assert firsts == []
            assert all(s.rank == 2 for s in result if s.score == top)


class TestLabels:
    @pytest.mark.parametrize("rank, label", [(1, "🥇"), (2, "🥈"), (3, "🥉"), (4, "#4"), (12, "#12")])
    def test_rank_label(self, rank, label):
        assert rank_label(rank) == label

    def test_shared_medal(self):
        labels = [s.label for s in compute_standings([("a", 5), ("b", 5), ("c", 5), ("d", 5)])]
        assert labels == ["🥈"] * 4


class TestLeaderInfo:
    def test_unique_leader(self):
        info = leader_info([("a", 3), ("b", 11), ("c", 7)])
        assert info.leader_id == "b"
        assert info.leading_score == 11
        assert not info.is_tied
        assert info.tied_count == 1

    def test_tied_lead(self):
        info = leader_info([("a", 11), ("b", 11), ("c", 7)])
        assert info.leader_id == "a"
        assert info.is_tied
        assert info.tied_count == 2

    def test_nobody(self):
        info = leader_info([])
        assert info.leader_id is None
        assert info.tied_count == 0
