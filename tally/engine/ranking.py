"""
tally.engine.ranking — Tie-Aware Standings
===========================================

Pure calculation (no I/O).  Given ``(participant_id, score)`` pairs it
assigns each participant a rank with the contest's house rules:

1. A unique top score gets rank 1.
2. A *shared* top score never shows as first place: every participant
   holding it gets rank 2, and nobody gets rank 1.
3. Any other participant with score ``s`` gets
   ``greater + tied`` when ``tied > 1`` (the bottom of its tied block), or
   ``greater + 1`` when alone, where ``greater`` counts strictly higher
   scores and ``tied`` counts scores equal to ``s``.

Ranks 1–3 render as medals; everything else as ``#<rank>``.  Several
participants may share a medal (a four-way tie for the lead is four 🥈).

Examples (scores → ranks)::

    [15, 10, 10, 10, 8] → [1, 4, 4, 4, 5]
    [20, 20, 15]        → [2, 2, 3]
    [0, 0, 0, 0]        → [2, 2, 2, 2]
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from tally.constants import RANK_MARKERS

__all__ = ["LeaderInfo", "Standing", "compute_standings", "leader_info", "rank_label"]


@dataclass(frozen=True, slots=True)
class Standing:
    participant_id: str
    score: int
    rank: int
    label: str


@dataclass(frozen=True, slots=True)
class LeaderInfo:
    """Who is in front, and whether the lead is shared."""

    leader_id: str | None
    leading_score: int
    is_tied: bool
    tied_count: int


def rank_label(rank: int) -> str:
    """Medal for ranks 1–3, ``#<rank>`` otherwise."""
    return RANK_MARKERS.get(rank, f"#{rank}")


def compute_standings(entries: Iterable[tuple[str, int]]) -> list[Standing]:
    """Rank *entries* and return them ordered by score, highest first.

    Participants with equal scores keep their input order.
    """
    pairs = list(entries)
    if not pairs:
        return []

    tally = Counter(score for _, score in pairs)
    distinct = sorted(tally, reverse=True)
    max_score = distinct[0]

    # Scores strictly greater than each distinct score
    greater: dict[int, int] = {}
    seen = 0
    for score in distinct:
        greater[score] = seen
        seen += tally[score]

    def _rank(score: int) -> int:
        tied = tally[score]
        if score == max_score:
            return 2 if tied > 1 else 1
        if tied > 1:
            return greater[score] + tied
        return greater[score] + 1

    ordered = sorted(pairs, key=lambda pair: -pair[1])
    standings = []
    for participant_id, score in ordered:
        rank = _rank(score)
        standings.append(Standing(participant_id, score, rank, rank_label(rank)))
    return standings


def leader_info(entries: Iterable[tuple[str, int]]) -> LeaderInfo:
    """Summarize the lead: first participant at the top score plus tie size."""
    pairs = list(entries)
    if not pairs:
        return LeaderInfo(leader_id=None, leading_score=0, is_tied=False, tied_count=0)

    leading_score = max(score for _, score in pairs)
    holders = [pid for pid, score in pairs if score == leading_score]
    return LeaderInfo(
        leader_id=holders[0],
        leading_score=leading_score,
        is_tied=len(holders) > 1,
        tied_count=len(holders),
    )
