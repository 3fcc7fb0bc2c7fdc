"""
tally.engine.contest — Contest Phase Rules
===========================================

Pure functions over a :class:`~tally.engine.entities.Contest` window:

* ``upcoming``  — before ``start_date``
* ``active``    — ``start_date <= now < end_date`` (posting allowed)
* ``review``    — after ``end_date`` but before ``end_of_review_date``
* ``completed`` — after the review window, or after ``end_date`` when the
  contest has no review window
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from datetime import UTC, datetime

from tally.engine.entities import Contest

__all__ = [
    "ContestPhase",
    "can_post",
    "contest_phase",
    "pick_active_contest",
    "should_show_countdown",
    "should_show_winner",
]


class ContestPhase(enum.StrEnum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    REVIEW = "review"
    COMPLETED = "completed"


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def contest_phase(contest: Contest, now: datetime | None = None) -> ContestPhase:
    now = _now(now)
    if now < contest.start_date:
        return ContestPhase.UPCOMING
    if now < contest.end_date:
        return ContestPhase.ACTIVE
    if contest.end_of_review_date is not None and now < contest.end_of_review_date:
        return ContestPhase.REVIEW
    return ContestPhase.COMPLETED


def can_post(contest: Contest, now: datetime | None = None) -> bool:
    """Events may only be logged while the contest is active."""
    return contest_phase(contest, now) is ContestPhase.ACTIVE


def should_show_winner(contest: Contest, now: datetime | None = None) -> bool:
    return contest_phase(contest, now) in (ContestPhase.REVIEW, ContestPhase.COMPLETED)


def should_show_countdown(contest: Contest, now: datetime | None = None) -> bool:
    return contest_phase(contest, now) in (ContestPhase.UPCOMING, ContestPhase.ACTIVE)


def pick_active_contest(
    contests: Iterable[Contest], now: datetime | None = None,
) -> Contest | None:
    """Choose the contest the app should show.

    Resolution order:
      1. status ``active`` and ``now`` inside [start, end), the same
         window in which :func:`can_post` allows posting
      2. the contest flagged ``is_default``
      3. the first contest with status ``active`` or ``upcoming``
    """
    now = _now(now)
    contests = list(contests)

    for contest in contests:
        if contest.status == "active" and contest.start_date <= now < contest.end_date:
            return contest

    for contest in contests:
        if contest.is_default:
            return contest

    for contest in contests:
        if contest.status in ("active", "upcoming"):
            return contest
    return None
