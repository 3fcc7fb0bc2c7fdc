"""
tally.api.serializers — Entity → JSON helpers
==============================================
"""

from __future__ import annotations

from datetime import datetime

from tally.engine.entities import Comment, Contest, Event, Participant
from tally.engine.ranking import LeaderInfo, Standing


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def event_dict(e: Event) -> dict:
    return {
        "id": e.id,
        "participant_id": e.participant_id,
        "participant_name": e.participant_name,
        "group_id": e.group_id,
        "count": e.count,
        "timestamp": _iso(e.timestamp),
        "description": e.description,
        "image": e.image,
        "reactions": {symbol: sorted(members) for symbol, members in e.reactions.items()},
        "reaction_counts": e.reaction_counts(),
        "flag_count": e.flag_count,
        "is_deleted": e.is_deleted,
        "deleted_at": _iso(e.deleted_at),
        "deleted_by": e.deleted_by,
    }


def participant_dict(p: Participant) -> dict:
    return {
        "id": p.id,
        "display_name": p.display_name,
        "total_score": p.total_score,
        "created_at": _iso(p.created_at),
        "last_active": _iso(p.last_active),
        "is_hidden": p.is_hidden,
        "hidden_at": _iso(p.hidden_at),
        "hidden_by": p.hidden_by,
    }


def standing_dict(s: Standing, names: dict[str, str]) -> dict:
    return {
        "participant_id": s.participant_id,
        "display_name": names.get(s.participant_id, ""),
        "score": s.score,
        "rank": s.rank,
        "label": s.label,
    }


def leader_dict(info: LeaderInfo) -> dict:
    return {
        "leader_id": info.leader_id,
        "leading_score": info.leading_score,
        "is_tied": info.is_tied,
        "tied_count": info.tied_count,
    }


def comment_dict(c: Comment) -> dict:
    return {
        "id": c.id,
        "event_id": c.event_id,
        "participant_id": c.participant_id,
        "participant_name": c.participant_name,
        "text": c.text,
        "timestamp": _iso(c.timestamp),
    }


def contest_dict(c: Contest, phase: str | None = None) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "start_date": _iso(c.start_date),
        "end_date": _iso(c.end_date),
        "end_of_review_date": _iso(c.end_of_review_date),
        "status": c.status,
        "is_default": c.is_default,
        "phase": phase,
    }
