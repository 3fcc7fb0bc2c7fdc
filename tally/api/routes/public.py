"""
tally.api.routes.public — Feed, leaderboard & participant endpoints
====================================================================

Reads are served from the sync service's live mirrors; writes go through
the service and the next pushed snapshot refreshes the mirrors.
Unknown ids surface as 404 (see the ``NotFoundError`` handler in
:mod:`tally.api.main`); rejected input as 400 carrying the service's
``last_error``.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from tally.api.deps import ActorDep, ServiceDep
from tally.api.serializers import (
    comment_dict,
    contest_dict,
    event_dict,
    leader_dict,
    participant_dict,
    standing_dict,
)
from tally.engine.contest import contest_phase
from tally.services.sync_service import SyncService

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EventCreate(BaseModel):
    count: int
    description: str | None = None
    image: str | None = None
    group_id: str | None = None


class EventUpdate(BaseModel):
    count: int | None = None
    description: str | None = None
    image: str | None = None


class ReactionToggle(BaseModel):
    symbol: str | None = None


class CommentCreate(BaseModel):
    text: str


class ParticipantUpdate(BaseModel):
    display_name: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _rejected(service: SyncService, fallback: str) -> HTTPException:
    return HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or fallback)


async def _feed_payload(service: SyncService, group_id: str | None) -> dict:
    feed = await service.feed(group_id)
    return {
        "events": [event_dict(e) for e in feed.items],
        "has_more": feed.has_more,
        "loading": feed.loading,
        "error": feed.error,
    }


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
@router.get("/feed")
async def get_feed(service: ServiceDep, group_id: str | None = Query(None)):
    """Head page of the live feed (plus any pages loaded since)."""
    return await _feed_payload(service, group_id)


@router.post("/feed/more")
async def load_more(service: ServiceDep, group_id: str | None = Query(None)):
    loaded = await service.load_more(group_id)
    payload = await _feed_payload(service, group_id)
    payload["loaded"] = loaded
    return payload


# ---------------------------------------------------------------------------
# Leaderboard & participants
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
async def get_leaderboard(service: ServiceDep):
    people = await service.get_participants()
    names = {p.id: p.display_name for p in people}
    standings = await service.get_standings()
    return {
        "standings": [standing_dict(s, names) for s in standings],
        "leader": leader_dict(await service.get_leader()),
        "error": service.participants.error,
    }


@router.get("/participants/{participant_id}/journal")
async def get_journal(participant_id: str, service: ServiceDep):
    events = await service.get_journal(participant_id)
    return [event_dict(e) for e in events]


@router.post("/participants/me")
async def ensure_me(actor: ActorDep, service: ServiceDep):
    participant = await service.ensure_participant(actor)
    if participant is None:
        raise _rejected(service, "Could not register participant")
    return participant_dict(participant)


@router.patch("/participants/{participant_id}")
async def update_participant(
    participant_id: str, body: ParticipantUpdate, actor: ActorDep, service: ServiceDep,
):
    if not await service.update_participant(
        participant_id, {"displayName": body.display_name}, actor,
    ):
        raise _rejected(service, "Participant update rejected")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@router.post("/events", status_code=201)
async def create_event(body: EventCreate, actor: ActorDep, service: ServiceDep):
    data = {
        "count": body.count,
        "description": body.description,
        "image": body.image,
        "groupId": body.group_id,
    }
    event = await service.add_event(data, actor)
    if event is None:
        raise _rejected(service, "Event rejected")
    return event_dict(event)


@router.patch("/events/{event_id}")
async def update_event(event_id: str, body: EventUpdate, actor: ActorDep, service: ServiceDep):
    patch = body.model_dump(exclude_unset=True)
    if not await service.update_event(event_id, patch, actor):
        raise _rejected(service, "Event update rejected")
    return {"ok": True}


@router.delete("/events/{event_id}")
async def delete_event(event_id: str, actor: ActorDep, service: ServiceDep):
    if not await service.delete_event(event_id, actor):
        raise _rejected(service, "Delete rejected")
    return {"ok": True}


@router.post("/events/{event_id}/reactions")
async def toggle_reaction(
    event_id: str, body: ReactionToggle, actor: ActorDep, service: ServiceDep,
):
    symbol = body.symbol or service.cfg.default_reaction
    active = await service.toggle_reaction(event_id, actor.id, symbol)
    if active is None:
        raise _rejected(service, "Reaction rejected")
    return {"symbol": symbol, "active": active}


@router.post("/events/{event_id}/flag")
async def toggle_flag(event_id: str, actor: ActorDep, service: ServiceDep):
    flagged = await service.toggle_flag(event_id, actor.id)
    if flagged is None:
        raise _rejected(service, "Flag rejected")
    return {"flagged": flagged}


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------
@router.get("/events/{event_id}/comments")
async def list_comments(event_id: str, service: ServiceDep):
    return [comment_dict(c) for c in await service.list_comments(event_id)]


@router.post("/events/{event_id}/comments", status_code=201)
async def add_comment(event_id: str, body: CommentCreate, actor: ActorDep, service: ServiceDep):
    comment = await service.add_comment(event_id, body.text, actor)
    if comment is None:
        raise _rejected(service, "Comment rejected")
    return comment_dict(comment)


@router.delete("/events/{event_id}/comments/{comment_id}")
async def delete_comment(event_id: str, comment_id: str, actor: ActorDep, service: ServiceDep):
    if not await service.delete_comment(event_id, comment_id, actor):
        raise _rejected(service, "Comment delete rejected")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Contests
# ---------------------------------------------------------------------------
@router.get("/contests")
async def list_contests(service: ServiceDep):
    return [contest_dict(c, contest_phase(c)) for c in await service.list_contests()]


@router.get("/contests/active")
async def get_active_contest(service: ServiceDep):
    contest = await service.get_active_contest()
    if contest is None:
        return None
    return contest_dict(contest, contest_phase(contest))
