"""
tally.api.routes.admin — Moderation endpoints (JWT‑protected)
==============================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from tally.api.deps import AdminDep, ServiceDep
from tally.api.serializers import contest_dict, event_dict, participant_dict
from tally.engine.contest import contest_phase

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ContestCreate(BaseModel):
    name: str
    start_date: datetime
    end_date: datetime
    end_of_review_date: datetime | None = None
    status: str = "upcoming"
    is_default: bool = False
    id: str | None = None


# ---------------------------------------------------------------------------
# Soft-deleted events
# ---------------------------------------------------------------------------
@router.get("/deleted")
async def list_deleted(_admin: AdminDep, service: ServiceDep):
    return [event_dict(e) for e in await service.get_deleted_events()]


@router.post("/events/{event_id}/restore")
async def restore_event(event_id: str, admin: AdminDep, service: ServiceDep):
    if not await service.restore_event(event_id, admin):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or "Restore rejected")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------
@router.post("/sync-aggregates")
async def sync_aggregates(_admin: AdminDep, service: ServiceDep):
    result = await service.sync_aggregates()
    return {
        "updated_count": result.updated_count,
        "checked": result.checked,
        "corrections": result.corrections,
        "errors": result.errors,
        "timestamp": result.timestamp,
    }


# ---------------------------------------------------------------------------
# Flags
# ---------------------------------------------------------------------------
@router.get("/flagged")
async def list_flagged(
    _admin: AdminDep, service: ServiceDep, threshold: int | None = Query(None, ge=0),
):
    return [event_dict(e) for e in await service.list_flagged(threshold)]


@router.delete("/events/{event_id}/flags")
async def clear_flags(event_id: str, _admin: AdminDep, service: ServiceDep):
    if not await service.clear_flags(event_id):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or "Clear rejected")
    return {"ok": True}


@router.post("/migrate-reactions")
async def migrate_reactions(_admin: AdminDep, service: ServiceDep):
    result = await service.migrate_legacy_reactions()
    if result is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, service.last_error or "Migration failed")
    return {"migrated": result.migrated, "skipped": result.skipped, "errors": result.errors}


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------
@router.post("/participants/{participant_id}/hide")
async def hide_participant(participant_id: str, admin: AdminDep, service: ServiceDep):
    if not await service.hide_participant(participant_id, admin):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or "Hide rejected")
    return {"ok": True}


@router.post("/participants/{participant_id}/unhide")
async def unhide_participant(participant_id: str, admin: AdminDep, service: ServiceDep):
    if not await service.unhide_participant(participant_id, admin):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or "Unhide rejected")
    return {"ok": True}


@router.get("/participants/hidden")
async def list_hidden(_admin: AdminDep, service: ServiceDep):
    return [participant_dict(p) for p in await service.get_hidden_participants()]


# ---------------------------------------------------------------------------
# Contests
# ---------------------------------------------------------------------------
@router.post("/contests", status_code=201)
async def create_contest(body: ContestCreate, admin: AdminDep, service: ServiceDep):
    data = {
        "name": body.name,
        "startDate": body.start_date,
        "endDate": body.end_date,
        "status": body.status,
        "isDefault": body.is_default,
    }
    if body.end_of_review_date is not None:
        data["endOfReviewDate"] = body.end_of_review_date
    contest = await service.add_contest(data, admin, body.id)
    if contest is None:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, service.last_error or "Contest rejected")
    return contest_dict(contest, contest_phase(contest))
