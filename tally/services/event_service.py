"""
tally.services.event_service — Event Writes & Feed Queries
===========================================================

Creating an event and crediting its owner happen in one batch: the event
document plus an ``Increment(count)`` on the participant's ``totalScore``.
Editing ``count`` later moves the total by the difference, guarded by an
``expect`` on the count that was read so two racing edits cannot both
apply their delta against the same base.

Feed paging:
    The feed query fetches a raw window (``raw_window`` rows) ordered by
    timestamp, drops soft-deleted rows and keeps the first ``page_size``
    survivors.  :func:`page_events` also returns the cursor to resume from
    (the last row actually consumed) and an approximate ``has_more``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tally.config import TallyConfig
from tally.constants import CONTESTS, EDITABLE_EVENT_FIELDS, EVENTS, PARTICIPANTS
from tally.engine.contest import can_post, contest_phase
from tally.engine.entities import (
    Actor,
    Event,
    contest_from_record,
    event_from_record,
    to_store_time,
)
from tally.errors import NotFoundError, ValidationError
from tally.store.base import Cursor, Increment, Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore, QuerySnapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queries & paging
# ---------------------------------------------------------------------------
def events_query(group_id: str | None = None, limit: int | None = None) -> Query:
    """Events newest first, optionally narrowed to one group."""
    where = (("groupId", group_id),) if group_id else ()
    return Query(EVENTS, where=where, order_by="timestamp", descending=True, limit=limit)


@dataclass(frozen=True, slots=True)
class Page:
    items: list[Event]
    cursor: Cursor | None
    has_more: bool


def page_events(
    snapshot: QuerySnapshot, page_size: int, default_symbol: str,
) -> Page:
    """Filter soft-deleted rows out of a raw window and cut one page.

    ``has_more`` is True when the raw window came back full or when live
    rows were left over after the page filled.  It is an estimate: a full
    window of deleted rows still reports more.
    """
    items: list[Event] = []
    consumed = 0
    for record in snapshot:
        if len(items) >= page_size:
            break
        consumed += 1
        if record.get("isDeleted"):
            continue
        items.append(event_from_record(record, default_symbol))

    cursor = None
    if consumed:
        last = snapshot.records[consumed - 1]
        cursor = Cursor(order_value=last.get("timestamp"), doc_id=last.id)
    has_more = snapshot.is_full or consumed < len(snapshot)
    return Page(items=items, cursor=cursor, has_more=has_more)


def journal(
    store: DocumentStore, participant_id: str, default_symbol: str,
) -> list[Event]:
    """One participant's non-deleted events, newest first."""
    snapshot = store.query(Query(
        EVENTS,
        where=(("participantId", participant_id),),
        order_by="timestamp",
        descending=True,
    ))
    return [
        event_from_record(r, default_symbol)
        for r in snapshot
        if not r.get("isDeleted")
    ]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _validate_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"count must be an integer, got {value!r}")
    if value < 0:
        raise ValidationError(f"count must be >= 0, got {value}")
    return value


def _check_contest_open(store: DocumentStore, group_id: str) -> None:
    """Reject posting into a known contest outside its active window."""
    try:
        record = store.get(CONTESTS, group_id)
    except NotFoundError:
        return
    contest = contest_from_record(record)
    if not can_post(contest):
        raise ValidationError(
            f"Contest {group_id} is {contest_phase(contest)}; posting is closed"
        )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def create_event(
    store: DocumentStore, data: dict[str, Any], actor: Actor, cfg: TallyConfig,
) -> Event:
    """Log a new event for *actor* and credit the count to their total."""
    if not actor.id:
        raise ValidationError("Actor has no id")
    count = _validate_count(data.get("count"))
    group_id = str(data.get("groupId") or cfg.default_group_id)
    _check_contest_open(store, group_id)

    now = to_store_time(datetime.now(UTC))
    doc = {
        "participantId": actor.id,
        "participantName": actor.display_name,
        "groupId": group_id,
        "count": count,
        "timestamp": now,
        "reactions": {},
        "flags": [],
        "isDeleted": False,
    }
    for key in ("description", "image"):
        if data.get(key) is not None:
            doc[key] = str(data[key])

    batch = store.batch()
    event_id = batch.add(EVENTS, doc)
    try:
        store.get(PARTICIPANTS, actor.id)
    except NotFoundError:
        # first event from someone never seen before; a merged set still
        # increments if a concurrent writer created the participant first
        batch.set(PARTICIPANTS, actor.id, {
            "displayName": actor.display_name or actor.id,
            "totalScore": Increment(count),
            "createdAt": now,
            "lastActive": now,
        }, merge=True)
    else:
        batch.update(PARTICIPANTS, actor.id, {
            "totalScore": Increment(count),
            "lastActive": now,
        })
    store.commit(batch)

    logger.info("Event %s logged by %s (count=%d, group=%s)", event_id, actor.id, count, group_id)
    return event_from_record(store.get(EVENTS, event_id), cfg.default_reaction)


def update_event(
    store: DocumentStore, event_id: str, patch: dict[str, Any], actor: Actor,
) -> None:
    """Edit an event's count, description or image (owner only)."""
    if not patch:
        raise ValidationError("Empty event patch")
    unknown = set(patch) - EDITABLE_EVENT_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {sorted(unknown)}")

    record = store.get(EVENTS, event_id)
    owner_id = record.get("participantId")
    if owner_id != actor.id:
        raise ValidationError(f"{actor.id} may not edit event {event_id}")
    if record.get("isDeleted"):
        raise ValidationError(f"Event {event_id} is deleted")

    changes = dict(patch)
    delta = 0
    if "count" in changes:
        changes["count"] = _validate_count(changes["count"])
        delta = changes["count"] - int(record.get("count") or 0)

    batch = store.batch()
    batch.update(
        EVENTS, event_id, changes,
        expect={"isDeleted": False, "count": record.get("count")},
    )
    if delta and owner_id:
        batch.update(PARTICIPANTS, owner_id, {"totalScore": Increment(delta)})
    store.commit(batch)

    logger.info("Event %s edited by %s: %s (delta=%d)", event_id, actor.id, sorted(changes), delta)
