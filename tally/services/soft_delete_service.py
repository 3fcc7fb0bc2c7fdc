"""
tally.services.soft_delete_service — Soft Delete & Restore
===========================================================

Events are never physically removed by the app.  Deleting marks the event
and takes its ``count`` back out of the owner's total; restoring reverses
both.  Each side is one atomic batch:

* the event update carries ``expect`` guards on ``isDeleted`` and
  ``count``, so a second delete (or restore) of the same event, or a count
  edit racing with it, fails instead of double-adjusting the total;
* the total moves by an ``Increment`` so concurrent new events from the
  same participant are never lost.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tally.constants import EVENTS, PARTICIPANTS
from tally.engine.entities import Actor, Event, event_from_record, to_store_time
from tally.errors import ValidationError
from tally.store.base import DeleteField, Increment, Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)


def delete_event(store: DocumentStore, event_id: str, actor: Actor) -> None:
    """Soft-delete *event_id* and subtract its count from the owner's total.

    Allowed for the event's owner and for administrators.
    """
    record = store.get(EVENTS, event_id)
    owner_id = record.get("participantId")
    if not actor.is_admin and owner_id != actor.id:
        raise ValidationError(f"{actor.id} may not delete event {event_id}")
    if record.get("isDeleted"):
        raise ValidationError(f"Event {event_id} is already deleted")

    count = int(record.get("count") or 0)
    batch = store.batch()
    batch.update(
        EVENTS, event_id,
        {
            "isDeleted": True,
            "deletedAt": to_store_time(datetime.now(UTC)),
            "deletedBy": actor.id,
        },
        expect={"isDeleted": False, "count": record.get("count")},
    )
    if count and owner_id:
        batch.update(PARTICIPANTS, owner_id, {"totalScore": Increment(-count)})
    store.commit(batch)

    logger.info(
        "Event %s soft-deleted by %s (owner=%s, count=%d)",
        event_id, actor.id, owner_id, count,
    )


def restore_event(store: DocumentStore, event_id: str, actor: Actor) -> None:
    """Undo a soft delete and add the count back (administrators only)."""
    if not actor.is_admin:
        raise ValidationError(f"{actor.id} may not restore events")

    record = store.get(EVENTS, event_id)
    if not record.get("isDeleted"):
        raise ValidationError(f"Event {event_id} is not deleted")

    owner_id = record.get("participantId")
    count = int(record.get("count") or 0)
    batch = store.batch()
    batch.update(
        EVENTS, event_id,
        {"isDeleted": False, "deletedAt": DeleteField(), "deletedBy": DeleteField()},
        expect={"isDeleted": True, "count": record.get("count")},
    )
    if count and owner_id:
        batch.update(PARTICIPANTS, owner_id, {"totalScore": Increment(count)})
    store.commit(batch)

    logger.info(
        "Event %s restored by %s (owner=%s, count=%d)",
        event_id, actor.id, owner_id, count,
    )


def get_deleted_events(store: DocumentStore) -> list[Event]:
    """Soft-deleted events for admin review, newest first."""
    snapshot = store.query(Query(
        EVENTS,
        where=(("isDeleted", True),),
        order_by="timestamp",
        descending=True,
    ))
    return [event_from_record(r) for r in snapshot]
