"""
tally.services.participant_service — Participant Profiles & Moderation
=======================================================================

Participant documents are keyed by the authenticated user's id.  The
``totalScore`` field is owned by event writes, soft delete and
reconciliation; nothing here touches it except the initial 0 on creation.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tally.constants import EDITABLE_PARTICIPANT_FIELDS, PARTICIPANTS
from tally.engine.entities import Actor, Participant, participant_from_record, to_store_time
from tally.errors import NotFoundError, ValidationError
from tally.store.base import DeleteField, Increment, Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)


def participants_query() -> Query:
    """Participants ordered by total score, highest first."""
    return Query(PARTICIPANTS, order_by="totalScore", descending=True, numeric_order=True)


def ensure_participant(store: DocumentStore, actor: Actor) -> Participant:
    """Create the participant on first sight, otherwise bump ``lastActive``."""
    if not actor.id:
        raise ValidationError("Actor has no id")

    now = to_store_time(datetime.now(UTC))
    try:
        store.get(PARTICIPANTS, actor.id)
    except NotFoundError:
        # Increment(0) keeps a total credited by a concurrent first event
        store.set(PARTICIPANTS, actor.id, {
            "displayName": actor.display_name or actor.id,
            "totalScore": Increment(0),
            "createdAt": now,
            "lastActive": now,
        }, merge=True)
        logger.info("Created participant %s (%s)", actor.id, actor.display_name)
    else:
        store.update(PARTICIPANTS, actor.id, {"lastActive": now})

    return participant_from_record(store.get(PARTICIPANTS, actor.id))


def update_participant(
    store: DocumentStore, participant_id: str, patch: dict[str, Any], actor: Actor,
) -> None:
    """Apply a profile edit.  Only ``displayName`` may change."""
    if not actor.is_admin and actor.id != participant_id:
        raise ValidationError(f"{actor.id} may not edit participant {participant_id}")
    if not patch:
        raise ValidationError("Empty participant patch")
    unknown = set(patch) - EDITABLE_PARTICIPANT_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {sorted(unknown)}")

    name = patch.get("displayName")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("displayName must be a non-empty string")

    store.update(PARTICIPANTS, participant_id, {"displayName": name.strip()})
    logger.info("Participant %s renamed to %r by %s", participant_id, name.strip(), actor.id)


def hide_participant(store: DocumentStore, participant_id: str, actor: Actor) -> None:
    """Hide a participant from the leaderboard (administrators only)."""
    if not actor.is_admin:
        raise ValidationError(f"{actor.id} may not hide participants")
    store.update(PARTICIPANTS, participant_id, {
        "isHidden": True,
        "hiddenAt": to_store_time(datetime.now(UTC)),
        "hiddenBy": actor.id,
    })
    logger.info("Participant %s hidden by %s", participant_id, actor.id)


def unhide_participant(store: DocumentStore, participant_id: str, actor: Actor) -> None:
    if not actor.is_admin:
        raise ValidationError(f"{actor.id} may not unhide participants")
    store.update(PARTICIPANTS, participant_id, {
        "isHidden": False,
        "hiddenAt": DeleteField(),
        "hiddenBy": DeleteField(),
    })
    logger.info("Participant %s unhidden by %s", participant_id, actor.id)


def get_hidden_participants(store: DocumentStore) -> list[Participant]:
    snapshot = store.query(Query(PARTICIPANTS, where=(("isHidden", True),)))
    return [participant_from_record(r) for r in snapshot]
