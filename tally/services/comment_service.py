"""
tally.services.comment_service — Per-Event Comments
====================================================

Comments live in the nested collection ``events/<event_id>/comments``.
Text is validated before anything touches the store: it must contain
something other than whitespace and be at most ``comment_max_length``
characters long (the raw text, before trimming).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tally.constants import COMMENT_MAX_LENGTH, EVENTS, comments_collection
from tally.engine.entities import Actor, Comment, comment_from_record, to_store_time
from tally.errors import ValidationError
from tally.store.base import Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)


def validate_comment_text(text: str | None, max_length: int = COMMENT_MAX_LENGTH) -> str:
    """Return the trimmed comment body or raise :class:`ValidationError`."""
    if text is None or not text.strip():
        raise ValidationError("Comment cannot be empty")
    if len(text) > max_length:
        raise ValidationError(f"Comment exceeds {max_length} character limit")
    return text.strip()


def comments_query(event_id: str) -> Query:
    return Query(comments_collection(event_id), order_by="timestamp", descending=True)


def add_comment(
    store: DocumentStore,
    event_id: str,
    text: str,
    actor: Actor,
    *,
    max_length: int = COMMENT_MAX_LENGTH,
) -> Comment:
    body = validate_comment_text(text, max_length)
    store.get(EVENTS, event_id)  # parent must exist

    record = store.add(comments_collection(event_id), {
        "participantId": actor.id,
        "participantName": actor.display_name,
        "text": body,
        "timestamp": to_store_time(datetime.now(UTC)),
    })
    logger.debug("Comment %s added to event %s by %s", record.id, event_id, actor.id)
    return comment_from_record(record, event_id)


def delete_comment(store: DocumentStore, event_id: str, comment_id: str, actor: Actor) -> None:
    """Remove a comment.  Only its author or an administrator may do so."""
    collection = comments_collection(event_id)
    record = store.get(collection, comment_id)
    if not actor.is_admin and record.get("participantId") != actor.id:
        raise ValidationError(f"{actor.id} may not delete comment {comment_id}")
    store.delete(collection, comment_id)
    logger.info("Comment %s on event %s deleted by %s", comment_id, event_id, actor.id)


def list_comments(store: DocumentStore, event_id: str) -> list[Comment]:
    """Comments on *event_id*, newest first."""
    return [comment_from_record(r, event_id) for r in store.query(comments_query(event_id))]
