"""
tally.services.contest_service — Contest Windows
=================================================

Contests are stored under ``contests/<id>``; the id doubles as the
``groupId`` that events are logged against.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tally.constants import CONTESTS
from tally.engine.contest import pick_active_contest
from tally.engine.entities import (
    Actor,
    Contest,
    contest_from_record,
    parse_store_time,
    to_store_time,
)
from tally.errors import ValidationError
from tally.store.base import Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)

CONTEST_STATUSES = frozenset({"upcoming", "active", "review", "completed"})
_DATE_FIELDS = ("startDate", "endDate", "endOfReviewDate")
_CONTEST_FIELDS = frozenset({"name", "status", "isDefault", *_DATE_FIELDS})


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise ValidationError(f"{actor.id} may not {action} contests")


def _normalize(data: dict[str, Any]) -> dict[str, Any]:
    """Validate contest fields and serialize dates to store time."""
    unknown = set(data) - _CONTEST_FIELDS
    if unknown:
        raise ValidationError(f"Unknown contest fields: {sorted(unknown)}")

    out = dict(data)
    for key in _DATE_FIELDS:
        value = out.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(f"{key} is not an ISO timestamp: {value!r}") from None
        if not isinstance(value, datetime):
            raise ValidationError(f"{key} must be a timestamp")
        out[key] = to_store_time(value)

    status = out.get("status")
    if status is not None and status not in CONTEST_STATUSES:
        raise ValidationError(f"Unknown contest status: {status!r}")
    return out


def _check_window(data: dict[str, Any]) -> None:
    start = parse_store_time(data.get("startDate"))
    end = parse_store_time(data.get("endDate"))
    if start >= end:
        raise ValidationError("Contest must start before it ends")
    review = data.get("endOfReviewDate")
    if review and parse_store_time(review) < end:
        raise ValidationError("Review window cannot end before the contest does")


def list_contests(store: DocumentStore) -> list[Contest]:
    """All contests, latest start first."""
    snapshot = store.query(Query(CONTESTS, order_by="startDate", descending=True))
    return [contest_from_record(r) for r in snapshot]


def get_contest(store: DocumentStore, contest_id: str) -> Contest:
    return contest_from_record(store.get(CONTESTS, contest_id))


def get_active_contest(store: DocumentStore, now: datetime | None = None) -> Contest | None:
    return pick_active_contest(list_contests(store), now or datetime.now(UTC))


def add_contest(
    store: DocumentStore, data: dict[str, Any], actor: Actor, contest_id: str | None = None,
) -> Contest:
    _require_admin(actor, "create")
    fields = _normalize(data)
    for key in ("name", "startDate", "endDate"):
        if not fields.get(key):
            raise ValidationError(f"Contest field {key!r} is required")
    _check_window(fields)
    fields.setdefault("status", "upcoming")
    fields.setdefault("isDefault", False)

    doc_id = contest_id or store.new_id()
    store.set(CONTESTS, doc_id, fields)
    logger.info("Contest %s (%s) created by %s", doc_id, fields["name"], actor.id)
    return get_contest(store, doc_id)


def update_contest(
    store: DocumentStore, contest_id: str, patch: dict[str, Any], actor: Actor,
) -> Contest:
    _require_admin(actor, "edit")
    if not patch:
        raise ValidationError("Empty contest patch")
    fields = _normalize(patch)

    current = store.get(CONTESTS, contest_id).data
    _check_window({**current, **fields})

    store.update(CONTESTS, contest_id, fields)
    logger.info("Contest %s updated by %s: %s", contest_id, actor.id, sorted(fields))
    return get_contest(store, contest_id)


def delete_contest(store: DocumentStore, contest_id: str, actor: Actor) -> None:
    _require_admin(actor, "delete")
    store.get(CONTESTS, contest_id)
    store.delete(CONTESTS, contest_id)
    logger.info("Contest %s deleted by %s", contest_id, actor.id)
