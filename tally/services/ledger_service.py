"""
tally.services.ledger_service — Reactions, Flags & Legacy Migration
====================================================================

Per-event membership sets:

* ``reactions.<symbol>`` — participant ids who attached that symbol
* ``flags``              — participant ids who marked the event suspicious

Every toggle reads the event only to decide *direction*, then issues one
atomic ``ArrayUnion`` (add) or ``ArrayRemove`` (remove).  The membership
change itself is never written back as a whole list, so two participants
toggling at once both land.

Removing the last member leaves an empty list under the symbol in the
store; the entity mapper hides it.

Legacy events carry an ``upvotes`` list from before multi-symbol
reactions.  The first toggle on such an event performs an explicit, logged
migration write before the toggle, and :func:`migrate_legacy_reactions`
does the same for every event in bulk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tally.constants import DEFAULT_FLAG_THRESHOLD, DEFAULT_REACTION, EVENTS, MAX_BATCH_SIZE
from tally.engine.entities import (
    Event,
    event_from_record,
    migrate_reactions,
    needs_reaction_migration,
)
from tally.errors import NotFoundError, TransportError, ValidationError
from tally.store.base import ArrayRemove, ArrayUnion, DeleteField, Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore, Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MigrationResult:
    migrated: int
    skipped: int
    errors: int


def _validate_symbol(symbol: str) -> None:
    if not symbol or not symbol.strip():
        raise ValidationError("Reaction symbol must not be empty")
    if "." in symbol:
        raise ValidationError(f"Reaction symbol may not contain '.': {symbol!r}")


def _migration_patch(data: dict, default_symbol: str) -> dict:
    upvotes = list(dict.fromkeys(data.get("upvotes") or []))
    return {
        f"reactions.{default_symbol}": ArrayUnion(*upvotes),
        "upvotes": DeleteField(),
    }


def migrate_event_reactions(
    store: DocumentStore, record: Record, default_symbol: str = DEFAULT_REACTION,
) -> bool:
    """Fold one event's legacy upvotes into ``reactions``.

    Returns False if the event needed no migration.
    """
    if not needs_reaction_migration(record.data, default_symbol):
        return False
    logger.info(
        "Migrating %d legacy upvote(s) on event %s into reactions[%s]",
        len(record.get("upvotes") or []), record.id, default_symbol,
    )
    store.update(EVENTS, record.id, _migration_patch(record.data, default_symbol))
    return True


def toggle_reaction(
    store: DocumentStore,
    event_id: str,
    participant_id: str,
    symbol: str,
    *,
    default_symbol: str = DEFAULT_REACTION,
) -> bool:
    """Add or remove *participant_id* under *symbol*.

    Returns True if the participant is a member afterwards.
    """
    _validate_symbol(symbol)
    if not participant_id:
        raise ValidationError("participant_id is required")

    record = store.get(EVENTS, event_id)
    migrate_event_reactions(store, record, default_symbol)

    members = migrate_reactions(record.data, default_symbol).get(symbol, [])
    was_member = participant_id in members
    op = ArrayRemove(participant_id) if was_member else ArrayUnion(participant_id)
    store.update(EVENTS, event_id, {f"reactions.{symbol}": op})

    logger.debug(
        "Reaction %s on %s %s by %s",
        symbol, event_id, "removed" if was_member else "added", participant_id,
    )
    return not was_member


def toggle_flag(store: DocumentStore, event_id: str, participant_id: str) -> bool:
    """Add or remove *participant_id* from the flag set.

    Returns True if the event is flagged by the participant afterwards.
    """
    if not participant_id:
        raise ValidationError("participant_id is required")

    record = store.get(EVENTS, event_id)
    was_member = participant_id in (record.get("flags") or [])
    op = ArrayRemove(participant_id) if was_member else ArrayUnion(participant_id)
    store.update(EVENTS, event_id, {"flags": op})

    logger.info(
        "Flag on %s %s by %s",
        event_id, "removed" if was_member else "added", participant_id,
    )
    return not was_member


def clear_flags(store: DocumentStore, event_id: str) -> None:
    """Reset the flag set to empty (administrative)."""
    store.update(EVENTS, event_id, {"flags": []})
    logger.info("Flags cleared on event %s", event_id)


def list_flagged(store: DocumentStore, threshold: int = DEFAULT_FLAG_THRESHOLD) -> list[Event]:
    """Every event with at least *threshold* flags, most-flagged first."""
    if threshold < 0:
        raise ValidationError(f"threshold must be >= 0, got {threshold}")

    events = [
        event_from_record(r)
        for r in store.query(Query(EVENTS))
        if len(r.get("flags") or []) >= threshold
    ]
    events.sort(key=lambda e: (e.flag_count, e.timestamp), reverse=True)
    return events


def migrate_legacy_reactions(
    store: DocumentStore, default_symbol: str = DEFAULT_REACTION,
) -> MigrationResult:
    """Migrate every event still carrying legacy upvotes.

    Writes are committed in batches of at most ``MAX_BATCH_SIZE``; a failed
    batch counts all of its events as errors and the run continues.
    """
    migrated = skipped = errors = 0
    batch = store.batch()

    def _flush() -> None:
        nonlocal batch, migrated, errors
        if not batch.writes:
            return
        size = len(batch)
        try:
            store.commit(batch)
            migrated += size
        except (TransportError, NotFoundError) as exc:
            logger.error("Legacy reaction migration batch of %d failed: %s", size, exc)
            errors += size
        batch = store.batch()

    for record in store.query(Query(EVENTS)):
        if not needs_reaction_migration(record.data, default_symbol):
            skipped += 1
            continue
        batch.update(EVENTS, record.id, _migration_patch(record.data, default_symbol))
        if len(batch) >= MAX_BATCH_SIZE:
            _flush()
    _flush()

    logger.info(
        "Legacy reaction migration completed: %d migrated, %d skipped, %d errors",
        migrated, skipped, errors,
    )
    return MigrationResult(migrated=migrated, skipped=skipped, errors=errors)
