"""
tally.engine.entities — Domain Entities & Record Mappers
=========================================================

Raw store records are turned into immutable entities here, and only here.
Two boundary rules live in this module:

* **Legacy reactions.**  Old events carry a single ``upvotes`` list.  The
  mapper folds it into ``reactions[<default symbol>]`` as a pure transform;
  the stored document is left untouched until an explicit migration write
  (see :mod:`tally.services.ledger_service`).
* **Empty reaction sets.**  Removing the last member of a symbol leaves an
  empty list in the store.  Mappers drop empty symbols so consumers see an
  empty set and an absent key the same way.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tally.constants import DEFAULT_REACTION
from tally.store.base import Record

__all__ = [
    "Actor",
    "Comment",
    "Contest",
    "Event",
    "Participant",
    "comment_from_record",
    "contest_from_record",
    "event_from_record",
    "migrate_reactions",
    "needs_reaction_migration",
    "participant_from_record",
    "parse_store_time",
    "to_store_time",
]

_STORE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------
def to_store_time(value: datetime) -> str:
    """Serialize *value* as a fixed-width UTC string (sorts lexically)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_STORE_TIME_FORMAT)


def parse_store_time(value: Any, default: datetime | None = None) -> datetime:
    """Parse a stored timestamp; missing or unparsable values fall back to
    *default* (now, if not given).
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return default or datetime.now(UTC)


def _optional_time(value: Any) -> datetime | None:
    return parse_store_time(value) if value else None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Actor:
    """The authenticated identity performing a mutation."""

    id: str
    display_name: str = ""
    is_admin: bool = False


@dataclass(frozen=True, slots=True)
class Participant:
    id: str
    display_name: str
    total_score: int = 0
    created_at: datetime | None = None
    last_active: datetime | None = None
    is_hidden: bool = False
    hidden_at: datetime | None = None
    hidden_by: str | None = None


@dataclass(frozen=True, slots=True)
class Event:
    """One logged consumption record."""

    id: str
    participant_id: str
    group_id: str
    count: int
    timestamp: datetime
    participant_name: str = ""
    description: str | None = None
    image: str | None = None
    reactions: dict[str, frozenset[str]] = field(default_factory=dict)
    flags: frozenset[str] = frozenset()
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def flag_count(self) -> int:
        return len(self.flags)

    def reaction_counts(self) -> dict[str, int]:
        return {symbol: len(members) for symbol, members in self.reactions.items()}

    def reactions_of(self, participant_id: str) -> list[str]:
        """Symbols *participant_id* has attached to this event."""
        return sorted(s for s, members in self.reactions.items() if participant_id in members)


@dataclass(frozen=True, slots=True)
class Comment:
    id: str
    event_id: str
    participant_id: str
    text: str
    timestamp: datetime
    participant_name: str = ""


@dataclass(frozen=True, slots=True)
class Contest:
    """A contest window; events carry its id as ``groupId``."""

    id: str
    name: str
    start_date: datetime
    end_date: datetime
    end_of_review_date: datetime | None = None
    status: str = "upcoming"
    is_default: bool = False


# ---------------------------------------------------------------------------
# Legacy reaction migration (pure)
# ---------------------------------------------------------------------------
def needs_reaction_migration(data: Mapping[str, Any], default_symbol: str = DEFAULT_REACTION) -> bool:
    """True if *data* has legacy upvotes not yet folded into ``reactions``.

    Any list under the default symbol counts as migrated, including the
    empty list left after its last member un-reacted.
    """
    upvotes = data.get("upvotes") or []
    reactions = data.get("reactions") or {}
    return bool(upvotes) and default_symbol not in reactions


def migrate_reactions(
    data: Mapping[str, Any], default_symbol: str = DEFAULT_REACTION,
) -> dict[str, list[str]]:
    """Return the reaction map of *data* with legacy upvotes folded in.

    *data* is not modified.
    """
    reactions = {
        symbol: list(members or [])
        for symbol, members in (data.get("reactions") or {}).items()
    }
    if needs_reaction_migration(data, default_symbol):
        reactions[default_symbol] = list(dict.fromkeys(data.get("upvotes") or []))
    return reactions


# ---------------------------------------------------------------------------
# Record → entity mappers
# ---------------------------------------------------------------------------
def event_from_record(record: Record, default_symbol: str = DEFAULT_REACTION) -> Event:
    data = record.data
    reactions = {
        symbol: frozenset(members)
        for symbol, members in migrate_reactions(data, default_symbol).items()
        if members
    }
    return Event(
        id=record.id,
        participant_id=str(data.get("participantId", "")),
        participant_name=str(data.get("participantName", "")),
        group_id=str(data.get("groupId", "")),
        count=int(data.get("count") or 0),
        timestamp=parse_store_time(data.get("timestamp")),
        description=data.get("description"),
        image=data.get("image"),
        reactions=reactions,
        flags=frozenset(data.get("flags") or []),
        is_deleted=bool(data.get("isDeleted", False)),
        deleted_at=_optional_time(data.get("deletedAt")),
        deleted_by=data.get("deletedBy"),
    )


def participant_from_record(record: Record) -> Participant:
    data = record.data
    return Participant(
        id=record.id,
        display_name=str(data.get("displayName", "")),
        total_score=int(data.get("totalScore") or 0),
        created_at=parse_store_time(data.get("createdAt")),
        last_active=parse_store_time(data.get("lastActive")),
        is_hidden=bool(data.get("isHidden", False)),
        hidden_at=_optional_time(data.get("hiddenAt")),
        hidden_by=data.get("hiddenBy"),
    )


def comment_from_record(record: Record, event_id: str) -> Comment:
    data = record.data
    return Comment(
        id=record.id,
        event_id=event_id,
        participant_id=str(data.get("participantId", "")),
        participant_name=str(data.get("participantName", "")),
        text=str(data.get("text", "")),
        timestamp=parse_store_time(data.get("timestamp")),
    )


def contest_from_record(record: Record) -> Contest:
    data = record.data
    return Contest(
        id=record.id,
        name=str(data.get("name", "")),
        start_date=parse_store_time(data.get("startDate")),
        end_date=parse_store_time(data.get("endDate")),
        end_of_review_date=_optional_time(data.get("endOfReviewDate")),
        status=str(data.get("status", "upcoming")),
        is_default=bool(data.get("isDefault", False)),
    )
