"""
tally.services.reconciliation_service — Aggregate Reconciliation
=================================================================

Validates each participant's stored ``totalScore`` against the events that
feed it and corrects drift.

How it works:
    1. Read every event and every participant.
    2. Sum ``count`` per participant over events that are not soft-deleted.
    3. Compare against the stored ``totalScore``.
    4. Queue a single-field update for every mismatch and commit them all in
       one atomic batch.  No mismatch → no write at all.
    5. Log every correction for audit.

Running it twice with no mutation in between corrects nothing the second
time.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tally.constants import EVENTS, PARTICIPANTS
from tally.errors import NotFoundError, ReconciliationError, TransportError, log_error
from tally.store.base import Query

if TYPE_CHECKING:
    from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    """Outcome of one reconciliation run."""

    updated_count: int = 0
    errors: list[str] = field(default_factory=list)
    corrections: list[dict] = field(default_factory=list)
    checked: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


def compute_actual_totals(store: DocumentStore) -> dict[str, int]:
    """Σ ``count`` per participant over non-deleted events.

    Raises :class:`TransportError` if the events cannot be read.
    """
    totals: dict[str, int] = defaultdict(int)
    for record in store.query(Query(EVENTS)):
        if record.get("isDeleted"):
            continue
        participant_id = record.get("participantId")
        if not participant_id:
            logger.warning("Event %s has no participantId — skipped", record.id)
            continue
        totals[str(participant_id)] += int(record.get("count") or 0)
    return dict(totals)


def sync_aggregates(store: DocumentStore) -> SyncResult:
    """Recompute every participant's total and fix the ones that drifted.

    Read failures raise :class:`TransportError` (nothing is written).
    Commit failures are reported in ``SyncResult.errors`` with
    ``updated_count == 0`` since the batch is all-or-nothing.
    """
    actual = compute_actual_totals(store)
    participants = store.query(Query(PARTICIPANTS))

    known = {p.id for p in participants}
    orphans = sorted(set(actual) - known)
    if orphans:
        logger.warning(
            "Aggregate reconciliation: events reference %d unknown participant(s): %s",
            len(orphans), orphans,
        )

    batch = store.batch()
    corrections: list[dict] = []
    for record in participants:
        stored = int(record.get("totalScore") or 0)
        target = actual.get(record.id, 0)
        if stored != target:
            corrections.append({
                "participant_id": record.id,
                "stored": stored,
                "actual": target,
                "diff": target - stored,
            })
            batch.update(PARTICIPANTS, record.id, {"totalScore": target})

    checked = len(participants)
    if not corrections:
        logger.info("Aggregate reconciliation: all %d totals match", checked)
        return SyncResult(updated_count=0, checked=checked)

    try:
        store.commit(batch)
    except (TransportError, NotFoundError) as exc:
        error = ReconciliationError(
            f"Failed to commit {len(corrections)} total correction(s): {exc}"
        )
        log_error(
            "Aggregate reconciliation commit failed", error,
            context="reconciliation", action="commit",
        )
        return SyncResult(
            updated_count=0,
            errors=[str(error)],
            corrections=corrections,
            checked=checked,
        )

    logger.warning(
        "Aggregate reconciliation: corrected %d/%d totals: %s",
        len(corrections), checked, corrections,
    )
    return SyncResult(
        updated_count=len(corrections),
        corrections=corrections,
        checked=checked,
    )
