"""
tally.errors — Error Taxonomy & Structured Error Logging
=========================================================

Four failure families cross the service boundary:

* :class:`ValidationError` — bad input caught before any write.  Services
  log it and return a falsy result.
* :class:`NotFoundError` — the target id is gone.  Propagated so the caller
  can refresh and retry.
* :class:`TransportError` — the store (database) failed.  Logged, surfaced
  as an error string, never retried automatically.
* :class:`ReconciliationError` — one part of a batch commit failed; its
  message lands in ``SyncResult.errors``.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class TallyError(Exception):
    """Base class for every error raised by tally."""


class ValidationError(TallyError):
    """Input rejected before reaching the store."""


class PreconditionError(ValidationError):
    """A store-side ``expect`` check failed inside the write transaction."""

    def __init__(self, collection: str, doc_id: str, field: str, expected, actual):
        super().__init__(
            f"{collection}/{doc_id}: expected {field}={expected!r}, found {actual!r}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        self.expected = expected
        self.actual = actual


class NotFoundError(TallyError):
    """The referenced document does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class TransportError(TallyError):
    """The store could not be reached or rejected the operation."""


class ReconciliationError(TallyError):
    """Part of a reconciliation batch could not be committed."""


def log_error(
    message: str,
    error: BaseException | None = None,
    *,
    context: str,
    action: str | None = None,
    participant_id: str | None = None,
    level: int = logging.ERROR,
) -> None:
    """Emit one structured diagnostic for a failed operation.

    ``context`` names the subsystem (``sync``, ``ledger`` …) and ``action``
    the operation.  Both travel in ``extra`` so handlers can index them.
    """
    logger.log(
        level,
        "[%s] %s%s",
        context,
        message,
        f": {error}" if error is not None else "",
        exc_info=error if isinstance(error, TransportError) else None,
        extra={
            "tally_context": context,
            "tally_action": action,
            "participant_id": participant_id,
        },
    )
