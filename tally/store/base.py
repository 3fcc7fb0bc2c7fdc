"""
tally.store.base — Document Store Contract
===========================================

The services never talk to SQL.  They talk to a :class:`DocumentStore`: a
collection/id keyed document database with

* get / add / set / update / delete by id,
* atomic field operations inside ``update`` patches
  (:class:`Increment`, :class:`ArrayUnion`, :class:`ArrayRemove`,
  :class:`DeleteField`),
* all-or-nothing :class:`WriteBatch` commits,
* ordered, paginated queries (:class:`Query` + :class:`Cursor`),
* push subscriptions delivering full :class:`QuerySnapshot` replacements.

Race-safe changes (running totals, membership sets) must be expressed as
field operations so the store applies them against the current value inside
its own transaction.  Callers never read a value, compute, and write it back.

Patch keys may be dotted to reach into nested maps: ``{"reactions.🔥":
ArrayUnion("p1")}``.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "ArrayRemove",
    "ArrayUnion",
    "Cursor",
    "DeleteField",
    "DocumentStore",
    "Increment",
    "Query",
    "QuerySnapshot",
    "Record",
    "Subscription",
    "WriteBatch",
    "apply_patch",
    "get_field",
    "matches_expectation",
]


# ---------------------------------------------------------------------------
# Field operations
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Increment:
    """Add *delta* to a numeric field (missing counts as 0)."""

    delta: int | float


class ArrayUnion:
    """Append each value not already present (set-union on a JSON array)."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ArrayUnion) and other.values == self.values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of each value (set-difference)."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ArrayRemove) and other.values == self.values

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


@dataclass(frozen=True, slots=True)
class DeleteField:
    """Remove the field from the document."""


FIELD_OPS = (Increment, ArrayUnion, ArrayRemove, DeleteField)


# ---------------------------------------------------------------------------
# Patch application (shared by every adapter)
# ---------------------------------------------------------------------------
def get_field(data: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted *path* from *data*."""
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def _apply_op(current: Any, value: Any) -> tuple[bool, Any]:
    """Return ``(keep, new_value)`` for one patch entry."""
    if isinstance(value, DeleteField):
        return False, None
    if isinstance(value, Increment):
        return True, (current or 0) + value.delta
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for v in value.values:
            if v not in items:
                items.append(v)
        return True, items
    if isinstance(value, ArrayRemove):
        items = list(current) if isinstance(current, list) else []
        return True, [v for v in items if v not in value.values]
    return True, copy.deepcopy(value)


def apply_patch(data: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new document with *patch* applied to *data*.

    *data* is never mutated.  Intermediate maps along a dotted path are
    created on demand.
    """
    result = copy.deepcopy(dict(data))
    for path, value in patch.items():
        parts = path.split(".")
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if isinstance(value, DeleteField):
                    break
                child = {}
                node[part] = child
            node = child
        else:
            leaf = parts[-1]
            keep, new_value = _apply_op(node.get(leaf), value)
            if keep:
                node[leaf] = new_value
            else:
                node.pop(leaf, None)
    return result


def matches_expectation(actual: Any, expected: Any) -> bool:
    """Compare a stored value against an ``expect`` entry.

    Boolean expectations compare truthiness, so a missing flag counts as
    ``False``.
    """
    if isinstance(expected, bool):
        return bool(actual) is expected
    return actual == expected


# ---------------------------------------------------------------------------
# Records, queries, snapshots
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Record:
    """One stored document as returned by the store (a private copy)."""

    collection: str
    id: str
    data: dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        return get_field(self.data, path, default)


@dataclass(frozen=True, slots=True)
class Cursor:
    """Opaque pointer to the last row of a fetched page."""

    order_value: Any
    doc_id: str


@dataclass(frozen=True, slots=True)
class Query:
    """An ordered, optionally filtered and limited collection query.

    ``where`` holds equality filters as ``(field, value)`` pairs.  Set
    ``numeric_order`` when ``order_by`` names a number field so adapters
    compare numerically rather than as text.
    """

    collection: str
    where: tuple[tuple[str, Any], ...] = ()
    order_by: str | None = None
    descending: bool = False
    numeric_order: bool = False
    limit: int | None = None
    start_after: Cursor | None = None

    def after(self, cursor: Cursor | None) -> Query:
        return replace(self, start_after=cursor)


@dataclass(frozen=True, slots=True)
class QuerySnapshot:
    """Full result of one query execution."""

    query: Query
    records: list[Record] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    @property
    def is_full(self) -> bool:
        """True when the query had a limit and the window came back full."""
        return self.query.limit is not None and len(self.records) >= self.query.limit

    def cursor(self) -> Cursor | None:
        """Cursor positioned after the last raw row, or None if empty."""
        if not self.records:
            return None
        last = self.records[-1]
        order_value = last.get(self.query.order_by) if self.query.order_by else None
        return Cursor(order_value=order_value, doc_id=last.id)


# ---------------------------------------------------------------------------
# Write batches
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class BatchWrite:
    """One queued write inside a :class:`WriteBatch`."""

    kind: str  # "set" | "add" | "update" | "delete"
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    expect: dict[str, Any] | None = None
    merge: bool = False


class WriteBatch:
    """Collects writes that the store applies in a single transaction."""

    def __init__(self, id_factory: Callable[[], str]) -> None:
        self._id_factory = id_factory
        self.writes: list[BatchWrite] = []

    def __len__(self) -> int:
        return len(self.writes)

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False,
    ) -> WriteBatch:
        """Queue a full overwrite, or with *merge* an upsert.

        A merged set applies *data* as a patch (field operations included)
        to the stored document, or to an empty one if it does not exist.
        """
        self.writes.append(BatchWrite("set", collection, doc_id, dict(data), merge=merge))
        return self

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        """Queue a create with a fresh id and return that id."""
        doc_id = self._id_factory()
        self.writes.append(BatchWrite("add", collection, doc_id, dict(data)))
        return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> WriteBatch:
        self.writes.append(
            BatchWrite(
                "update", collection, doc_id, dict(patch),
                dict(expect) if expect else None,
            )
        )
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self.writes.append(BatchWrite("delete", collection, doc_id))
        return self


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------
SnapshotCallback = Callable[[QuerySnapshot], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle for one live query.  ``cancel()`` is idempotent."""

    def __init__(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
        on_cancel: Callable[[Subscription], None],
    ) -> None:
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self._on_cancel = on_cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._on_cancel(self)


# ---------------------------------------------------------------------------
# The contract
# ---------------------------------------------------------------------------
class DocumentStore(ABC):
    """Abstract document store.  All failures surface as ``TransportError``;
    missing documents raise ``NotFoundError``; failed ``expect`` checks raise
    ``PreconditionError``.
    """

    @abstractmethod
    def new_id(self) -> str:
        """Return a fresh document id."""

    def batch(self) -> WriteBatch:
        return WriteBatch(self.new_id)

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Record: ...

    @abstractmethod
    def query(self, query: Query) -> QuerySnapshot: ...

    @abstractmethod
    def commit(self, batch: WriteBatch) -> None:
        """Apply every write in *batch* atomically.

        Raises ``ValueError`` for an empty batch.
        """

    @abstractmethod
    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Deliver the current snapshot now and a fresh one after every
        committed write to ``query.collection``.
        """

    # -- single-write conveniences ------------------------------------------
    def add(self, collection: str, data: Mapping[str, Any]) -> Record:
        batch = self.batch()
        doc_id = batch.add(collection, data)
        self.commit(batch)
        return Record(collection, doc_id, copy.deepcopy(dict(data)))

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False,
    ) -> None:
        self.commit(self.batch().set(collection, doc_id, data, merge=merge))

    def update(
        self,
        collection: str,
        doc_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> None:
        self.commit(self.batch().update(collection, doc_id, patch, expect=expect))

    def delete(self, collection: str, doc_id: str) -> None:
        self.commit(self.batch().delete(collection, doc_id))
