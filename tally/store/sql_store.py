"""
tally.store.sql_store — SQLAlchemy Document Store
==================================================

Implements :class:`~tally.store.base.DocumentStore` on the single
``documents`` table.

Atomicity:
    Every write (single or batch) runs in one transaction.  Rows touched by
    an ``update`` are loaded with ``SELECT … FOR UPDATE`` (PostgreSQL) and
    field operations are applied to the locked row before commit.  Within a
    process, writers are additionally serialized by a lock.  On SQLite every
    thread shares one connection, so reads take the same lock: a reader
    session closing on that connection would otherwise end a writer's open
    transaction half-way.

Push delivery:
    After a commit, every live subscription on a touched collection re-runs
    its query and receives the full snapshot.  On PostgreSQL the commit also
    emits ``pg_notify('store_changed', …)`` so other processes can republish
    through :class:`~tally.store.change_feed.ChangeFeed`.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tally.database.models import Document
from tally.errors import NotFoundError, PreconditionError, TransportError
from tally.store.base import (
    BatchWrite,
    DocumentStore,
    ErrorCallback,
    Query,
    QuerySnapshot,
    Record,
    SnapshotCallback,
    Subscription,
    WriteBatch,
    apply_patch,
    get_field,
    matches_expectation,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# PG channel carrying ``{"collection": …, "origin": …}`` change payloads
NOTIFY_CHANNEL = "store_changed"


class SqlDocumentStore(DocumentStore):
    """Document store backed by SQLAlchemy.

    Usage::

        store = SqlDocumentStore(engine)
        rec = store.add("events", {"count": 2, "participantId": "p1"})
        store.update("participants", "p1", {"totalScore": Increment(2)})
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._postgres = engine.dialect.name == "postgresql"
        self.origin = uuid.uuid4().hex

        self._write_lock = threading.RLock()
        # SQLite: one shared connection, so every session is serialized
        self._serialize_reads = not self._postgres
        self._delivery_lock = threading.RLock()
        self._subs_lock = threading.Lock()
        # collection → live subscriptions
        self._subscriptions: dict[str, list[Subscription]] = {}

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def new_id(self) -> str:
        return uuid.uuid4().hex

    @contextmanager
    def _transport(self, action: str) -> Iterator[None]:
        """Translate driver failures into :class:`TransportError`."""
        try:
            yield
        except SQLAlchemyError as exc:
            raise TransportError(f"{action} failed: {exc}") from exc

    @contextmanager
    def _read_guard(self) -> Iterator[None]:
        if self._serialize_reads:
            with self._write_lock:
                yield
        else:
            yield

    @staticmethod
    def _to_record(row: Document) -> Record:
        return Record(row.collection, row.id, apply_patch(row.data or {}, {}))

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get(self, collection: str, doc_id: str) -> Record:
        with self._read_guard(), self._transport(f"get {collection}/{doc_id}"):
            with Session(self._engine) as session:
                row = session.get(Document, (collection, doc_id))
                if row is None:
                    raise NotFoundError(collection, doc_id)
                return self._to_record(row)

    def _order_expr(self, query: Query):
        column = Document.data[query.order_by]
        return column.as_float() if query.numeric_order else column.as_string()

    def _build_select(self, query: Query):
        stmt = select(Document).where(Document.collection == query.collection)

        for field_name, value in query.where:
            column = Document.data[field_name]
            if isinstance(value, bool):
                stmt = stmt.where(column.as_boolean() == value)
            elif isinstance(value, int):
                stmt = stmt.where(column.as_integer() == value)
            elif isinstance(value, float):
                stmt = stmt.where(column.as_float() == value)
            else:
                stmt = stmt.where(column.as_string() == str(value))

        if query.order_by:
            order = self._order_expr(query)
            if query.start_after is not None:
                cursor = query.start_after
                if query.descending:
                    stmt = stmt.where(or_(
                        order < cursor.order_value,
                        and_(order == cursor.order_value, Document.id < cursor.doc_id),
                    ))
                else:
                    stmt = stmt.where(or_(
                        order > cursor.order_value,
                        and_(order == cursor.order_value, Document.id > cursor.doc_id),
                    ))
            if query.descending:
                stmt = stmt.order_by(order.desc(), Document.id.desc())
            else:
                stmt = stmt.order_by(order.asc(), Document.id.asc())
        else:
            if query.start_after is not None:
                stmt = stmt.where(Document.id > query.start_after.doc_id)
            stmt = stmt.order_by(Document.id.asc())

        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        return stmt

    def query(self, query: Query) -> QuerySnapshot:
        with self._read_guard(), self._transport(f"query {query.collection}"):
            with Session(self._engine) as session:
                rows = session.scalars(self._build_select(query)).all()
                return QuerySnapshot(query, [self._to_record(r) for r in rows])

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def _locked_row(self, session: Session, collection: str, doc_id: str) -> Document | None:
        return session.get(Document, (collection, doc_id), with_for_update=True)

    def _apply(self, session: Session, write: BatchWrite) -> None:
        if write.kind in ("set", "add"):
            row = self._locked_row(session, write.collection, write.doc_id)
            if write.merge:
                current = row.data if row is not None else None
                data = apply_patch(current or {}, write.data)
            else:
                data = apply_patch(write.data, {})
            if row is None:
                session.add(Document(collection=write.collection, id=write.doc_id, data=data))
            else:
                row.data = data
            return

        row = self._locked_row(session, write.collection, write.doc_id)
        if row is None:
            raise NotFoundError(write.collection, write.doc_id)

        if write.kind == "delete":
            session.delete(row)
            return

        current = row.data or {}
        for field_name, expected in (write.expect or {}).items():
            actual = get_field(current, field_name)
            if not matches_expectation(actual, expected):
                raise PreconditionError(
                    write.collection, write.doc_id, field_name, expected, actual,
                )
        row.data = apply_patch(current, write.data)

    def commit(self, batch: WriteBatch) -> None:
        if not batch.writes:
            raise ValueError("Refusing to commit an empty batch")

        touched = {w.collection for w in batch.writes}
        with self._write_lock:
            with self._transport(f"commit of {len(batch)} write(s)"):
                with Session(self._engine) as session:
                    try:
                        for write in batch.writes:
                            self._apply(session, write)
                        if self._postgres:
                            for collection in touched:
                                self._notify_before_commit(session, collection)
                        session.commit()
                    except Exception:
                        session.rollback()
                        raise
        logger.debug("Committed %d write(s) to %s", len(batch), sorted(touched))
        self.publish(touched)

    def _notify_before_commit(self, session: Session, collection: str) -> None:
        """Queue a NOTIFY that fires atomically with the commit."""
        payload = json.dumps({"collection": collection, "origin": self.origin})
        session.execute(
            text("SELECT pg_notify(:channel, :payload)"),
            {"channel": NOTIFY_CHANNEL, "payload": payload},
        )

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        sub = Subscription(query, on_snapshot, on_error, self._unsubscribe)
        with self._subs_lock:
            self._subscriptions.setdefault(query.collection, []).append(sub)
        logger.debug("Subscribed to %s", query.collection)
        self._deliver(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._subs_lock:
            subs = self._subscriptions.get(sub.query.collection, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.query.collection, None)
        logger.debug("Unsubscribed from %s", sub.query.collection)

    def subscription_count(self, collection: str | None = None) -> int:
        with self._subs_lock:
            if collection is not None:
                return len(self._subscriptions.get(collection, []))
            return sum(len(v) for v in self._subscriptions.values())

    def publish(self, collections: set[str] | frozenset[str] | list[str]) -> None:
        """Re-run every live query on *collections* and deliver snapshots."""
        with self._subs_lock:
            targets = [
                sub
                for collection in collections
                for sub in self._subscriptions.get(collection, [])
            ]
        for sub in targets:
            self._deliver(sub)

    def _deliver(self, sub: Subscription) -> None:
        # Query + callback under one lock so snapshots arrive in commit order.
        with self._delivery_lock:
            if not sub.active:
                return
            try:
                snapshot = self.query(sub.query)
            except TransportError as exc:
                logger.warning("Snapshot query for %s failed: %s", sub.query.collection, exc)
                if sub.on_error is not None:
                    self._safe_call(sub.on_error, exc)
                return
            self._safe_call(sub.on_snapshot, snapshot)

    @staticmethod
    def _safe_call(callback: Any, arg: Any) -> None:
        try:
            callback(arg)
        except Exception:
            logger.exception("Subscription callback raised")
