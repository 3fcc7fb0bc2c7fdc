"""
tests/test_store.py — Document Store Contract
==============================================
Field operations, ``expect`` preconditions, batch atomicity, cursor
paging and push subscriptions against the SQLite-backed store.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import seed_event, stamp
from tally.constants import EVENTS, PARTICIPANTS
from tally.errors import NotFoundError, PreconditionError, TransportError
from tally.store.base import (
    ArrayRemove,
    ArrayUnion,
    DeleteField,
    Increment,
    Query,
    apply_patch,
    matches_expectation,
)


# ===========================================================================
# Pure patch application
# ===========================================================================
class TestApplyPatch:
    def test_does_not_mutate_input(self):
        original = {"a": {"b": [1]}}
        apply_patch(original, {"a.b": ArrayUnion(2)})
        assert original == {"a": {"b": [1]}}

    def test_increment_missing_counts_as_zero(self):
        assert apply_patch({}, {"n": Increment(3)}) == {"n": 3}

    def test_array_union_skips_duplicates(self):
        out = apply_patch({"xs": ["a"]}, {"xs": ArrayUnion("a", "b")})
        assert out["xs"] == ["a", "b"]

    def test_array_remove_leaves_empty_list(self):
        out = apply_patch({"r": {"🔥": ["a"]}}, {"r.🔥": ArrayRemove("a")})
        assert out == {"r": {"🔥": []}}

    def test_delete_field(self):
        out = apply_patch({"a": 1, "b": 2}, {"a": DeleteField()})
        assert out == {"b": 2}

    def test_delete_missing_nested_is_noop(self):
        assert apply_patch({"a": 1}, {"x.y": DeleteField()}) == {"a": 1}

    def test_dotted_path_creates_maps(self):
        assert apply_patch({}, {"a.b.c": 1}) == {"a": {"b": {"c": 1}}}

    def test_bool_expectation_uses_truthiness(self):
        assert matches_expectation(None, False)
        assert not matches_expectation(None, True)
        assert matches_expectation(3, 3)


# ===========================================================================
# CRUD + field ops through the store
# ===========================================================================
class TestStoreWrites:
    def test_get_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.get(EVENTS, "nope")

    def test_add_then_get(self, store):
        rec = store.add(EVENTS, {"count": 2})
        assert store.get(EVENTS, rec.id).data == {"count": 2}

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.update(PARTICIPANTS, "ghost", {"totalScore": Increment(1)})

    def test_increment_applies_against_current(self, store):
        store.set(PARTICIPANTS, "p", {"totalScore": 5})
        store.update(PARTICIPANTS, "p", {"totalScore": Increment(3)})
        store.update(PARTICIPANTS, "p", {"totalScore": Increment(-1)})
        assert store.get(PARTICIPANTS, "p").get("totalScore") == 7

    def test_expect_failure_leaves_document(self, store):
        store.set(EVENTS, "e", {"count": 2, "isDeleted": True})
        with pytest.raises(PreconditionError) as excinfo:
            store.update(EVENTS, "e", {"count": 9}, expect={"isDeleted": False})
        assert excinfo.value.field == "isDeleted"
        assert store.get(EVENTS, "e").get("count") == 2

    def test_batch_is_all_or_nothing(self, store):
        store.set(PARTICIPANTS, "p", {"totalScore": 1})
        batch = store.batch()
        batch.update(PARTICIPANTS, "p", {"totalScore": Increment(10)})
        batch.update(PARTICIPANTS, "missing", {"totalScore": Increment(1)})
        with pytest.raises(NotFoundError):
            store.commit(batch)
        assert store.get(PARTICIPANTS, "p").get("totalScore") == 1

    def test_merged_set_creates_then_patches(self, store):
        store.set(PARTICIPANTS, "p", {"name": "P", "totalScore": Increment(2)}, merge=True)
        assert store.get(PARTICIPANTS, "p").data == {"name": "P", "totalScore": 2}
        store.set(PARTICIPANTS, "p", {"totalScore": Increment(3), "seen": True}, merge=True)
        assert store.get(PARTICIPANTS, "p").data == {"name": "P", "totalScore": 5, "seen": True}

    def test_plain_set_overwrites(self, store):
        store.set(PARTICIPANTS, "p", {"name": "P", "totalScore": 4})
        store.set(PARTICIPANTS, "p", {"totalScore": 1})
        assert store.get(PARTICIPANTS, "p").data == {"totalScore": 1}

    def test_empty_batch_rejected(self, store):
        with pytest.raises(ValueError):
            store.commit(store.batch())

    def test_delete(self, store):
        store.set(EVENTS, "e", {"count": 1})
        store.delete(EVENTS, "e")
        with pytest.raises(NotFoundError):
            store.get(EVENTS, "e")

    def test_driver_failure_becomes_transport_error(self, store):
        with patch("tally.store.sql_store.Session", side_effect=OperationalError("x", {}, Exception("down"))):
            with pytest.raises(TransportError):
                store.get(EVENTS, "e")


# ===========================================================================
# Queries & cursors
# ===========================================================================
class TestQueries:
    def test_order_desc_with_limit(self, store):
        for n in range(5):
            seed_event(store, "p", 1, timestamp=stamp(n), doc_id=f"e{n}")
        snap = store.query(Query(EVENTS, order_by="timestamp", descending=True, limit=3))
        assert [r.id for r in snap] == ["e4", "e3", "e2"]
        assert snap.is_full

    def test_cursor_continues_where_page_ended(self, store):
        for n in range(5):
            seed_event(store, "p", 1, timestamp=stamp(n), doc_id=f"e{n}")
        q = Query(EVENTS, order_by="timestamp", descending=True, limit=2)
        first = store.query(q)
        second = store.query(q.after(first.cursor()))
        assert [r.id for r in second] == ["e2", "e1"]

    def test_cursor_breaks_timestamp_ties_by_id(self, store):
        for doc_id in ("a", "b", "c"):
            seed_event(store, "p", 1, timestamp=stamp(0), doc_id=doc_id)
        q = Query(EVENTS, order_by="timestamp", descending=True, limit=1)
        seen = []
        snap = store.query(q)
        while len(snap):
            seen.extend(r.id for r in snap)
            snap = store.query(q.after(snap.cursor()))
        assert seen == ["c", "b", "a"]

    def test_where_filters(self, store):
        seed_event(store, "p", 1, doc_id="live")
        seed_event(store, "p", 1, doc_id="gone", isDeleted=True)
        snap = store.query(Query(EVENTS, where=(("isDeleted", True),)))
        assert [r.id for r in snap] == ["gone"]

    def test_numeric_order(self, store):
        store.set(PARTICIPANTS, "a", {"totalScore": 9})
        store.set(PARTICIPANTS, "b", {"totalScore": 10})
        store.set(PARTICIPANTS, "c", {"totalScore": 2})
        snap = store.query(Query(PARTICIPANTS, order_by="totalScore", descending=True, numeric_order=True))
        assert [r.id for r in snap] == ["b", "a", "c"]


# ===========================================================================
# Subscriptions
# ===========================================================================
class TestSubscriptions:
    def test_initial_snapshot_delivered(self, store):
        seed_event(store, "p", 1, doc_id="e1")
        received = []
        store.subscribe(Query(EVENTS), received.append)
        assert [r.id for r in received[0]] == ["e1"]

    def test_commit_pushes_full_snapshot(self, store):
        received = []
        store.subscribe(Query(EVENTS), received.append)
        seed_event(store, "p", 1, doc_id="e1")
        seed_event(store, "p", 1, doc_id="e2")
        assert [len(s) for s in received] == [0, 1, 2]

    def test_other_collections_not_pushed(self, store):
        received = []
        store.subscribe(Query(EVENTS), received.append)
        store.set(PARTICIPANTS, "p", {"totalScore": 0})
        assert len(received) == 1

    def test_cancel_stops_delivery_and_is_idempotent(self, store):
        received = []
        sub = store.subscribe(Query(EVENTS), received.append)
        sub.cancel()
        sub.cancel()
        seed_event(store, "p", 1)
        assert len(received) == 1
        assert store.subscription_count(EVENTS) == 0

    def test_query_failure_goes_to_on_error(self, store):
        on_error = MagicMock()
        with patch.object(store, "query", side_effect=TransportError("down")):
            store.subscribe(Query(EVENTS), MagicMock(), on_error)
        on_error.assert_called_once()

    def test_raising_callback_does_not_break_commit(self, store):
        store.subscribe(Query(EVENTS), MagicMock(side_effect=[None, RuntimeError("boom")]))
        seed_event(store, "p", 1, doc_id="e1")
        assert store.get(EVENTS, "e1").get("count") == 1
