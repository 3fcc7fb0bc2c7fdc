"""
tests/test_soft_delete.py — Soft Delete & Restore
==================================================
"""

from __future__ import annotations

import pytest

from conftest import seed_event, seed_participant
from tally.constants import EVENTS, PARTICIPANTS
from tally.errors import PreconditionError, ValidationError
from tally.services.soft_delete_service import delete_event, get_deleted_events, restore_event
from tally.store.base import Increment


def _total(store, pid: str) -> int:
    return store.get(PARTICIPANTS, pid).get("totalScore")


class TestDeleteRestore:
    def test_round_trip_restores_total(self, store, alice, admin):
        seed_participant(store, "alice", total=10)
        event_id = seed_event(store, "alice", 4)

        delete_event(store, event_id, alice)
        assert _total(store, "alice") == 6
        record = store.get(EVENTS, event_id)
        assert record.get("isDeleted") is True
        assert record.get("deletedBy") == "alice"

        restore_event(store, event_id, admin)
        assert _total(store, "alice") == 10
        record = store.get(EVENTS, event_id)
        assert record.get("isDeleted") is False
        assert "deletedAt" not in record.data
        assert "deletedBy" not in record.data

    def test_concurrent_increment_preserved(self, store, alice, admin):
        seed_participant(store, "alice", total=10)
        event_id = seed_event(store, "alice", 4)
        delete_event(store, event_id, alice)
        # another event lands while this one is deleted
        store.update(PARTICIPANTS, "alice", {"totalScore": Increment(3)})
        restore_event(store, event_id, admin)
        assert _total(store, "alice") == 13

    def test_double_delete_rejected(self, store, alice):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        delete_event(store, event_id, alice)
        with pytest.raises(ValidationError):
            delete_event(store, event_id, alice)
        assert _total(store, "alice") == 0

    def test_double_restore_rejected(self, store, alice, admin):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        delete_event(store, event_id, alice)
        restore_event(store, event_id, admin)
        with pytest.raises(ValidationError):
            restore_event(store, event_id, admin)
        assert _total(store, "alice") == 4

    def test_stale_read_rejected_by_store(self, store, alice):
        """A delete that raced another delete fails inside the transaction."""
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        stale = store.get(EVENTS, event_id)
        delete_event(store, event_id, alice)

        batch = store.batch()
        batch.update(EVENTS, event_id, {"isDeleted": True}, expect={"isDeleted": False, "count": stale.get("count")})
        batch.update(PARTICIPANTS, "alice", {"totalScore": Increment(-4)})
        with pytest.raises(PreconditionError):
            store.commit(batch)
        assert _total(store, "alice") == 0


class TestPermissions:
    def test_only_owner_or_admin_deletes(self, store, bob, admin):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        with pytest.raises(ValidationError):
            delete_event(store, event_id, bob)
        delete_event(store, event_id, admin)
        assert store.get(EVENTS, event_id).get("deletedBy") == "admin"

    def test_only_admin_restores(self, store, alice):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        delete_event(store, event_id, alice)
        with pytest.raises(ValidationError):
            restore_event(store, event_id, alice)


class TestDeletedListing:
    def test_lists_deleted_newest_first(self, store, alice):
        seed_participant(store, "alice", total=3)
        older = seed_event(store, "alice", 1, timestamp="2026-01-01T10:00:00.000000Z")
        newer = seed_event(store, "alice", 1, timestamp="2026-01-01T11:00:00.000000Z")
        seed_event(store, "alice", 1)
        delete_event(store, older, alice)
        delete_event(store, newer, alice)
        assert [e.id for e in get_deleted_events(store)] == [newer, older]
