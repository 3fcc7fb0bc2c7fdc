"""
tests/test_event_service.py — Event Writes, Paging & Participants
==================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from conftest import seed_event, seed_participant, stamp
from tally.constants import CONTESTS, EVENTS, PARTICIPANTS
from tally.engine.entities import to_store_time
from tally.errors import NotFoundError, PreconditionError, ValidationError
from tally.services import event_service, participant_service
from tally.store.base import Increment


def _total(store, pid: str) -> int:
    return store.get(PARTICIPANTS, pid).get("totalScore")


class TestCreateEvent:
    def test_credits_total_in_same_batch(self, store, cfg, alice):
        seed_participant(store, "alice", total=2)
        event = event_service.create_event(store, {"count": 5, "description": "lunch"}, alice, cfg)
        assert event.count == 5
        assert event.group_id == "hotdog-contest"
        assert event.description == "lunch"
        assert _total(store, "alice") == 7

    def test_creates_unknown_participant(self, store, cfg, bob):
        event_service.create_event(store, {"count": 3}, bob, cfg)
        assert _total(store, "bob") == 3
        assert store.get(PARTICIPANTS, "bob").get("displayName") == "Bob"

    @pytest.mark.parametrize("count", [-1, "3", 2.5, True, None])
    def test_bad_count_rejected(self, store, cfg, alice, count):
        with pytest.raises(ValidationError):
            event_service.create_event(store, {"count": count}, alice, cfg)
        assert len(store.query(event_service.events_query())) == 0

    def test_zero_count_allowed(self, store, cfg, alice):
        seed_participant(store, "alice", total=1)
        event_service.create_event(store, {"count": 0}, alice, cfg)
        assert _total(store, "alice") == 1

    def test_closed_contest_rejected(self, store, cfg, alice):
        past = datetime.now(UTC) - timedelta(days=3)
        store.set(CONTESTS, "old", {
            "name": "Old",
            "startDate": to_store_time(past),
            "endDate": to_store_time(past + timedelta(hours=1)),
        })
        with pytest.raises(ValidationError, match="posting is closed"):
            event_service.create_event(store, {"count": 1, "groupId": "old"}, alice, cfg)

    def test_active_contest_accepted(self, store, cfg, alice):
        now = datetime.now(UTC)
        store.set(CONTESTS, "live", {
            "name": "Live",
            "startDate": to_store_time(now - timedelta(hours=1)),
            "endDate": to_store_time(now + timedelta(hours=1)),
        })
        event = event_service.create_event(store, {"count": 1, "groupId": "live"}, alice, cfg)
        assert event.group_id == "live"


class TestUpdateEvent:
    def test_count_edit_moves_total_by_delta(self, store, alice):
        seed_participant(store, "alice", total=10)
        event_id = seed_event(store, "alice", 4)
        event_service.update_event(store, event_id, {"count": 6}, alice)
        assert _total(store, "alice") == 12
        assert store.get(EVENTS, event_id).get("count") == 6

    def test_description_only_leaves_total(self, store, alice):
        seed_participant(store, "alice", total=10)
        event_id = seed_event(store, "alice", 4)
        event_service.update_event(store, event_id, {"description": "edited"}, alice)
        assert _total(store, "alice") == 10

    def test_owner_only(self, store, bob, admin):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        for actor in (bob, admin):
            with pytest.raises(ValidationError):
                event_service.update_event(store, event_id, {"count": 1}, actor)

    def test_unknown_field_rejected(self, store, alice):
        event_id = seed_event(store, "alice", 4)
        with pytest.raises(ValidationError):
            event_service.update_event(store, event_id, {"participantId": "bob"}, alice)

    def test_deleted_event_rejected(self, store, alice):
        event_id = seed_event(store, "alice", 4, isDeleted=True)
        with pytest.raises(ValidationError):
            event_service.update_event(store, event_id, {"count": 1}, alice)

    def test_missing_event(self, store, alice):
        with pytest.raises(NotFoundError):
            event_service.update_event(store, "ghost", {"count": 1}, alice)

    def test_racing_count_edit_rejected(self, store):
        seed_participant(store, "alice", total=4)
        event_id = seed_event(store, "alice", 4)
        store.update(EVENTS, event_id, {"count": 9})
        batch = store.batch()
        batch.update(EVENTS, event_id, {"count": 5}, expect={"isDeleted": False, "count": 4})
        batch.update(PARTICIPANTS, "alice", {"totalScore": Increment(1)})
        with pytest.raises(PreconditionError):
            store.commit(batch)


class TestPaging:
    def test_page_skips_deleted_and_truncates(self, store):
        for n in range(12):
            seed_event(store, "a", 1, timestamp=stamp(n), doc_id=f"e{n:02d}", isDeleted=(n % 3 == 0))
        snapshot = store.query(event_service.events_query(limit=20))
        page = event_service.page_events(snapshot, page_size=5, default_symbol="👍")

        assert [e.id for e in page.items] == ["e11", "e10", "e08", "e07", "e05"]
        assert page.cursor.doc_id == "e05"
        assert page.has_more

    def test_short_raw_window_has_no_more(self, store):
        for n in range(3):
            seed_event(store, "a", 1, timestamp=stamp(n))
        snapshot = store.query(event_service.events_query(limit=20))
        page = event_service.page_events(snapshot, page_size=10, default_symbol="👍")
        assert len(page.items) == 3
        assert not page.has_more

    def test_full_window_of_deleted_is_short_page(self, store):
        for n in range(4):
            seed_event(store, "a", 1, timestamp=stamp(n), isDeleted=True)
        snapshot = store.query(event_service.events_query(limit=4))
        page = event_service.page_events(snapshot, page_size=2, default_symbol="👍")
        assert page.items == []
        assert page.has_more

    def test_group_filter(self, store):
        seed_event(store, "a", 1, doc_id="in", groupId="g1")
        seed_event(store, "a", 1, doc_id="out", groupId="g2")
        assert [r.id for r in store.query(event_service.events_query("g1"))] == ["in"]

    def test_journal(self, store):
        seed_event(store, "alice", 1, timestamp=stamp(1), doc_id="old")
        seed_event(store, "alice", 2, timestamp=stamp(2), doc_id="gone", isDeleted=True)
        seed_event(store, "alice", 3, timestamp=stamp(3), doc_id="new")
        seed_event(store, "bob", 3, timestamp=stamp(4))
        assert [e.id for e in event_service.journal(store, "alice", "👍")] == ["new", "old"]


class TestParticipants:
    def test_ensure_creates_then_touches(self, store, alice):
        first = participant_service.ensure_participant(store, alice)
        assert first.total_score == 0
        assert first.display_name == "Alice"
        store.update(PARTICIPANTS, "alice", {"totalScore": 5})
        again = participant_service.ensure_participant(store, alice)
        assert again.total_score == 5

    def test_rename(self, store, alice, bob):
        seed_participant(store, "alice")
        participant_service.update_participant(store, "alice", {"displayName": " Al "}, alice)
        assert store.get(PARTICIPANTS, "alice").get("displayName") == "Al"
        with pytest.raises(ValidationError):
            participant_service.update_participant(store, "alice", {"displayName": "X"}, bob)
        with pytest.raises(ValidationError):
            participant_service.update_participant(store, "alice", {"totalScore": 99}, alice)

    def test_hide_unhide(self, store, alice, admin):
        seed_participant(store, "alice")
        with pytest.raises(ValidationError):
            participant_service.hide_participant(store, "alice", alice)
        participant_service.hide_participant(store, "alice", admin)
        hidden = participant_service.get_hidden_participants(store)
        assert [p.id for p in hidden] == ["alice"]
        assert hidden[0].hidden_by == "admin"

        participant_service.unhide_participant(store, "alice", admin)
        assert participant_service.get_hidden_participants(store) == []
        assert "hiddenBy" not in store.get(PARTICIPANTS, "alice").data
