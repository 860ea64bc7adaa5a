# backend/tests/repositories/test_slot_repository.py
"""
Tests for SlotRepository.

Covers the idempotent sync upsert, the compare-and-swap transition guard
and the candidate query used by reservations.
"""

from datetime import datetime, timezone

import pytest
from tests.factories import DEC_10_0900, HOUR, make_provider, make_slot

from bloom_booking.core.exceptions import InvariantViolation
from bloom_booking.repositories.slot_repository import (
    BOOKED,
    CANCELLED,
    FREE,
    HELD,
    LeaseCondition,
    SlotRepository,
    SlotWindow,
)

SYNCED_AT = datetime(2025, 12, 1, tzinfo=timezone.utc)


def window(external_id: str, start: int = DEC_10_0900, end: int = DEC_10_0900 + HOUR) -> SlotWindow:
    return SlotWindow(
        external_slot_id=external_id, start_unix=start, end_unix=end, location_type="in-person"
    )


@pytest.fixture
def repo(db) -> SlotRepository:
    return SlotRepository(db)


class TestUpsertSlots:
    """Sync reconciliation keyed by external slot id."""

    def test_inserts_new_windows_as_free(self, db, repo, provider):
        second = window("ext-2", start=DEC_10_0900 + HOUR, end=DEC_10_0900 + 2 * HOUR)
        result = repo.upsert_slots(provider.id, [window("ext-1"), second], SYNCED_AT)
        db.commit()

        assert result.created == 2
        slot = repo.get_by_external_id("ext-1")
        assert slot.status == FREE
        assert slot.duration_minutes == 60
        assert slot.is_bookable is True

    def test_repeat_is_idempotent(self, db, repo, provider):
        repo.upsert_slots(provider.id, [window("ext-1")], SYNCED_AT)
        db.commit()
        result = repo.upsert_slots(provider.id, [window("ext-1")], SYNCED_AT)
        db.commit()

        assert result.created == 0
        assert result.updated == 1
        assert len(repo.find_by(provider_id=provider.id)) == 1

    def test_held_and_booked_rows_are_left_untouched(self, db, repo, provider):
        held = make_slot(db, provider, external_slot_id="ext-held", status=HELD,
                         lock_token="tok", held_by="patient-1", lock_expires_unix=DEC_10_0900)
        booked = make_slot(db, provider, start_unix=DEC_10_0900 + HOUR,
                           external_slot_id="ext-booked", status=BOOKED)

        result = repo.upsert_slots(
            provider.id,
            [window("ext-held", end=DEC_10_0900 + 2 * HOUR), window("ext-booked", start=DEC_10_0900)],
            SYNCED_AT,
        )
        db.commit()
        db.refresh(held)
        db.refresh(booked)

        assert result.skipped == 2
        assert held.status == HELD
        assert held.end_unix == DEC_10_0900 + HOUR
        assert held.lock_token == "tok"
        assert booked.start_unix == DEC_10_0900 + HOUR

    def test_administrative_block_survives_refresh(self, db, repo, provider):
        blocked = make_slot(db, provider, external_slot_id="ext-1", is_bookable=False)

        repo.upsert_slots(provider.id, [window("ext-1")], SYNCED_AT)
        db.commit()
        db.refresh(blocked)

        assert blocked.is_bookable is False


class TestTransition:
    """Compare-and-swap transitions and the audit log."""

    def test_free_to_held_writes_audit_row(self, db, repo, provider):
        slot = make_slot(db, provider)

        won = repo.transition(
            slot.id, FREE, HELD, actor="patient-1", now_unix=DEC_10_0900 - HOUR,
            new_token="tok-1", held_by="patient-1", expires_unix=DEC_10_0900 - HOUR + 600,
        )
        db.commit()

        assert won is True
        refreshed = repo.get_by_id(slot.id)
        assert refreshed.status == HELD
        assert refreshed.lock_token == "tok-1"
        transitions = repo.list_transitions(slot.id)
        assert [(t.from_status, t.to_status, t.actor) for t in transitions] == [
            (FREE, HELD, "patient-1")
        ]

    def test_status_mismatch_returns_false_without_audit(self, db, repo, provider):
        slot = make_slot(db, provider, status=BOOKED)

        won = repo.transition(
            slot.id, FREE, HELD, actor="patient-1", now_unix=DEC_10_0900,
            new_token="tok-1", expires_unix=DEC_10_0900 + 600,
        )

        assert won is False
        assert repo.list_transitions(slot.id) == []

    def test_wrong_token_returns_false(self, db, repo, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="right",
                         lock_expires_unix=DEC_10_0900 + 600)

        won = repo.transition(
            slot.id, HELD, FREE, actor="patient-1", now_unix=DEC_10_0900,
            expected_token="wrong", lease=LeaseCondition.LIVE,
        )

        assert won is False
        db.refresh(slot)
        assert slot.status == HELD

    def test_live_lease_condition_rejects_expired_hold(self, db, repo, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="tok",
                         lock_expires_unix=DEC_10_0900)

        assert repo.transition(
            slot.id, HELD, BOOKED, actor="patient-1", now_unix=DEC_10_0900,
            expected_token="tok", lease=LeaseCondition.LIVE,
        ) is False

    def test_expired_lease_condition_allows_reclaim(self, db, repo, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="tok",
                         held_by="patient-1", lock_expires_unix=DEC_10_0900)

        assert repo.transition(
            slot.id, HELD, FREE, actor="reaper", now_unix=DEC_10_0900,
            expected_token="tok", lease=LeaseCondition.EXPIRED,
        ) is True
        db.commit()
        db.refresh(slot)
        assert slot.status == FREE
        assert slot.lock_token is None
        assert slot.held_by is None
        assert slot.lock_expires_unix is None

    def test_booking_keeps_holder_but_ends_lease(self, db, repo, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="tok",
                         held_by="patient-1", lock_expires_unix=DEC_10_0900 + 600)

        assert repo.transition(
            slot.id, HELD, BOOKED, actor="patient-1", now_unix=DEC_10_0900,
            expected_token="tok", lease=LeaseCondition.LIVE,
        )
        db.commit()
        db.refresh(slot)

        assert slot.status == BOOKED
        assert slot.held_by == "patient-1"
        assert slot.lock_token is None

    @pytest.mark.parametrize(
        "from_status,to_status",
        [(FREE, BOOKED), (BOOKED, HELD), (CANCELLED, HELD), (BOOKED, FREE)],
    )
    def test_disallowed_edges_raise(self, db, repo, provider, from_status, to_status):
        slot = make_slot(db, provider, status=from_status)

        with pytest.raises(InvariantViolation) as exc_info:
            repo.transition(slot.id, from_status, to_status, actor="x", now_unix=DEC_10_0900,
                            new_token="tok", expires_unix=DEC_10_0900 + 600)

        assert exc_info.value.code == "SLOT_TRANSITION_NOT_ALLOWED"

    def test_booked_to_free_requires_administrative_flag(self, db, repo, provider):
        slot = make_slot(db, provider, status=BOOKED)

        assert repo.transition(
            slot.id, BOOKED, FREE, actor="admin", now_unix=DEC_10_0900, administrative=True
        ) is True

    def test_hold_without_token_is_rejected(self, db, repo, provider):
        slot = make_slot(db, provider)

        with pytest.raises(InvariantViolation):
            repo.transition(slot.id, FREE, HELD, actor="x", now_unix=DEC_10_0900)


class TestFindFreeSlots:
    """Candidate selection for reservations."""

    def test_requires_containment_and_exact_duration(self, db, repo, provider):
        exact = make_slot(db, provider)
        make_slot(db, provider, start_unix=DEC_10_0900, end_unix=DEC_10_0900 + 2 * HOUR)
        make_slot(db, provider, start_unix=DEC_10_0900 + HOUR)

        found = repo.find_free_slots(provider.id, DEC_10_0900, DEC_10_0900 + HOUR, 60, DEC_10_0900 - HOUR)

        assert [s.id for s in found] == [exact.id]

    def test_window_not_contained_finds_nothing(self, db, repo, provider):
        make_slot(db, provider)

        assert repo.find_free_slots(
            provider.id, DEC_10_0900 + 1800, DEC_10_0900 + HOUR + 1800, 60, DEC_10_0900 - HOUR
        ) == []

    def test_includes_expired_holds_only(self, db, repo, provider):
        now = DEC_10_0900 - HOUR
        expired = make_slot(db, provider, status=HELD, lock_token="a", lock_expires_unix=now - 1)
        make_slot(db, provider, external_slot_id="live", status=HELD, lock_token="b",
                  lock_expires_unix=now + 600)

        found = repo.find_free_slots(provider.id, DEC_10_0900, DEC_10_0900 + HOUR, 60, now)

        assert [s.id for s in found] == [expired.id]

    def test_skips_non_bookable_and_other_providers(self, db, repo, provider):
        other = make_provider(db, external_provider_id="prac-2002", email="other@example.com")
        make_slot(db, provider, is_bookable=False)
        make_slot(db, other)

        assert repo.find_free_slots(
            provider.id, DEC_10_0900, DEC_10_0900 + HOUR, 60, DEC_10_0900 - HOUR
        ) == []

    def test_find_free_slot_returns_first_candidate(self, db, repo, provider):
        now = DEC_10_0900 - HOUR
        first = make_slot(db, provider, external_slot_id="room-a")
        second = make_slot(db, provider, external_slot_id="room-b")
        earliest, later = sorted([first, second], key=lambda s: s.id)

        def find():
            return repo.find_free_slot(provider.id, DEC_10_0900, DEC_10_0900 + HOUR, 60, now)

        assert find().id == earliest.id

        earliest.status = BOOKED
        db.commit()
        assert find().id == later.id

        later.status = BOOKED
        db.commit()
        assert find() is None

    def test_derived_times_follow_unix_fields(self, db, provider):
        slot = make_slot(db, provider)

        assert slot.start_at == datetime(2025, 12, 10, 9, 0, tzinfo=timezone.utc)
        assert slot.end_at == datetime(2025, 12, 10, 10, 0, tzinfo=timezone.utc)

    def test_list_expired_holds(self, db, repo, provider):
        expired = make_slot(db, provider, status=HELD, lock_token="a",
                            lock_expires_unix=DEC_10_0900 - 1)
        make_slot(db, provider, start_unix=DEC_10_0900 + HOUR, status=HELD, lock_token="b",
                  lock_expires_unix=DEC_10_0900 + 600)

        assert [s.id for s in repo.list_expired_holds(DEC_10_0900)] == [expired.id]
