# backend/tests/services/test_slot_reservation_service.py
"""
Tests for SlotReservationService.

The 2025-12-10 09:00-10:00 UTC slot is the running example: a patient holds
it, a second patient is refused while the lease lives, and the slot becomes
available again once the lease runs out.
"""

import threading
from types import SimpleNamespace
from typing import List
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from tests.factories import DEC_10_0900, HOUR, FrozenClock, make_provider, make_slot

from bloom_booking.core.exceptions import (
    ForbiddenException,
    LeaseExpiredException,
    NoAvailabilityException,
    NotFoundException,
    SlotConflictException,
    ValidationException,
)
from bloom_booking.database import Base
from bloom_booking.repositories.slot_repository import BOOKED, FREE, HELD, SlotRepository
from bloom_booking.services.slot_reservation_service import SlotReservationService

START = DEC_10_0900
END = DEC_10_0900 + HOUR


@pytest.fixture
def service(db, settings, clock) -> SlotReservationService:
    return SlotReservationService(db, settings=settings, clock=clock)


class TestReserve:
    """Holding the earliest matching slot."""

    def test_reserve_holds_slot_for_lease(self, db, service, provider, clock):
        slot = make_slot(db, provider)

        reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        assert reservation.slot_id == slot.id
        assert reservation.expires_unix == clock.now + 10 * 60
        assert reservation.lock_token
        db.refresh(slot)
        assert slot.status == HELD
        assert slot.held_by == "patient-1"
        assert slot.lock_token == reservation.lock_token

    def test_second_reserve_is_refused_while_lease_lives(self, db, service, provider):
        make_slot(db, provider)
        service.reserve(provider.id, START, END, 60, "patient-1")

        with pytest.raises(NoAvailabilityException):
            service.reserve(provider.id, START, END, 60, "patient-2")

    def test_expired_lease_can_be_reserved_again(self, db, service, provider, clock):
        slot = make_slot(db, provider)
        first = service.reserve(provider.id, START, END, 60, "patient-1")

        clock.advance(10 * 60)
        second = service.reserve(provider.id, START, END, 60, "patient-2")

        assert second.slot_id == slot.id
        assert second.lock_token != first.lock_token
        db.refresh(slot)
        assert slot.held_by == "patient-2"

    def test_only_containing_slot_of_requested_length_is_held(self, db, service, provider):
        make_slot(db, provider, start_unix=START - HOUR, end_unix=END)
        make_slot(db, provider, start_unix=START - HOUR, end_unix=START)
        exact = make_slot(db, provider)

        reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        assert reservation.slot_id == exact.id

    @pytest.mark.parametrize(
        "start,end,duration,holder",
        [(END, START, 60, "p"), (START, END, 0, "p"), (START, END, 60, "")],
    )
    def test_malformed_requests_are_rejected(self, service, provider, start, end, duration, holder):
        with pytest.raises(ValidationException):
            service.reserve(provider.id, start, end, duration, holder)

    def test_unknown_or_disabled_provider(self, db, service):
        disabled = make_provider(db, booking_enabled=False)
        make_slot(db, disabled)

        with pytest.raises(NotFoundException):
            service.reserve("missing", START, END, 60, "patient-1")
        with pytest.raises(NotFoundException):
            service.reserve(disabled.id, START, END, 60, "patient-1")

    def test_lost_compare_and_swap_is_a_conflict(self, db, service, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="other",
                         lock_expires_unix=START + HOUR)
        stale = SimpleNamespace(id=slot.id, status=FREE, start_unix=START, end_unix=END)

        with patch.object(service.slot_repository, "find_free_slots", return_value=[stale]):
            with pytest.raises(SlotConflictException):
                service.reserve(provider.id, START, END, 60, "patient-1")

        db.refresh(slot)
        assert slot.lock_token == "other"

    def test_lost_race_moves_on_to_next_earliest_slot(self, db, service, provider):
        taken = make_slot(db, provider, external_slot_id="room-a", status=HELD,
                          lock_token="other", lock_expires_unix=START + HOUR)
        spare = make_slot(db, provider, external_slot_id="room-b")
        stale = SimpleNamespace(id=taken.id, status=FREE, start_unix=START, end_unix=END)

        with patch.object(
            service.slot_repository, "find_free_slot", side_effect=[stale, spare]
        ) as lookup:
            reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        assert reservation.slot_id == spare.id
        assert lookup.call_count == 2
        db.refresh(taken)
        assert taken.lock_token == "other"

    def test_lookup_drying_up_after_a_lost_race_is_a_conflict(self, db, service, provider):
        slot = make_slot(db, provider, status=HELD, lock_token="other",
                         lock_expires_unix=START + HOUR)
        stale = SimpleNamespace(id=slot.id, status=FREE, start_unix=START, end_unix=END)

        with patch.object(service.slot_repository, "find_free_slot", side_effect=[stale, None]):
            with pytest.raises(SlotConflictException):
                service.reserve(provider.id, START, END, 60, "patient-1")


class TestReleaseAndLease:
    """Giving holds back and validating them."""

    def test_release_frees_slot(self, db, service, provider):
        slot = make_slot(db, provider)
        reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        service.release(reservation.slot_id, reservation.lock_token)

        db.refresh(slot)
        assert slot.status == FREE
        assert slot.lock_token is None

    def test_release_with_wrong_token_is_a_conflict(self, db, service, provider):
        make_slot(db, provider)
        reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        with pytest.raises(SlotConflictException):
            service.release(reservation.slot_id, "not-the-token")

    def test_release_after_expiry_is_a_conflict(self, db, service, provider, clock):
        make_slot(db, provider)
        reservation = service.reserve(provider.id, START, END, 60, "patient-1")
        clock.advance(11 * 60)

        with pytest.raises(SlotConflictException):
            service.release(reservation.slot_id, reservation.lock_token)

    def test_release_unknown_slot(self, service):
        with pytest.raises(NotFoundException):
            service.release("missing", "tok")

    def test_validate_lease(self, db, service, provider, clock):
        make_slot(db, provider)
        reservation = service.reserve(provider.id, START, END, 60, "patient-1")

        assert service.validate_lease(reservation.slot_id, reservation.lock_token).id == reservation.slot_id
        with pytest.raises(SlotConflictException):
            service.validate_lease(reservation.slot_id, "wrong")
        clock.advance(10 * 60)
        with pytest.raises(LeaseExpiredException):
            service.validate_lease(reservation.slot_id, reservation.lock_token)


class TestReclaimAndListing:
    def test_reclaim_expired_holds(self, db, service, provider, clock):
        expired = make_slot(db, provider, status=HELD, lock_token="a", held_by="p1",
                            lock_expires_unix=clock.now - 1)
        live = make_slot(db, provider, start_unix=START + HOUR, status=HELD, lock_token="b",
                         held_by="p2", lock_expires_unix=clock.now + 300)

        assert service.reclaim_expired_holds() == 1

        db.refresh(expired)
        db.refresh(live)
        assert expired.status == FREE
        assert live.status == HELD
        notes = [t.note for t in SlotRepository(db).list_transitions(expired.id)]
        assert notes == ["lease expired"]

    def test_list_available_hides_live_holds(self, db, service, provider, clock):
        free = make_slot(db, provider)
        make_slot(db, provider, start_unix=START + HOUR, status=HELD, lock_token="b",
                  lock_expires_unix=clock.now + 300)

        slots = service.list_available(provider.id, START, START + 4 * HOUR)

        assert [s.id for s in slots] == [free.id]

    def test_list_available_rejects_inverted_range(self, service, provider):
        with pytest.raises(ValidationException):
            service.list_available(provider.id, END, START)


class TestAdminReset:
    def test_reset_booked_slot(self, db, service, provider):
        slot = make_slot(db, provider, status=BOOKED, held_by="patient-1")

        reset = service.admin_reset_slot(slot.id, actor="admin@example.com")

        assert reset.status == FREE
        actors = [t.actor for t in SlotRepository(db).list_transitions(slot.id)]
        assert actors == ["admin@example.com"]

    def test_reset_is_forbidden_in_production(self, db, provider, production_settings, clock):
        slot = make_slot(db, provider, status=BOOKED)
        service = SlotReservationService(db, settings=production_settings, clock=clock)

        with pytest.raises(ForbiddenException):
            service.admin_reset_slot(slot.id, actor="admin")

        db.refresh(slot)
        assert slot.status == BOOKED

    def test_get_metrics_counts_operations(self, db, service, provider):
        make_slot(db, provider)
        service.reserve(provider.id, START, END, 60, "patient-1")

        metrics = service.get_metrics()

        assert metrics["reserve"]["count"] >= 1


class TestConcurrentReserve:
    """Five patients race for one slot on a file-backed database."""

    @pytest.fixture
    def file_engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        Base.metadata.create_all(bind=engine)
        yield engine
        engine.dispose()

    def test_exactly_one_winner(self, file_engine, settings):
        Session = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
        setup = Session()
        provider = make_provider(setup)
        slot = make_slot(setup, provider)
        provider_id, slot_id = provider.id, slot.id
        setup.close()

        barrier = threading.Barrier(5)
        winners: List[str] = []
        losers: List[Exception] = []
        lock = threading.Lock()

        def attempt(holder: str) -> None:
            session = Session()
            service = SlotReservationService(
                session, settings=settings, clock=FrozenClock(START - HOUR)
            )
            try:
                barrier.wait()
                reservation = service.reserve(provider_id, START, END, 60, holder)
                with lock:
                    winners.append(reservation.lock_token)
            except (NoAvailabilityException, SlotConflictException) as exc:
                with lock:
                    losers.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=attempt, args=(f"patient-{i}",)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert len(winners) == 1
        assert len(losers) == 4

        check = Session()
        try:
            transitions = SlotRepository(check).list_transitions(slot_id)
            assert [(t.from_status, t.to_status) for t in transitions] == [(FREE, HELD)]
            assert SlotRepository(check).get_by_id(slot_id).lock_token == winners[0]
        finally:
            check.close()
