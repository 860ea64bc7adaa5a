# backend/tests/services/test_booking_payment_service.py
"""
Tests for BookingPaymentService.

A patient holds the 2025-12-10 09:00 slot and pays $250 (25000 cents). The
gateway is an in-memory fake whose failures can be switched on per test.
"""

from typing import List
from unittest.mock import patch

import pytest
from tests.factories import DEC_10_0900, HOUR, make_slot

from bloom_booking.core.enums import PaymentStatus, SagaState
from bloom_booking.core.exceptions import (
    ConflictException,
    LeaseExpiredException,
    NotFoundException,
    RepositoryException,
    SlotConflictException,
    UpstreamFailureException,
    ValidationException,
)
from bloom_booking.core.timestamps import now_unix
from bloom_booking.repositories.payment_repository import PaymentRepository
from bloom_booking.repositories.slot_repository import BOOKED, FREE, HELD
from bloom_booking.services.booking_payment_service import (
    BOOKING_FAILED,
    LEASE_EXPIRED,
    PAYMENT_FAILED,
    BookingPaymentService,
    PatientDetails,
)
from bloom_booking.services.slot_reservation_service import SlotReservationService

AMOUNT = 25000
PATIENT = PatientDetails("Sam", "Patient", "sam@example.com", "0412 345 678")


@pytest.fixture
def scheduled() -> List[tuple]:
    return []


@pytest.fixture
def service(db, gateway, scheduling_client, settings, clock, scheduled) -> BookingPaymentService:
    def scheduler(saga_id: str, countdown: int) -> None:
        scheduled.append((saga_id, countdown))

    return BookingPaymentService(
        db,
        gateway,
        scheduling_client=scheduling_client,
        settings=settings,
        capture_scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def slot(db, provider):
    return make_slot(db, provider)


@pytest.fixture
def hold(db, slot, settings, clock):
    reservations = SlotReservationService(db, settings=settings, clock=clock)
    return reservations.reserve(slot.provider_id, DEC_10_0900, DEC_10_0900 + HOUR, 60, "patient-1")


def authorize(service, hold, **kwargs):
    return service.authorize(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1", **kwargs)


class TestHappyPath:
    def test_execute_authorizes_books_and_captures(self, db, service, gateway, slot, hold):
        saga = service.execute(
            hold.slot_id, hold.lock_token, AMOUNT, "AUD", holder_id="patient-1", patient=PATIENT
        )

        assert saga.state == SagaState.CAPTURED.value
        assert saga.amount_cents == 25000
        assert saga.currency == "aud"
        assert [call[0] for call in gateway.calls] == ["authorize", "capture"]
        assert gateway.calls[0][1] == 25000
        db.refresh(slot)
        assert slot.status == BOOKED
        authorization = PaymentRepository(db).get_by_intent_id(saga.payment_intent_id)
        assert authorization.status == PaymentStatus.CAPTURED.value

    def test_authorize_is_idempotent_per_hold(self, service, gateway, hold):
        first = authorize(service, hold)
        second = authorize(service, hold)

        assert first.id == second.id
        assert gateway.count("authorize") == 1

    def test_book_twice_returns_the_booked_saga(self, service, gateway, hold):
        saga = authorize(service, hold)
        booked = service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        again = service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        assert again.id == booked.id
        assert again.state == SagaState.BOOKED.value

    def test_external_appointment_is_created_when_enabled(
        self, db, gateway, scheduling_client, settings, clock, hold
    ):
        enabled = settings.model_copy(update={"external_booking_enabled": True})
        service = BookingPaymentService(
            db, gateway, scheduling_client=scheduling_client, settings=enabled, clock=clock
        )
        saga = authorize(service, hold, patient=PATIENT)

        booked = service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        assert booked.external_appointment_id in scheduling_client.appointments


class TestAuthorizeFailures:
    def test_gateway_decline_releases_hold(self, db, service, gateway, slot, hold):
        gateway.fail_authorize = True

        with pytest.raises(UpstreamFailureException) as exc_info:
            authorize(service, hold)

        assert exc_info.value.code == "PAYMENT_FAILED"
        saga = service.saga_repository.get_by_id(exc_info.value.details["saga_id"])
        assert saga.state == SagaState.FAILED_AND_REVERSED.value
        assert saga.failure_reason == PAYMENT_FAILED
        db.refresh(slot)
        assert slot.status == FREE

    def test_wrong_token_is_refused(self, service, gateway, hold):
        with pytest.raises(SlotConflictException):
            service.authorize(hold.slot_id, "stolen", AMOUNT, holder_id="patient-2")
        assert gateway.count("authorize") == 0

    def test_non_positive_amount(self, service, hold):
        with pytest.raises(ValidationException):
            service.authorize(hold.slot_id, hold.lock_token, 0, holder_id="patient-1")

    def test_unrecorded_authorization_is_voided(self, db, service, gateway, hold):
        with patch.object(
            service.payment_repository,
            "create_authorization",
            side_effect=RepositoryException("Failed to create PaymentAuthorization"),
        ):
            with pytest.raises(RepositoryException):
                authorize(service, hold)

        assert ("cancel", "pi_test_1", PAYMENT_FAILED) in gateway.calls
        assert gateway.intents["pi_test_1"] == "cancelled"
        assert PaymentRepository(db).get_by_intent_id("pi_test_1") is None
        saga = service.saga_repository.get_open_for_slot(hold.slot_id, hold.lock_token)
        assert saga.state == SagaState.PENDING.value
        assert saga.payment_intent_id is None

    def test_authorization_landing_after_abandonment_is_voided(
        self, db, service, gateway, clock, slot, hold, monkeypatch
    ):
        real_authorize = gateway.authorize

        def authorize_while_sweeping(*args, **kwargs):
            result = real_authorize(*args, **kwargs)
            service.reconcile_abandoned(now=clock() + HOUR)
            return result

        monkeypatch.setattr(gateway, "authorize", authorize_while_sweeping)

        with pytest.raises(LeaseExpiredException):
            authorize(service, hold)

        assert ("cancel", "pi_test_1", LEASE_EXPIRED) in gateway.calls
        assert PaymentRepository(db).get_by_intent_id("pi_test_1") is None
        db.refresh(slot)
        assert slot.status == FREE


class TestBookFailures:
    def test_expired_lease_cancels_authorization(self, db, service, gateway, clock, slot, hold):
        saga = authorize(service, hold)
        clock.advance(10 * 60)

        with pytest.raises(LeaseExpiredException):
            service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        db.refresh(saga)
        db.refresh(slot)
        assert saga.state == SagaState.FAILED_AND_REVERSED.value
        assert saga.failure_reason == BOOKING_FAILED
        assert ("cancel", saga.payment_intent_id, BOOKING_FAILED) in gateway.calls
        authorization = PaymentRepository(db).get_by_intent_id(saga.payment_intent_id)
        assert authorization.status == PaymentStatus.CANCELLED.value
        assert authorization.reason == BOOKING_FAILED
        assert slot.status == FREE

    def test_missing_patient_details_compensates(
        self, db, gateway, scheduling_client, settings, clock, slot, hold
    ):
        enabled = settings.model_copy(update={"external_booking_enabled": True})
        service = BookingPaymentService(
            db, gateway, scheduling_client=scheduling_client, settings=enabled, clock=clock
        )
        saga = authorize(service, hold)

        with pytest.raises(ValidationException):
            service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        db.refresh(slot)
        assert slot.status == FREE
        assert gateway.count("cancel") == 1

    def test_cancelled_payment_cannot_be_booked(self, db, service, gateway, slot, hold):
        saga = authorize(service, hold)
        assert service.cancel_payment(saga.payment_intent_id) == PaymentStatus.CANCELLED.value

        with pytest.raises(ConflictException):
            service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        db.refresh(slot)
        assert slot.status == FREE
        assert service.get_saga(saga.id).state == SagaState.FAILED_AND_REVERSED.value
        history = service.reservations.slot_repository.list_transitions(slot.id)
        transitions = [(t.from_status, t.to_status) for t in history]
        assert ("held", "booked") not in transitions

    def test_authorization_cancelled_at_gateway_blocks_booking(self, db, service, gateway, slot, hold):
        saga = authorize(service, hold)
        authorization = PaymentRepository(db).get_by_intent_id(saga.payment_intent_id)
        authorization.status = PaymentStatus.CANCELLED.value
        db.commit()

        with pytest.raises(ConflictException) as exc_info:
            service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        assert exc_info.value.code == "PAYMENT_NOT_AUTHORIZED"
        db.refresh(slot)
        assert slot.status == FREE
        saga = service.get_saga(saga.id)
        assert saga.state == SagaState.FAILED_AND_REVERSED.value
        assert saga.failure_reason == BOOKING_FAILED
        assert gateway.count("cancel") == 0

    def test_unknown_payment_intent(self, service, hold):
        with pytest.raises(NotFoundException):
            service.book(hold.slot_id, hold.lock_token, "pi_unknown")


class TestCapture:
    def test_capture_failure_keeps_booking_and_schedules_retry(
        self, db, service, gateway, scheduled, slot, hold
    ):
        gateway.capture_failures = 1

        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")

        assert saga.state == SagaState.BOOKED.value
        assert scheduled == [(saga.id, 2)]
        db.refresh(slot)
        assert slot.status == BOOKED

        assert service.attempt_capture(saga.id) is True
        assert service.get_saga(saga.id).capture_attempts == 2

    def test_capture_requires_booked_saga(self, service, hold):
        saga = authorize(service, hold)

        with pytest.raises(ConflictException) as exc_info:
            service.attempt_capture(saga.id)

        assert exc_info.value.code == "SAGA_NOT_BOOKED"

    def test_refused_capture_is_halted(self, db, service, gateway, scheduled, slot, hold):
        gateway.capture_failures = 1
        gateway.capture_retryable = False

        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")

        assert saga.state == SagaState.BOOKED.value
        assert saga.capture_halted_at is not None
        assert saga.capture_error == "gateway timeout"
        assert scheduled == []
        with pytest.raises(ConflictException) as exc_info:
            service.attempt_capture(saga.id)
        assert exc_info.value.code == "CAPTURE_HALTED"
        assert gateway.count("capture") == 1

    def test_capture_halts_after_max_attempts(
        self, db, gateway, scheduling_client, settings, clock, hold
    ):
        capped = settings.model_copy(update={"capture_max_attempts": 2})
        service = BookingPaymentService(
            db, gateway, scheduling_client=scheduling_client, settings=capped, clock=clock
        )
        gateway.capture_failures = 5

        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")
        assert saga.capture_halted_at is None

        assert service.attempt_capture(saga.id) is False
        saga = service.get_saga(saga.id)
        assert saga.capture_attempts == 2
        assert saga.capture_halted_at is not None


class TestCancelPayment:
    def test_cancel_is_idempotent(self, db, service, gateway, hold):
        saga = authorize(service, hold)

        assert service.cancel_payment(saga.payment_intent_id) == PaymentStatus.CANCELLED.value
        assert service.cancel_payment(saga.payment_intent_id) == PaymentStatus.CANCELLED.value
        assert gateway.count("cancel") == 1

    def test_cancel_closes_unbooked_saga_and_frees_hold(self, db, service, slot, hold):
        saga = authorize(service, hold)

        service.cancel_payment(saga.payment_intent_id, "patient_cancelled")

        db.refresh(slot)
        assert slot.status == FREE
        saga = service.get_saga(saga.id)
        assert saga.state == SagaState.FAILED_AND_REVERSED.value
        assert saga.failure_reason == "patient_cancelled"

    def test_cancel_after_capture_reports_captured(self, service, gateway, hold):
        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")

        assert service.cancel_payment(saga.payment_intent_id) == PaymentStatus.CAPTURED.value
        assert gateway.count("cancel") == 0

    def test_gateway_outage_is_retryable(self, service, gateway, hold):
        saga = authorize(service, hold)
        gateway.fail_cancel = True

        with pytest.raises(UpstreamFailureException):
            service.cancel_payment(saga.payment_intent_id)

    def test_unknown_intent(self, service):
        with pytest.raises(NotFoundException):
            service.cancel_payment("pi_missing")


class TestReconcile:
    def test_abandoned_saga_is_reversed(self, db, service, gateway, clock, slot, hold):
        saga = authorize(service, hold)
        clock.advance(11 * 60)

        result = service.reconcile_abandoned()

        assert result.abandoned == 1
        db.refresh(saga)
        db.refresh(slot)
        assert saga.state == SagaState.FAILED_AND_REVERSED.value
        assert saga.failure_reason == LEASE_EXPIRED
        assert slot.status == FREE
        assert ("cancel", saga.payment_intent_id, LEASE_EXPIRED) in gateway.calls

    def test_live_saga_is_left_alone(self, service, hold):
        authorize(service, hold)

        assert service.reconcile_abandoned().abandoned == 0

    def test_orphaned_authorization_is_cancelled(self, db, service, gateway, clock, hold):
        saga = authorize(service, hold)
        gateway.fail_cancel = True
        clock.advance(10 * 60)
        with pytest.raises(LeaseExpiredException):
            service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)
        authorizations = PaymentRepository(db)
        assert authorizations.get_by_intent_id(saga.payment_intent_id).status == PaymentStatus.AUTHORIZED.value

        gateway.fail_cancel = False
        result = service.reconcile_abandoned()

        assert result.orphaned_cancelled == 1
        assert authorizations.get_by_intent_id(saga.payment_intent_id).status == PaymentStatus.CANCELLED.value

    def test_overdue_capture_is_completed(self, service, gateway, hold):
        gateway.capture_failures = 1
        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")

        # booked_at is wall-clock time, so sweep from just after it.
        result = service.reconcile_abandoned(now=now_unix() + 60)

        assert result.captured == 1
        assert service.get_saga(saga.id).state == SagaState.CAPTURED.value

    def test_halted_capture_is_not_retried_by_the_sweep(self, service, gateway, hold):
        gateway.capture_failures = 1
        gateway.capture_retryable = False
        service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")

        result = service.reconcile_abandoned(now=now_unix() + 60)

        assert result.captured == 0
        assert result.capture_errors == 0
        assert gateway.count("capture") == 1

    def test_one_bad_saga_does_not_stop_the_sweep(self, db, service, gateway, provider, hold):
        gateway.capture_failures = 1
        saga = service.execute(hold.slot_id, hold.lock_token, AMOUNT, holder_id="patient-1")
        db.delete(PaymentRepository(db).get_by_intent_id(saga.payment_intent_id))
        db.commit()
        make_slot(
            db,
            provider,
            start_unix=DEC_10_0900 + 2 * HOUR,
            status=HELD,
            lock_token="stale-token",
            held_by="patient-9",
            lock_expires_unix=DEC_10_0900 - 2 * HOUR,
        )

        result = service.reconcile_abandoned(now=now_unix() + 60)

        assert result.capture_errors == 1
        assert result.reclaimed_holds == 1

    def test_stale_listing_does_not_abandon_a_booked_saga(self, db, service, gateway, clock, slot, hold):
        saga = authorize(service, hold)
        stale = list(service.saga_repository.list_abandoned(clock() + HOUR))
        service.book(hold.slot_id, hold.lock_token, saga.payment_intent_id)

        with patch.object(service.saga_repository, "list_abandoned", return_value=stale):
            result = service.reconcile_abandoned(now=clock() + HOUR)

        assert result.abandoned == 0
        assert service.get_saga(saga.id).state == SagaState.BOOKED.value
        assert gateway.count("cancel") == 0
        db.refresh(slot)
        assert slot.status == BOOKED
