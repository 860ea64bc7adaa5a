# backend/bloom_booking/services/booking_payment_service.py
"""
Booking Payment Service: the Authorize -> Book -> Capture saga.

Step order is fixed. A failure after Authorize compensates exactly the steps
already completed, newest first (external appointment, payment
authorization, slot hold), inside the same service call. Compensation does
not depend on the HTTP client still being connected.

A capture failure after Book never unwinds the booking; the capture is
retried asynchronously and, past the retry window, by the reconciliation
sweep. A capture the gateway refuses outright, or one that keeps failing
past ``capture_max_attempts``, is halted and left for manual follow-up.

Saga state changes that can race with the sweep go through
``BookingSagaRepository.transition_state``, a conditional UPDATE.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, cast

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import PaymentStatus, SagaState
from ..core.exceptions import (
    ConflictException,
    DomainException,
    LeaseExpiredException,
    NotFoundException,
    RepositoryException,
    ServiceException,
    SlotConflictException,
    UpstreamFailureException,
    ValidationException,
)
from ..core.timestamps import datetime_from_unix, ensure_utc, now_unix, utc_now
from ..integrations.payment_gateway import PaymentGateway, PaymentGatewayError
from ..integrations.scheduling_client import SchedulingClient, SchedulingClientError
from ..models.booking_saga import BookingSaga
from ..models.slot import Slot
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.payment_repository import OPEN_SAGA_STATES
from .base import BaseService
from .slot_reservation_service import SlotReservationService

# Failure reasons recorded on sagas and cancelled authorizations.
PAYMENT_FAILED = "payment_failed"
BOOKING_FAILED = "booking_failed"
LEASE_EXPIRED = "lease_expired"

CaptureScheduler = Callable[..., Any]


@dataclass(frozen=True)
class PatientDetails:
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None


@dataclass
class ReconcileResult:
    abandoned: int = 0
    orphaned_cancelled: int = 0
    captured: int = 0
    capture_errors: int = 0
    reclaimed_holds: int = 0


class BookingPaymentService(BaseService):
    """Orchestrates payment authorization, slot booking and capture."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        scheduling_client: Optional[SchedulingClient] = None,
        settings: Optional[Settings] = None,
        capture_scheduler: Optional[CaptureScheduler] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(db, settings)
        self.gateway = gateway
        self.scheduling_client = scheduling_client
        self.capture_scheduler = capture_scheduler
        self.clock = clock or now_unix
        self.reservations = SlotReservationService(db, self.settings, clock=self.clock)
        self.saga_repository = RepositoryFactory.create_booking_saga_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)

    # ------------------------------------------------------------- authorize

    @BaseService.measure_operation("authorize")
    def authorize(
        self,
        slot_id: str,
        lock_token: str,
        amount_cents: int,
        currency: Optional[str] = None,
        *,
        holder_id: str,
        payment_method_id: Optional[str] = None,
        patient: Optional[PatientDetails] = None,
    ) -> BookingSaga:
        """
        Step 1. Authorize funds against a live hold.

        On gateway failure the hold is released and the saga ends
        ``failed_and_reversed`` with reason ``payment_failed``. An
        authorization that cannot be recorded locally is voided at the
        gateway before the error propagates.
        """
        if amount_cents <= 0:
            raise ValidationException("Amount must be positive", code="INVALID_AMOUNT")
        currency = (currency or self.settings.stripe_currency).lower()
        slot = self.reservations.validate_lease(slot_id, lock_token)

        saga = self.saga_repository.get_open_for_slot(slot_id, lock_token)
        if saga is not None and saga.state == SagaState.AUTHORIZED.value:
            return saga

        # The pending saga is durable before the gateway is called so the
        # reconciliation sweep can always find it.
        with self.transaction():
            if saga is None:
                saga = self.saga_repository.create(
                    slot_id=slot_id,
                    provider_id=slot.provider_id,
                    lock_token=lock_token,
                    holder_id=holder_id,
                    lease_expires_unix=slot.lock_expires_unix,
                    state=SagaState.PENDING.value,
                    amount_cents=amount_cents,
                    currency=currency,
                    patient_first_name=patient.first_name if patient else None,
                    patient_last_name=patient.last_name if patient else None,
                    patient_email=patient.email if patient else None,
                    patient_phone=patient.phone if patient else None,
                )
        saga_id = saga.id
        amount_cents, currency = saga.amount_cents, saga.currency

        try:
            result = self.gateway.authorize(
                amount_cents,
                currency,
                {"saga_id": saga_id, "slot_id": slot_id},
                payment_method_id=payment_method_id,
                idempotency_key=f"authorize-{saga_id}",
            )
        except PaymentGatewayError as exc:
            self.logger.warning(
                "payment_authorization_failed",
                extra={"saga_id": saga_id, "slot_id": slot_id, "error": str(exc)},
            )
            with self.transaction():
                self.reservations.release_hold(slot_id, lock_token, actor="saga", note=PAYMENT_FAILED)
                self._fail(saga_id, PAYMENT_FAILED)
            prometheus_metrics.record_saga_outcome(PAYMENT_FAILED)
            raise UpstreamFailureException(
                "Payment failed", code="PAYMENT_FAILED", details={"saga_id": saga_id}
            ) from exc

        try:
            with self.transaction():
                if not self.saga_repository.transition_state(
                    saga_id,
                    (SagaState.PENDING.value,),
                    SagaState.AUTHORIZED.value,
                    payment_intent_id=result.intent_id,
                ):
                    # The sweep abandoned this saga while the gateway call was in flight.
                    raise LeaseExpiredException(slot_id)
                self.payment_repository.create_authorization(
                    payment_intent_id=result.intent_id,
                    amount_cents=amount_cents,
                    currency=currency,
                    slot_id=slot_id,
                    saga_id=saga_id,
                )
        except (LeaseExpiredException, ServiceException, RepositoryException) as exc:
            reason = LEASE_EXPIRED if isinstance(exc, LeaseExpiredException) else PAYMENT_FAILED
            self._void_authorization(saga_id, result.intent_id, reason)
            raise

        self.logger.info(
            "payment_authorized",
            extra={"saga_id": saga_id, "payment_intent_id": result.intent_id},
        )
        return self.get_saga(saga_id)

    # ------------------------------------------------------------------ book

    @BaseService.measure_operation("book")
    def book(self, slot_id: str, lock_token: str, payment_intent_id: str) -> BookingSaga:
        """
        Step 2. Confirm the booking for an authorized saga.

        The payment authorization itself must still be ``authorized``. Any
        failure cancels the authorization with reason ``booking_failed`` and
        releases the hold if it is still ours.
        """
        saga = self.saga_repository.get_by_intent_id(payment_intent_id)
        if saga is None or saga.slot_id != slot_id or saga.lock_token != lock_token:
            raise NotFoundException(
                "No authorized payment matches this booking",
                code="SAGA_NOT_FOUND",
                details={"slot_id": slot_id},
            )
        if SagaState(saga.state).is_success:
            return saga
        if saga.state != SagaState.AUTHORIZED.value:
            raise ConflictException(
                f"Booking cannot proceed from state '{saga.state}'",
                code="SAGA_NOT_AUTHORIZED",
                details={"saga_id": saga.id, "state": saga.state},
            )
        saga_id = saga.id

        appointment_id: Optional[str] = None
        try:
            self._require_live_authorization(saga_id, payment_intent_id)
            slot = self.reservations.validate_lease(slot_id, lock_token)
            if self._external_booking_enabled():
                appointment_id = self._create_external_appointment(saga, slot)
            with self.transaction():
                if not self.reservations.confirm_booking(slot_id, lock_token, actor=saga.holder_id):
                    self._raise_booking_conflict(slot_id, lock_token)
                if not self.saga_repository.transition_state(
                    saga_id,
                    (SagaState.AUTHORIZED.value,),
                    SagaState.BOOKED.value,
                    booked_at=utc_now(),
                    external_appointment_id=appointment_id,
                ):
                    raise ConflictException(
                        "Booking was closed while it was being confirmed",
                        code="SAGA_NOT_AUTHORIZED",
                        details={"saga_id": saga_id},
                    )
        except (DomainException, SchedulingClientError, RepositoryException) as exc:
            self.logger.warning(
                "booking_failed_compensating",
                extra={"saga_id": saga_id, "slot_id": slot_id, "error": str(exc)},
            )
            self._compensate(saga_id, appointment_id, BOOKING_FAILED)
            if isinstance(exc, SchedulingClientError):
                raise UpstreamFailureException(
                    "We could not confirm your booking. Please try again.",
                    code="BOOKING_FAILED",
                    details={"saga_id": saga_id},
                ) from exc
            raise

        prometheus_metrics.record_saga_outcome(SagaState.BOOKED.value)
        self.logger.info("slot_booked", extra={"saga_id": saga_id, "slot_id": slot_id})
        return self.get_saga(saga_id)

    # --------------------------------------------------------------- capture

    @BaseService.measure_operation("capture")
    def capture(self, saga_id: str) -> BookingSaga:
        """Step 3. Capture, or schedule a retry. The booking stands either way."""
        if not self.attempt_capture(saga_id) and self.get_saga(saga_id).capture_halted_at is None:
            self._schedule_capture_retry(saga_id)
        return self.get_saga(saga_id)

    def attempt_capture(self, saga_id: str) -> bool:
        """
        One capture attempt for a booked saga.

        A non-retryable gateway refusal, or reaching ``capture_max_attempts``,
        halts the saga: later attempts raise ``CAPTURE_HALTED``.
        """
        saga = self.get_saga(saga_id)
        if saga.state == SagaState.CAPTURED.value:
            return True
        if saga.state != SagaState.BOOKED.value:
            raise ConflictException(
                "Only booked sagas can be captured",
                code="SAGA_NOT_BOOKED",
                details={"saga_id": saga_id, "state": saga.state},
            )
        if saga.capture_halted_at is not None:
            raise ConflictException(
                "Capture is halted for this booking",
                code="CAPTURE_HALTED",
                details={"saga_id": saga_id, "error": saga.capture_error},
            )
        authorization = self.payment_repository.get_by_intent_id(saga.payment_intent_id or "")
        if authorization is None:
            raise NotFoundException("Payment authorization not found", code="PAYMENT_NOT_FOUND")

        try:
            result = self.gateway.capture(authorization.payment_intent_id)
            captured = result.status == PaymentStatus.CAPTURED.value
            error = None if captured else f"gateway returned status {result.status}"
            retryable = False
        except PaymentGatewayError as exc:
            captured, error, retryable = False, str(exc), exc.retryable

        halted = False
        with self.transaction():
            saga.capture_attempts += 1
            authorization.capture_attempts += 1
            if captured:
                now = utc_now()
                authorization.status = PaymentStatus.CAPTURED.value
                authorization.captured_at = now
                saga.state = SagaState.CAPTURED.value
                saga.captured_at = now
                saga.capture_error = None
            else:
                saga.capture_error = error
                if not retryable or saga.capture_attempts >= self.settings.capture_max_attempts:
                    saga.capture_halted_at = utc_now()
                    halted = True

        if captured:
            prometheus_metrics.record_saga_outcome(SagaState.CAPTURED.value)
            self.logger.info("payment_captured", extra={"saga_id": saga_id})
        elif halted:
            prometheus_metrics.record_saga_outcome("capture_halted")
            self.logger.error(
                "capture_halted",
                extra={
                    "saga_id": saga_id,
                    "payment_intent_id": authorization.payment_intent_id,
                    "attempt": saga.capture_attempts,
                    "error": error,
                },
            )
        else:
            self.logger.warning(
                "payment_capture_failed",
                extra={"saga_id": saga_id, "attempt": saga.capture_attempts, "error": error},
            )
        return captured

    # --------------------------------------------------------------- execute

    def execute(
        self,
        slot_id: str,
        lock_token: str,
        amount_cents: int,
        currency: Optional[str] = None,
        *,
        holder_id: str,
        payment_method_id: Optional[str] = None,
        patient: Optional[PatientDetails] = None,
    ) -> BookingSaga:
        """Authorize, book and capture in order."""
        saga = self.authorize(
            slot_id,
            lock_token,
            amount_cents,
            currency,
            holder_id=holder_id,
            payment_method_id=payment_method_id,
            patient=patient,
        )
        saga = self.book(slot_id, lock_token, saga.payment_intent_id or "")
        return self.capture(saga.id)

    # -------------------------------------------------------- cancel payment

    @BaseService.measure_operation("cancel_payment")
    def cancel_payment(self, payment_intent_id: str, reason: str = BOOKING_FAILED) -> str:
        """
        Release an authorization. Idempotent.

        A terminal authorization returns its status unchanged; a gateway that
        reports the intent already cancelled or captured is also a success.
        Cancelling closes a saga that has not been booked yet and frees its
        hold.
        """
        authorization = self.payment_repository.get_by_intent_id(payment_intent_id)
        if authorization is None:
            raise NotFoundException(
                "Payment not found",
                code="PAYMENT_NOT_FOUND",
                details={"payment_intent_id": payment_intent_id},
            )
        if authorization.is_terminal:
            self.logger.info(
                "cancel_payment_noop",
                extra={"payment_intent_id": payment_intent_id, "status": authorization.status},
            )
            return authorization.status

        try:
            result = self.gateway.cancel(payment_intent_id, reason)
        except PaymentGatewayError as exc:
            self.logger.error(
                "cancel_payment_failed",
                extra={"payment_intent_id": payment_intent_id, "error": str(exc)},
            )
            raise UpstreamFailureException(
                "Could not cancel payment. Please try again.",
                code="PAYMENT_CANCEL_FAILED",
                details={"payment_intent_id": payment_intent_id},
            ) from exc

        with self.transaction():
            authorization.status = result.status
            if result.status == PaymentStatus.CANCELLED.value:
                authorization.reason = reason
                authorization.cancelled_at = utc_now()
                if authorization.saga_id:
                    self._close_open_saga(authorization.saga_id, reason)
        self.logger.info(
            "payment_cancelled",
            extra={"payment_intent_id": payment_intent_id, "status": result.status, "reason": reason},
        )
        return authorization.status

    # ------------------------------------------------------------- reconcile

    @BaseService.measure_operation("reconcile_abandoned")
    def reconcile_abandoned(self, now: Optional[int] = None) -> ReconcileResult:
        """
        Sweep for sagas the request path could not finish.

        - pending/authorized sagas whose lease ran out: mark
          ``failed_and_reversed``, cancel the authorization, reclaim the hold;
        - failed sagas whose authorization is still held: cancel it;
        - booked sagas past the capture retry window: capture, unless halted.

        One saga's failure never stops the sweep.
        """
        now = self.clock() if now is None else now
        result = ReconcileResult()

        for saga_id in [s.id for s in self.saga_repository.list_abandoned(now)]:
            if self._abandon(saga_id, now):
                result.abandoned += 1

        for intent_id in [a.payment_intent_id for a in self.payment_repository.list_orphaned_authorizations()]:
            try:
                self.cancel_payment(intent_id, BOOKING_FAILED)
                result.orphaned_cancelled += 1
            except DomainException:
                continue

        cutoff = datetime_from_unix(now) - timedelta(seconds=self._capture_retry_window_seconds())
        overdue = [
            s.id
            for s in self.saga_repository.list_uncaptured()
            if ensure_utc(s.booked_at) is not None and ensure_utc(s.booked_at) <= cutoff
        ]
        for saga_id in overdue:
            try:
                if self.attempt_capture(saga_id):
                    result.captured += 1
            except DomainException as exc:
                result.capture_errors += 1
                self.logger.error(
                    "reconcile_capture_failed",
                    extra={"saga_id": saga_id, "code": exc.code, "error": exc.message},
                )

        result.reclaimed_holds = self.reservations.reclaim_expired_holds(now)
        if result.abandoned or result.orphaned_cancelled or result.captured or result.capture_errors:
            self.logger.info(
                "booking_sagas_reconciled",
                extra={
                    "abandoned": result.abandoned,
                    "orphaned_cancelled": result.orphaned_cancelled,
                    "captured": result.captured,
                    "capture_errors": result.capture_errors,
                },
            )
        return result

    def get_saga(self, saga_id: str) -> BookingSaga:
        saga = self.saga_repository.get_by_id(saga_id)
        if saga is None:
            raise NotFoundException("Booking not found", code="SAGA_NOT_FOUND", details={"saga_id": saga_id})
        return saga

    # --------------------------------------------------------------- helpers

    def _abandon(self, saga_id: str, now: int) -> bool:
        # Claim first: a book that committed since the listing keeps its saga.
        with self.transaction():
            claimed = self.saga_repository.transition_state(
                saga_id,
                OPEN_SAGA_STATES,
                SagaState.FAILED_AND_REVERSED.value,
                failure_reason=LEASE_EXPIRED,
            )
        if not claimed:
            return False

        saga = self.get_saga(saga_id)
        if saga.payment_intent_id:
            try:
                self.cancel_payment(saga.payment_intent_id, LEASE_EXPIRED)
            except (UpstreamFailureException, NotFoundException):
                # The saga is closed; the orphaned-authorization pass retries the cancel.
                pass
        with self.transaction():
            self.reservations.reclaim_hold(saga.slot_id, saga.lock_token, now=now)
        prometheus_metrics.record_saga_outcome(LEASE_EXPIRED)
        return True

    def _compensate(self, saga_id: str, appointment_id: Optional[str], reason: str) -> None:
        saga = self.get_saga(saga_id)
        if appointment_id and self.scheduling_client is not None:
            try:
                self.scheduling_client.cancel_appointment(appointment_id, reason)
            except SchedulingClientError as exc:
                self.logger.error(
                    "compensation_appointment_cancel_failed",
                    extra={"saga_id": saga_id, "appointment_id": appointment_id, "error": str(exc)},
                )

        if saga.payment_intent_id:
            try:
                self.cancel_payment(saga.payment_intent_id, reason)
            except UpstreamFailureException:
                # Left authorized; the sweep cancels orphaned authorizations.
                pass

        with self.transaction():
            self.reservations.release_hold(saga.slot_id, saga.lock_token, actor="saga", note=reason)
            self._fail(saga_id, reason)
        prometheus_metrics.record_saga_outcome(reason)

    def _close_open_saga(self, saga_id: str, reason: str) -> None:
        """Fail a not-yet-booked saga whose payment is gone and free its hold."""
        saga = self.saga_repository.get_by_id(saga_id)
        if saga is None:
            return
        slot_id, lock_token = saga.slot_id, saga.lock_token
        if self._fail(saga_id, reason):
            self.reservations.release_hold(slot_id, lock_token, actor="saga", note=reason)

    def _fail(self, saga_id: str, reason: str) -> bool:
        return self.saga_repository.transition_state(
            saga_id,
            OPEN_SAGA_STATES,
            SagaState.FAILED_AND_REVERSED.value,
            failure_reason=reason,
        )

    def _require_live_authorization(self, saga_id: str, payment_intent_id: str) -> None:
        authorization = self.payment_repository.get_by_intent_id(payment_intent_id)
        if authorization is None or authorization.status != PaymentStatus.AUTHORIZED.value:
            raise ConflictException(
                "The payment authorization is no longer valid",
                code="PAYMENT_NOT_AUTHORIZED",
                details={
                    "saga_id": saga_id,
                    "status": authorization.status if authorization else None,
                },
            )

    def _void_authorization(self, saga_id: str, intent_id: str, reason: str) -> None:
        """Cancel an authorization that no local row records."""
        try:
            self.gateway.cancel(intent_id, reason)
        except PaymentGatewayError as exc:
            self.logger.error(
                "unrecorded_authorization_cancel_failed",
                extra={"saga_id": saga_id, "payment_intent_id": intent_id, "error": str(exc)},
            )
            return
        self.logger.warning(
            "unrecorded_authorization_voided",
            extra={"saga_id": saga_id, "payment_intent_id": intent_id, "reason": reason},
        )

    def _raise_booking_conflict(self, slot_id: str, lock_token: str) -> None:
        # validate_lease raises the precise reason; anything else is a lost race.
        self.reservations.validate_lease(slot_id, lock_token)
        raise SlotConflictException(details={"slot_id": slot_id})

    def _external_booking_enabled(self) -> bool:
        return self.settings.external_booking_enabled and self.scheduling_client is not None

    def _create_external_appointment(self, saga: BookingSaga, slot: Slot) -> Optional[str]:
        if not (saga.patient_first_name and saga.patient_last_name and saga.patient_email):
            raise ValidationException(
                "Patient details are required to book", code="PATIENT_DETAILS_REQUIRED"
            )
        provider = self.provider_repository.get_by_id(slot.provider_id)
        if provider is None:
            raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
        client = cast(SchedulingClient, self.scheduling_client)
        patient: Dict[str, Any] = client.create_or_find_patient(
            first_name=saga.patient_first_name,
            last_name=saga.patient_last_name,
            email=saga.patient_email,
            phone=saga.patient_phone,
        )
        appointment = client.create_appointment(
            patient_id=patient["id"],
            practitioner_id=provider.external_provider_id,
            start_unix=slot.start_unix,
            end_unix=slot.end_unix,
            location_type=slot.location_type,
        )
        return appointment.get("id")

    def _capture_retry_window_seconds(self) -> int:
        base = self.settings.capture_retry_base_seconds
        return base * (2 ** self.settings.capture_retry_attempts - 1)

    def _schedule_capture_retry(self, saga_id: str) -> None:
        if self.capture_scheduler is None:
            self.logger.warning("capture_retry_not_scheduled", extra={"saga_id": saga_id})
            return
        try:
            self.capture_scheduler(saga_id, countdown=self.settings.capture_retry_base_seconds)
        except Exception as exc:
            # The reconciliation sweep captures it after the retry window.
            self.logger.error(
                "capture_retry_schedule_failed", extra={"saga_id": saga_id, "error": str(exc)}
            )
