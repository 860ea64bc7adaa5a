"""
Celery tasks for the booking payment saga.

``retry_capture`` retries a failed capture with exponential backoff.
``reconcile_booking_sagas`` is the beat-driven sweep behind every
compensation: abandoned sagas, orphaned authorizations, overdue captures
and expired holds.
"""

from dataclasses import asdict
import logging
from typing import Any, Dict

from sqlalchemy import text

from bloom_booking.api.dependencies.services import get_payment_gateway, get_scheduling_client
from bloom_booking.core.config import settings
from bloom_booking.core.exceptions import DomainException
from bloom_booking.database import get_db_session, with_db_retry
from bloom_booking.services.booking_payment_service import BookingPaymentService
from bloom_booking.tasks.celery_app import typed_task
from bloom_booking.tasks.enqueue import schedule_capture_retry

logger = logging.getLogger(__name__)

CAPTURE_MAX_RETRIES = max(settings.capture_retry_attempts - 1, 0)


def _booking_payment_service(db: Any) -> BookingPaymentService:
    return BookingPaymentService(
        db,
        get_payment_gateway(),
        scheduling_client=get_scheduling_client(),
        settings=settings,
        capture_scheduler=schedule_capture_retry,
    )


def capture_backoff_seconds(retries: int) -> int:
    """Delay before the next capture attempt; the first scheduled attempt waits the base delay."""
    return settings.capture_retry_base_seconds * (2 ** (retries + 1))


@typed_task(
    bind=True,
    max_retries=CAPTURE_MAX_RETRIES,
    name="bloom_booking.tasks.payment_tasks.retry_capture",
)
def retry_capture(self: Any, saga_id: str) -> Dict[str, Any]:
    """
    Capture the payment for a booked saga.

    Args:
        saga_id: The saga whose capture failed inline
    """
    try:
        with get_db_session() as db:
            service = _booking_payment_service(db)
            captured = service.attempt_capture(saga_id)
            halted = not captured and service.get_saga(saga_id).capture_halted_at is not None
    except DomainException as exc:
        # Missing saga or wrong state: nothing a retry can fix.
        logger.error(f"Capture retry for saga {saga_id} abandoned: {exc.message}")
        return {"saga_id": saga_id, "captured": False, "error": exc.code}

    if captured:
        return {"saga_id": saga_id, "captured": True}

    if halted:
        # Halted for manual follow-up.
        return {"saga_id": saga_id, "captured": False, "halted": True}

    if self.request.retries >= CAPTURE_MAX_RETRIES:
        logger.error(
            "capture_retries_exhausted",
            extra={"saga_id": saga_id, "attempts": self.request.retries + 1},
        )
        return {"saga_id": saga_id, "captured": False, "handed_to_reconciliation": True}

    raise self.retry(countdown=capture_backoff_seconds(self.request.retries))


@typed_task(name="bloom_booking.tasks.payment_tasks.reconcile_booking_sagas")
def reconcile_booking_sagas() -> Dict[str, Any]:
    """Run the reconciliation sweep once."""
    with get_db_session() as db:
        with_db_retry("reconcile_booking_sagas_ping", lambda: db.execute(text("SELECT 1")))
        result = _booking_payment_service(db).reconcile_abandoned()
    summary = asdict(result)
    logger.info("reconcile_booking_sagas_finished", extra=summary)
    return summary
