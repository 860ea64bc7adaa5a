# backend/bloom_booking/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Integration clients are process-wide singletons so the scheduling API's
OAuth token cache is shared across requests. Services are built per request
around the request's database session.
"""

from functools import lru_cache
import logging
from typing import Any, Callable, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from ...database import get_db
from ...integrations.payment_gateway import PaymentGateway, StripePaymentGateway
from ...integrations.scheduling_client import SchedulingClient, build_scheduling_client
from ...services.application_service import ApplicationService
from ...services.availability_sync_service import AvailabilitySyncService
from ...services.booking_payment_service import BookingPaymentService, CaptureScheduler
from ...services.slot_reservation_service import SlotReservationService
from ...tasks.enqueue import schedule_capture_retry, trigger_availability_sync

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_scheduling_client() -> SchedulingClient:
    settings = get_settings()
    logger.info(
        "Scheduling client selection",
        extra={"site_mode": settings.site_mode, "configured": settings.scheduling_configured},
    )
    return build_scheduling_client(settings)


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return StripePaymentGateway(get_settings())


def get_capture_scheduler() -> CaptureScheduler:
    return schedule_capture_retry


def get_slot_reservation_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SlotReservationService:
    return SlotReservationService(db, settings)


def get_availability_sync_service(
    db: Session = Depends(get_db),
    client: SchedulingClient = Depends(get_scheduling_client),
    settings: Settings = Depends(get_settings),
) -> AvailabilitySyncService:
    return AvailabilitySyncService(db, client, settings)


def get_booking_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    client: SchedulingClient = Depends(get_scheduling_client),
    capture_scheduler: CaptureScheduler = Depends(get_capture_scheduler),
    settings: Settings = Depends(get_settings),
) -> BookingPaymentService:
    return BookingPaymentService(
        db,
        gateway,
        scheduling_client=client,
        settings=settings,
        capture_scheduler=capture_scheduler,
    )


def get_application_service(
    db: Session = Depends(get_db),
    directory: SchedulingClient = Depends(get_scheduling_client),
    settings: Settings = Depends(get_settings),
) -> ApplicationService:
    return ApplicationService(db, directory, settings)


def get_sync_trigger() -> Callable[[Optional[str]], Any]:
    return trigger_availability_sync
