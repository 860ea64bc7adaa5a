# backend/bloom_booking/routes/v1/bookings.py
"""
Booking routes - API v1

All business logic delegated to BookingPaymentService.

Endpoints:
    POST /book - Confirm the booking for an authorized payment (saga step 2, then capture)
    POST /checkout - Authorize, book and capture in one call
    GET /{saga_id} - Current state of a booking saga
"""

import asyncio
import logging

from fastapi import APIRouter, Depends

from ...api.dependencies.services import get_booking_payment_service
from ...schemas.booking import BookRequest, CheckoutRequest, SagaResponse
from ...services.booking_payment_service import BookingPaymentService
from .payments import to_patient_details

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings-v1"])


@router.post("/book", response_model=SagaResponse)
async def book_slot(
    payload: BookRequest,
    service: BookingPaymentService = Depends(get_booking_payment_service),
) -> SagaResponse:
    """
    Book the held slot, then capture.

    A capture failure does not fail the request: the booking stands with
    state ``booked`` and the capture is retried in the background.
    """

    def _book_and_capture() -> SagaResponse:
        saga = service.book(payload.slot_id, payload.lock_token, payload.payment_intent_id)
        return SagaResponse.from_saga(service.capture(saga.id))

    return await asyncio.to_thread(_book_and_capture)


@router.post("/checkout", response_model=SagaResponse)
async def checkout(
    payload: CheckoutRequest,
    service: BookingPaymentService = Depends(get_booking_payment_service),
) -> SagaResponse:
    saga = await asyncio.to_thread(
        lambda: service.execute(
            payload.slot_id,
            payload.lock_token,
            payload.amount_cents,
            payload.currency,
            holder_id=payload.holder_id,
            payment_method_id=payload.payment_method_id,
            patient=to_patient_details(payload.patient),
        )
    )
    return SagaResponse.from_saga(saga)


@router.get("/{saga_id}", response_model=SagaResponse)
async def get_booking(
    saga_id: str,
    service: BookingPaymentService = Depends(get_booking_payment_service),
) -> SagaResponse:
    saga = await asyncio.to_thread(service.get_saga, saga_id)
    return SagaResponse.from_saga(saga)
