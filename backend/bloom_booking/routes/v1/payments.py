# backend/bloom_booking/routes/v1/payments.py
"""
Payment routes - API v1

Endpoints:
    POST /authorize - Authorize funds against a live hold (saga step 1)
    POST /cancel-payment - Release an authorization (idempotent)
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, status

from ...api.dependencies.services import get_booking_payment_service
from ...schemas.booking import (
    AuthorizeRequest,
    CancelPaymentRequest,
    CancelPaymentResponse,
    PatientIn,
    SagaResponse,
)
from ...services.booking_payment_service import BookingPaymentService, PatientDetails

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


def to_patient_details(patient: Optional[PatientIn]) -> Optional[PatientDetails]:
    if patient is None:
        return None
    return PatientDetails(
        first_name=patient.first_name,
        last_name=patient.last_name,
        email=patient.email,
        phone=patient.phone,
    )


@router.post("/authorize", response_model=SagaResponse, status_code=status.HTTP_201_CREATED)
async def authorize_payment(
    payload: AuthorizeRequest,
    service: BookingPaymentService = Depends(get_booking_payment_service),
) -> SagaResponse:
    saga = await asyncio.to_thread(
        lambda: service.authorize(
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


@router.post("/cancel-payment", response_model=CancelPaymentResponse)
async def cancel_payment(
    payload: CancelPaymentRequest,
    service: BookingPaymentService = Depends(get_booking_payment_service),
) -> CancelPaymentResponse:
    """Already-cancelled or captured payments answer with their current status."""
    result = await asyncio.to_thread(service.cancel_payment, payload.payment_intent_id, payload.reason)
    return CancelPaymentResponse(payment_intent_id=payload.payment_intent_id, status=result)
