# backend/bloom_booking/schemas/booking.py
"""Payment authorization, booking and cancel-payment schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from ..core.enums import SagaState
from ._strict_base import StrictModel, StrictRequestModel


class PatientIn(StrictRequestModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    phone: Optional[str] = Field(default=None, max_length=40)


class AuthorizeRequest(StrictRequestModel):
    slot_id: str = Field(..., min_length=1, max_length=26)
    lock_token: str = Field(..., min_length=1, max_length=64)
    amount_cents: int = Field(..., gt=0, description="Quoted amount in cents")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    holder_id: str = Field(..., min_length=1, max_length=128)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    patient: Optional[PatientIn] = None


class CheckoutRequest(AuthorizeRequest):
    """Authorize, book and capture in one call."""


class BookRequest(StrictRequestModel):
    slot_id: str = Field(..., min_length=1, max_length=26)
    lock_token: str = Field(..., min_length=1, max_length=64)
    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class CancelPaymentRequest(StrictRequestModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)
    reason: str = Field(default="booking_failed", max_length=255)


class CancelPaymentResponse(StrictModel):
    payment_intent_id: str
    status: str


class SagaResponse(StrictModel):
    saga_id: str
    slot_id: str
    state: str
    is_success: bool
    failure_reason: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_cents: int
    currency: str
    external_appointment_id: Optional[str] = None
    booked_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None

    @classmethod
    def from_saga(cls, saga: Any) -> "SagaResponse":
        return cls(
            saga_id=saga.id,
            slot_id=saga.slot_id,
            state=saga.state,
            is_success=SagaState(saga.state).is_success,
            failure_reason=saga.failure_reason,
            payment_intent_id=saga.payment_intent_id,
            amount_cents=saga.amount_cents,
            currency=saga.currency,
            external_appointment_id=saga.external_appointment_id,
            booked_at=saga.booked_at,
            captured_at=saga.captured_at,
        )
