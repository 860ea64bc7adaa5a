# backend/bloom_booking/schemas/application.py
"""Practitioner application and offer schemas."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from ._strict_base import StrictModel, StrictRequestModel


class ApplicationCreate(StrictRequestModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    phone: Optional[str] = Field(default=None, max_length=40)


class ApplicationResponse(StrictModel):
    id: str
    first_name: str
    last_name: str
    email: str
    status: str
    contract_url: Optional[str] = None
    offer_sent_at: Optional[datetime] = None
    offer_accepted_at: Optional[datetime] = None
    signed_contract_url: Optional[str] = None
    verified_with_provider: bool
    verified_at: Optional[datetime] = None
    linked_provider_id: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: Optional[datetime] = None


class StatusUpdateRequest(StrictRequestModel):
    status: Literal["reviewing", "interview", "accepted", "withdrawn"]
    actor: str = Field(..., min_length=1, max_length=128)


class ContractRequest(StrictRequestModel):
    contract_url: str = Field(..., min_length=1)


class SignedContractRequest(StrictRequestModel):
    signed_contract_url: str = Field(..., min_length=1)


class OfferSentResponse(StrictModel):
    application: ApplicationResponse
    offer_url: str


class OfferDetailsResponse(StrictModel):
    application_id: str
    first_name: str
    last_name: str
    email: str
    contract_url: Optional[str] = None
    signed_contract_url: Optional[str] = None
    offer_sent_at: Optional[datetime] = None
    is_accepted: bool
    requires_signed_contract: bool


class AcceptOfferResponse(StrictModel):
    status: str
    already_accepted: bool
    offer_accepted_at: Optional[datetime] = None


class VerificationResponse(StrictModel):
    application_id: str
    verified: bool
    changed: bool
    linked_provider_id: Optional[str] = None
    discrepancy: Optional[str] = None


class ProviderResponse(StrictModel):
    id: str
    external_provider_id: str
    display_name: str
    is_active: bool
    booking_enabled: bool
    application_id: Optional[str] = None


class ResetRequest(StrictRequestModel):
    actor: str = Field(..., min_length=1, max_length=128)
