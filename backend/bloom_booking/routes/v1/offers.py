# backend/bloom_booking/routes/v1/offers.py
"""
Offer acceptance routes - API v1

The token in the path is the only credential; unknown tokens get one
generic "invalid or expired" answer.

Endpoints:
    GET /accept-offer/{token} - Offer details and whether it is already accepted
    POST /accept-offer/{token} - Accept the offer
    POST /accept-offer/{token}/signed-contract - Record the signed contract URL
"""

import asyncio

from fastapi import APIRouter, Depends

from ...api.dependencies.services import get_application_service
from ...core.enums import ApplicationStatus
from ...models.application import Application
from ...schemas.application import (
    AcceptOfferResponse,
    OfferDetailsResponse,
    SignedContractRequest,
)
from ...services.application_service import ApplicationService

router = APIRouter(tags=["offers-v1"])


def _offer_details(application: Application) -> OfferDetailsResponse:
    is_accepted = application.status == ApplicationStatus.OFFER_ACCEPTED.value
    return OfferDetailsResponse(
        application_id=application.id,
        first_name=application.first_name,
        last_name=application.last_name,
        email=application.email,
        contract_url=application.contract_url,
        signed_contract_url=application.signed_contract_url,
        offer_sent_at=application.offer_sent_at,
        is_accepted=is_accepted,
        requires_signed_contract=not is_accepted and not application.signed_contract_url,
    )


@router.get("/accept-offer/{token}", response_model=OfferDetailsResponse)
async def get_offer(
    token: str,
    service: ApplicationService = Depends(get_application_service),
) -> OfferDetailsResponse:
    view = await asyncio.to_thread(service.get_offer, token)
    return _offer_details(view.application)


@router.post("/accept-offer/{token}", response_model=AcceptOfferResponse)
async def accept_offer(
    token: str,
    service: ApplicationService = Depends(get_application_service),
) -> AcceptOfferResponse:
    result = await asyncio.to_thread(service.accept_offer, token)
    return AcceptOfferResponse(
        status=result.application.status,
        already_accepted=result.already_accepted,
        offer_accepted_at=result.application.offer_accepted_at,
    )


@router.post("/accept-offer/{token}/signed-contract", response_model=OfferDetailsResponse)
async def attach_signed_contract(
    token: str,
    payload: SignedContractRequest,
    service: ApplicationService = Depends(get_application_service),
) -> OfferDetailsResponse:
    application = await asyncio.to_thread(
        service.attach_signed_contract, token, payload.signed_contract_url
    )
    return _offer_details(application)
