# backend/bloom_booking/routes/v1/applications.py
"""
Practitioner application routes - API v1

Endpoints:
    POST / - Submit an application
    GET /{application_id} - Application details
    POST /{application_id}/status - Reviewer status change
    POST /{application_id}/contract - Attach the contract to be signed
    POST /{application_id}/send-offer - Issue an offer link
    POST /{application_id}/verify - Link to the practitioner directory
    POST /{application_id}/activate - Create the bookable provider
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, status

from ...api.dependencies.services import get_application_service
from ...schemas.application import (
    ApplicationCreate,
    ApplicationResponse,
    ContractRequest,
    OfferSentResponse,
    ProviderResponse,
    StatusUpdateRequest,
    VerificationResponse,
)
from ...services.application_service import ApplicationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["applications-v1"])


@router.post("", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED)
async def submit_application(
    payload: ApplicationCreate,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    application = await asyncio.to_thread(
        service.submit, payload.first_name, payload.last_name, payload.email, payload.phone
    )
    return ApplicationResponse.model_validate(application)


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    application = await asyncio.to_thread(service.get, application_id)
    return ApplicationResponse.model_validate(application)


@router.post("/{application_id}/status", response_model=ApplicationResponse)
async def update_application_status(
    application_id: str,
    payload: StatusUpdateRequest,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    application = await asyncio.to_thread(
        service.update_status, application_id, payload.status, payload.actor
    )
    return ApplicationResponse.model_validate(application)


@router.post("/{application_id}/contract", response_model=ApplicationResponse)
async def attach_contract(
    application_id: str,
    payload: ContractRequest,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    application = await asyncio.to_thread(service.attach_contract, application_id, payload.contract_url)
    return ApplicationResponse.model_validate(application)


@router.post("/{application_id}/send-offer", response_model=OfferSentResponse)
async def send_offer(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
) -> OfferSentResponse:
    issued = await asyncio.to_thread(service.send_offer, application_id)
    return OfferSentResponse(
        application=ApplicationResponse.model_validate(issued.application),
        offer_url=issued.offer_url,
    )


@router.post("/{application_id}/verify", response_model=VerificationResponse)
async def verify_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
) -> VerificationResponse:
    result = await asyncio.to_thread(service.verify_with_directory, application_id)
    return VerificationResponse(
        application_id=result.application.id,
        verified=result.verified,
        changed=result.changed,
        linked_provider_id=result.application.linked_provider_id,
        discrepancy=result.discrepancy,
    )


@router.post("/{application_id}/activate", response_model=ProviderResponse)
async def activate_provider(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
) -> ProviderResponse:
    provider = await asyncio.to_thread(service.activate_provider, application_id)
    return ProviderResponse.model_validate(provider)
