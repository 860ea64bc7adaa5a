# backend/bloom_booking/routes/v1/management.py
"""
Administrative routes - API v1

Both endpoints refuse with 403 in production.

Endpoints:
    POST /reset-application/{application_id} - Put an application back to reviewing
    POST /reset-slot/{slot_id} - Free a booked slot
"""

import asyncio

from fastapi import APIRouter, Depends

from ...api.dependencies.services import get_application_service, get_slot_reservation_service
from ...core.config import Settings, get_settings
from ...schemas.application import ApplicationResponse, ResetRequest
from ...schemas.reservation import SlotResponse
from ...services.application_service import ApplicationService
from ...services.slot_reservation_service import SlotReservationService
from .slots import to_slot_response

router = APIRouter(tags=["management-v1"])


@router.post("/reset-application/{application_id}", response_model=ApplicationResponse)
async def reset_application(
    application_id: str,
    payload: ResetRequest,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    application = await asyncio.to_thread(service.reset, application_id, payload.actor)
    return ApplicationResponse.model_validate(application)


@router.post("/reset-slot/{slot_id}", response_model=SlotResponse)
async def reset_slot(
    slot_id: str,
    payload: ResetRequest,
    service: SlotReservationService = Depends(get_slot_reservation_service),
    settings: Settings = Depends(get_settings),
) -> SlotResponse:
    slot = await asyncio.to_thread(service.admin_reset_slot, slot_id, payload.actor)
    return to_slot_response(slot, settings.clinic_timezone)
