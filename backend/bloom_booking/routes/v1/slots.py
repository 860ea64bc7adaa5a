# backend/bloom_booking/routes/v1/slots.py
"""
Slot listing routes - API v1

Endpoints:
    GET / - Bookable slots for a provider in a time range
"""

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ...api.dependencies.services import get_slot_reservation_service
from ...core.config import Settings, get_settings
from ...core.timestamps import display_in_zone, unix_from_datetime
from ...models.slot import Slot
from ...schemas.reservation import SlotListResponse, SlotResponse
from ...services.slot_reservation_service import SlotReservationService

router = APIRouter(tags=["slots-v1"])


def to_slot_response(slot: Slot, tz_name: str) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        provider_id=slot.provider_id,
        start_unix=slot.start_unix,
        end_unix=slot.end_unix,
        start_at=slot.start_at,
        end_at=slot.end_at,
        start_local=display_in_zone(slot.start_unix, tz_name),
        duration_minutes=slot.duration_minutes,
        status=slot.status,
        location_type=slot.location_type,
    )


@router.get("", response_model=SlotListResponse)
async def list_slots(
    provider_id: str = Query(..., min_length=1, max_length=26),
    start: datetime = Query(..., description="Range start (ISO-8601)"),
    end: datetime = Query(..., description="Range end (ISO-8601)"),
    service: SlotReservationService = Depends(get_slot_reservation_service),
    settings: Settings = Depends(get_settings),
) -> SlotListResponse:
    slots = await asyncio.to_thread(
        service.list_available, provider_id, unix_from_datetime(start), unix_from_datetime(end)
    )
    items = [to_slot_response(slot, settings.clinic_timezone) for slot in slots]
    return SlotListResponse(provider_id=provider_id, slots=items, count=len(items))
