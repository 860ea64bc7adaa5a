# backend/bloom_booking/routes/v1/reservations.py
"""
Slot reservation routes - API v1

Endpoints:
    POST /reserve - Hold the earliest free slot for a requested window
    POST /release - Give a live hold back
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, status

from ...api.dependencies.services import get_slot_reservation_service
from ...core.timestamps import unix_from_datetime
from ...schemas.reservation import (
    ReleaseRequest,
    ReleaseResponse,
    ReservationResponse,
    ReserveRequest,
)
from ...services.slot_reservation_service import SlotReservationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reservations-v1"])


@router.post("/reserve", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def reserve_slot(
    payload: ReserveRequest,
    service: SlotReservationService = Depends(get_slot_reservation_service),
) -> ReservationResponse:
    """
    Reserve a slot.

    404 when nothing matches the window, 409 when every candidate was taken
    while we were trying.
    """
    reservation = await asyncio.to_thread(
        service.reserve,
        payload.provider_id,
        unix_from_datetime(payload.start),
        unix_from_datetime(payload.end),
        payload.duration_minutes,
        payload.holder_id,
    )
    return ReservationResponse(
        slot_id=reservation.slot_id,
        lock_token=reservation.lock_token,
        expires_at=reservation.expires_at,
        expires_unix=reservation.expires_unix,
    )


@router.post("/release", response_model=ReleaseResponse)
async def release_slot(
    payload: ReleaseRequest,
    service: SlotReservationService = Depends(get_slot_reservation_service),
) -> ReleaseResponse:
    await asyncio.to_thread(service.release, payload.slot_id, payload.lock_token)
    return ReleaseResponse(slot_id=payload.slot_id)
