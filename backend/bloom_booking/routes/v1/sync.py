# backend/bloom_booking/routes/v1/sync.py
"""
Availability sync routes - API v1

Endpoints:
    POST /trigger - Queue a sync run (all providers, or one)
    GET /status/{provider_id} - Sync health for a provider
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from fastapi import APIRouter, Body, Depends, status

from ...api.dependencies.services import get_availability_sync_service, get_sync_trigger
from ...schemas.sync import SyncStatusResponse, SyncTriggerRequest, SyncTriggerResponse
from ...services.availability_sync_service import AvailabilitySyncService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync-v1"])


@router.post("/trigger", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    payload: Optional[SyncTriggerRequest] = Body(default=None),
    trigger: Callable[[Optional[str]], Any] = Depends(get_sync_trigger),
) -> SyncTriggerResponse:
    provider_id = payload.provider_id if payload else None
    result = await asyncio.to_thread(trigger, provider_id)
    logger.info("availability_sync_triggered", extra={"provider_id": provider_id})
    return SyncTriggerResponse(task_id=str(result.id), provider_id=provider_id)


@router.get("/status/{provider_id}", response_model=SyncStatusResponse)
async def get_sync_status(
    provider_id: str,
    service: AvailabilitySyncService = Depends(get_availability_sync_service),
) -> SyncStatusResponse:
    result = await asyncio.to_thread(service.get_sync_status, provider_id)
    return SyncStatusResponse(
        provider_id=result.provider_id,
        status=result.status,
        last_full_sync=result.last_full_sync,
        last_attempt_at=result.last_attempt_at,
        error_message=result.error_message,
    )
