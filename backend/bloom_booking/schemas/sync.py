"""Availability sync schemas."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from ._strict_base import StrictModel, StrictRequestModel


class SyncTriggerRequest(StrictRequestModel):
    provider_id: Optional[str] = Field(default=None, max_length=26)


class SyncTriggerResponse(StrictModel):
    status: str = "queued"
    task_id: str
    provider_id: Optional[str] = None


class SyncStatusResponse(StrictModel):
    provider_id: str
    status: str
    last_full_sync: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SchedulingWebhookAck(StrictModel):
    ok: bool = True
    event: Optional[str] = None
    queued: bool = False
    provider_id: Optional[str] = None
    task_id: Optional[str] = None
