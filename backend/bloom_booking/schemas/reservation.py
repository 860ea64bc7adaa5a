# backend/bloom_booking/schemas/reservation.py
"""Slot reservation and slot listing schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, ValidationInfo, field_validator

from ._strict_base import StrictModel, StrictRequestModel


class ReserveRequest(StrictRequestModel):
    """Hold the earliest free slot that fully contains ``[start, end)``."""

    provider_id: str = Field(..., min_length=1, max_length=26)
    start: datetime
    end: datetime
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    holder_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("end")
    @classmethod
    def validate_window_order(cls, v: datetime, info: ValidationInfo) -> datetime:
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("End time must be after start time")
        return v


class ReservationResponse(StrictModel):
    slot_id: str
    lock_token: str
    expires_at: datetime
    expires_unix: int


class ReleaseRequest(StrictRequestModel):
    slot_id: str = Field(..., min_length=1, max_length=26)
    lock_token: str = Field(..., min_length=1, max_length=64)


class ReleaseResponse(StrictModel):
    slot_id: str
    status: str = "free"


class SlotResponse(StrictModel):
    id: str
    provider_id: str
    start_unix: int
    end_unix: int
    start_at: datetime
    end_at: datetime
    start_local: Optional[datetime] = None
    duration_minutes: int
    status: str
    location_type: str


class SlotListResponse(StrictModel):
    provider_id: str
    slots: List[SlotResponse]
    count: int
