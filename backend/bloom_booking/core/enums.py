# backend/bloom_booking/core/enums.py
"""
Core enums for the booking core.

Stored as plain strings in the database; the enums give services and
schemas a single spelling for every status value.
"""

from enum import Enum


class SlotStatus(str, Enum):
    FREE = "free"
    HELD = "held"
    BOOKED = "booked"
    CANCELLED = "cancelled"


class LocationType(str, Enum):
    IN_PERSON = "in-person"
    TELEHEALTH = "telehealth"
    PHONE = "phone"


class PaymentStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SagaState(str, Enum):
    """Caller-visible state of an Authorize -> Book -> Capture run."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    BOOKED = "booked"
    CAPTURED = "captured"
    FAILED_AND_REVERSED = "failed_and_reversed"

    @property
    def is_success(self) -> bool:
        return self in (SagaState.BOOKED, SagaState.CAPTURED)


class ApplicationStatus(str, Enum):
    SUBMITTED = "submitted"
    REVIEWING = "reviewing"
    INTERVIEW = "interview"
    ACCEPTED = "accepted"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    WITHDRAWN = "withdrawn"


class SyncOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class SyncHealth(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    ERROR = "error"
