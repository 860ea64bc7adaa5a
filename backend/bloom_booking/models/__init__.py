"""
Database models for the booking core.

Importing this package registers every table on ``Base.metadata``:
- Providers and their slots (with the append-only transition log)
- Payment authorizations and booking sagas
- Practitioner applications
- Availability sync logs
"""

from .application import Application
from .booking_saga import BookingSaga
from .payment import PaymentAuthorization
from .provider import Provider
from .slot import Slot, SlotTransition
from .sync_log import SyncLog

__all__ = [
    "Application",
    "BookingSaga",
    "PaymentAuthorization",
    "Provider",
    "Slot",
    "SlotTransition",
    "SyncLog",
]
