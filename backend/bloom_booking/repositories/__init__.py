"""Repository layer: data access only, transactions are owned by services."""

from .application_repository import ApplicationRepository
from .base_repository import BaseRepository
from .factory import RepositoryFactory
from .payment_repository import BookingSagaRepository, PaymentRepository
from .provider_repository import ProviderRepository
from .slot_repository import LeaseCondition, SlotRepository, SlotWindow, UpsertResult
from .sync_log_repository import SyncLogRepository

__all__ = [
    "ApplicationRepository",
    "BaseRepository",
    "BookingSagaRepository",
    "LeaseCondition",
    "PaymentRepository",
    "ProviderRepository",
    "RepositoryFactory",
    "SlotRepository",
    "SlotWindow",
    "SyncLogRepository",
    "UpsertResult",
]
