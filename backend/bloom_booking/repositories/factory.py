# backend/bloom_booking/repositories/factory.py
"""
Repository Factory for the booking core.

Centralizes repository creation so services never construct repositories
with ad-hoc arguments.
"""

from sqlalchemy.orm import Session

from .application_repository import ApplicationRepository
from .payment_repository import BookingSagaRepository, PaymentRepository
from .provider_repository import ProviderRepository
from .slot_repository import SlotRepository
from .sync_log_repository import SyncLogRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_slot_repository(db: Session) -> SlotRepository:
        return SlotRepository(db)

    @staticmethod
    def create_provider_repository(db: Session) -> ProviderRepository:
        return ProviderRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> PaymentRepository:
        return PaymentRepository(db)

    @staticmethod
    def create_booking_saga_repository(db: Session) -> BookingSagaRepository:
        return BookingSagaRepository(db)

    @staticmethod
    def create_application_repository(db: Session) -> ApplicationRepository:
        return ApplicationRepository(db)

    @staticmethod
    def create_sync_log_repository(db: Session) -> SyncLogRepository:
        return SyncLogRepository(db)
