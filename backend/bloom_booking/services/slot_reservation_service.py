# backend/bloom_booking/services/slot_reservation_service.py
"""
Slot Reservation Service.

Turns a requested window into an exclusive, expiring hold on exactly one
slot. Every status change goes through ``SlotRepository.transition``; a lost
compare-and-swap is never retried against the same slot.
"""

from dataclasses import dataclass
from datetime import datetime
import secrets
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    LeaseExpiredException,
    NoAvailabilityException,
    NotFoundException,
    SlotConflictException,
    ValidationException,
)
from ..core.timestamps import datetime_from_unix, now_unix
from ..models.slot import Slot
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_repository import BOOKED, FREE, HELD, LeaseCondition
from .base import BaseService


@dataclass(frozen=True)
class Reservation:
    slot_id: str
    lock_token: str
    expires_unix: int
    start_unix: int
    end_unix: int

    @property
    def expires_at(self) -> datetime:
        return datetime_from_unix(self.expires_unix)


class SlotReservationService(BaseService):
    """Reserve, release and reclaim slot holds."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(db, settings)
        self.clock = clock or now_unix
        self.slot_repository = RepositoryFactory.create_slot_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)

    # ---------------------------------------------------------------- public

    @BaseService.measure_operation("reserve")
    def reserve(
        self,
        provider_id: str,
        start_unix: int,
        end_unix: int,
        duration_minutes: int,
        holder_id: str,
    ) -> Reservation:
        """
        Hold the earliest free slot that fully contains the requested window.

        Raises:
            ValidationException: malformed request
            NotFoundException: unknown or non-bookable provider
            NoAvailabilityException: no candidate slot
            SlotConflictException: candidates existed but every hold attempt lost
        """
        if start_unix >= end_unix:
            raise ValidationException("Start time must be before end time", code="INVALID_WINDOW")
        if duration_minutes <= 0:
            raise ValidationException("Duration must be positive", code="INVALID_DURATION")
        if not holder_id:
            raise ValidationException("A holder id is required", code="HOLDER_REQUIRED")

        provider = self.provider_repository.get_by_id(provider_id)
        if provider is None or not provider.is_active or not provider.booking_enabled:
            raise NotFoundException(
                "Provider not found or not accepting bookings",
                code="PROVIDER_NOT_FOUND",
                details={"provider_id": provider_id},
            )

        now = self.clock()
        window = {"provider_id": provider_id, "start_unix": start_unix, "end_unix": end_unix}
        expires = now + self.settings.slot_lease_minutes * 60
        # A lost swap takes that slot out of the next lookup.
        for attempt in range(self.settings.reservation_max_attempts):
            candidate = self.slot_repository.find_free_slot(
                provider_id, start_unix, end_unix, duration_minutes, now
            )
            if candidate is None:
                if attempt == 0:
                    prometheus_metrics.record_reservation("no_availability")
                    raise NoAvailabilityException(details=window)
                break

            token = secrets.token_urlsafe(24)
            from_status = candidate.status
            # A held candidate was only returned because its lease ran out.
            lease = LeaseCondition.EXPIRED if from_status == HELD else LeaseCondition.ANY
            with self.transaction():
                won = self._cas(
                    candidate.id,
                    from_status,
                    HELD,
                    actor=holder_id,
                    now_unix=now,
                    new_token=token,
                    held_by=holder_id,
                    expires_unix=expires,
                    lease=lease,
                    note="reclaimed expired hold" if from_status == HELD else None,
                )
            if won:
                self.logger.info(
                    "slot_reserved",
                    extra={"slot_id": candidate.id, "provider_id": provider_id, "holder_id": holder_id},
                )
                prometheus_metrics.record_reservation("reserved")
                return Reservation(
                    slot_id=candidate.id,
                    lock_token=token,
                    expires_unix=expires,
                    start_unix=candidate.start_unix,
                    end_unix=candidate.end_unix,
                )
            self.logger.info("slot_reservation_lost_race", extra={"slot_id": candidate.id})

        prometheus_metrics.record_reservation("conflict")
        raise SlotConflictException(details=window)

    @BaseService.measure_operation("release")
    def release(self, slot_id: str, lock_token: str, actor: Optional[str] = None) -> None:
        """Give a live hold back. Mismatched or expired tokens are a conflict, never a silent success."""
        slot = self._get_slot(slot_id)
        with self.transaction():
            released = self._cas(
                slot_id,
                HELD,
                FREE,
                actor=actor or slot.held_by or "holder",
                expected_token=lock_token,
                lease=LeaseCondition.LIVE,
                note="released",
            )
        if not released:
            raise SlotConflictException(
                "This hold is no longer valid", details={"slot_id": slot_id}
            )

    def validate_lease(self, slot_id: str, lock_token: str, now: Optional[int] = None) -> Slot:
        """Return the slot if ``lock_token`` is a live hold on it."""
        slot = self._get_slot(slot_id)
        now = self.clock() if now is None else now
        if slot.status != HELD or slot.lock_token != lock_token:
            raise SlotConflictException("This hold is no longer valid", details={"slot_id": slot_id})
        if not slot.is_hold_live(now):
            raise LeaseExpiredException(slot_id)
        return slot

    @BaseService.measure_operation("reclaim_expired_holds")
    def reclaim_expired_holds(self, now: Optional[int] = None) -> int:
        """Return every hold past its expiry to ``free``."""
        now = self.clock() if now is None else now
        reclaimed = 0
        for slot_id, token in [(s.id, s.lock_token) for s in self.slot_repository.list_expired_holds(now)]:
            with self.transaction():
                if self.reclaim_hold(slot_id, token, now=now):
                    reclaimed += 1
        if reclaimed:
            self.logger.info("expired_holds_reclaimed", extra={"count": reclaimed})
        return reclaimed

    def list_available(self, provider_id: str, start_unix: int, end_unix: int) -> List[Slot]:
        if start_unix >= end_unix:
            raise ValidationException("Start time must be before end time", code="INVALID_WINDOW")
        return self.slot_repository.list_available_in_range(
            provider_id, start_unix, end_unix, self.clock()
        )

    def admin_reset_slot(self, slot_id: str, actor: str) -> Slot:
        """Administrative ``booked -> free``. Not available in production."""
        if self.settings.is_production:
            raise ForbiddenException(
                "Slot reset is not available in production", code="RESET_FORBIDDEN"
            )
        self._get_slot(slot_id)
        with self.transaction():
            reset = self._cas(
                slot_id, BOOKED, FREE, actor=actor, administrative=True, note="administrative reset"
            )
        if not reset:
            raise ConflictException(
                "Only booked slots can be reset", code="SLOT_NOT_BOOKED", details={"slot_id": slot_id}
            )
        self.log_operation("admin_reset_slot", slot_id=slot_id, actor=actor)
        return self._get_slot(slot_id)

    # ------------------------------------------------- saga building blocks
    # These flush but do not commit; the calling service owns the transaction.

    def confirm_booking(self, slot_id: str, lock_token: str, actor: str) -> bool:
        return self._cas(
            slot_id, HELD, BOOKED, actor=actor, expected_token=lock_token, lease=LeaseCondition.LIVE
        )

    def release_hold(self, slot_id: str, lock_token: str, actor: str, note: Optional[str] = None) -> bool:
        """Release our own hold whether or not its lease has run out."""
        return self._cas(slot_id, HELD, FREE, actor=actor, expected_token=lock_token, note=note)

    def reclaim_hold(self, slot_id: str, lock_token: Optional[str], now: Optional[int] = None) -> bool:
        return self._cas(
            slot_id,
            HELD,
            FREE,
            actor="reaper",
            now_unix=now,
            expected_token=lock_token,
            lease=LeaseCondition.EXPIRED,
            note="lease expired",
        )

    # --------------------------------------------------------------- helpers

    def _get_slot(self, slot_id: str) -> Slot:
        slot = self.slot_repository.get_by_id(slot_id)
        if slot is None:
            raise NotFoundException("Slot not found", code="SLOT_NOT_FOUND", details={"slot_id": slot_id})
        return slot

    def _cas(
        self,
        slot_id: str,
        from_status: str,
        to_status: str,
        *,
        actor: str,
        now_unix: Optional[int] = None,
        **kwargs: Any,
    ) -> bool:
        won = self.slot_repository.transition(
            slot_id,
            from_status,
            to_status,
            actor=actor,
            now_unix=self.clock() if now_unix is None else now_unix,
            **kwargs,
        )
        prometheus_metrics.record_slot_transition(from_status, to_status, won)
        return won
