# backend/bloom_booking/repositories/slot_repository.py
"""
Slot store repository.

``transition`` is the only way a slot's status changes after insert. It is a
single conditional UPDATE (compare-and-swap on status, and on lock token /
lease expiry where asked) whose row count decides success. Every successful
transition appends a SlotTransition row in the same transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import SlotStatus
from ..core.exceptions import InvariantViolation, RepositoryException
from ..core.ulid_helper import generate_ulid
from ..models.slot import Slot, SlotTransition
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

FREE = SlotStatus.FREE.value
HELD = SlotStatus.HELD.value
BOOKED = SlotStatus.BOOKED.value
CANCELLED = SlotStatus.CANCELLED.value

SLOT_TRANSITIONS = frozenset(
    {
        (FREE, HELD),
        (HELD, HELD),  # reclaim of an expired lease by a new holder
        (HELD, BOOKED),
        (HELD, FREE),
        (FREE, CANCELLED),
        (CANCELLED, FREE),
    }
)
# Only reachable through the administrative reset path.
ADMIN_TRANSITIONS = frozenset({(BOOKED, FREE)})


class LeaseCondition(str, Enum):
    """Extra predicate on ``lock_expires_unix`` for a transition."""

    ANY = "any"
    LIVE = "live"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SlotWindow:
    """One free window reported by the scheduling provider, already canonicalised."""

    external_slot_id: str
    start_unix: int
    end_unix: int
    location_type: str

    @property
    def duration_minutes(self) -> int:
        return (self.end_unix - self.start_unix) // 60


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped


class SlotRepository(BaseRepository[Slot]):
    """Data access for slots and their transition log."""

    def __init__(self, db: Session):
        super().__init__(db, Slot)

    # ------------------------------------------------------------------ reads

    def get_by_external_id(self, external_slot_id: str) -> Optional[Slot]:
        return self.find_one_by(external_slot_id=external_slot_id)

    def find_free_slots(
        self,
        provider_id: str,
        start_unix: int,
        end_unix: int,
        duration_minutes: int,
        now_unix: int,
        limit: int = 3,
    ) -> List[Slot]:
        """
        Candidate slots for a reservation, earliest first.

        A candidate is bookable, has exactly the requested duration, fully
        contains ``[start_unix, end_unix)``, and is either free or held under a
        lease that has already expired.
        """
        stmt = (
            select(Slot)
            .where(
                Slot.provider_id == provider_id,
                Slot.is_bookable.is_(True),
                Slot.duration_minutes == duration_minutes,
                Slot.start_unix <= start_unix,
                Slot.end_unix >= end_unix,
                self._available_clause(now_unix),
            )
            .order_by(Slot.start_unix.asc(), Slot.id.asc())
            .limit(limit)
        )
        return self._scalars(stmt)

    def find_free_slot(
        self,
        provider_id: str,
        start_unix: int,
        end_unix: int,
        duration_minutes: int,
        now_unix: int,
    ) -> Optional[Slot]:
        candidates = self.find_free_slots(
            provider_id, start_unix, end_unix, duration_minutes, now_unix, limit=1
        )
        return candidates[0] if candidates else None

    def list_available_in_range(
        self, provider_id: str, start_unix: int, end_unix: int, now_unix: int
    ) -> List[Slot]:
        """Bookable slots starting inside the range that a reservation could take now."""
        stmt = (
            select(Slot)
            .where(
                Slot.provider_id == provider_id,
                Slot.is_bookable.is_(True),
                Slot.start_unix >= start_unix,
                Slot.start_unix < end_unix,
                self._available_clause(now_unix),
            )
            .order_by(Slot.start_unix.asc(), Slot.id.asc())
        )
        return self._scalars(stmt)

    def list_by_status_in_range(
        self, provider_id: str, status: str, start_unix: int, end_unix: int
    ) -> List[Slot]:
        stmt = select(Slot).where(
            Slot.provider_id == provider_id,
            Slot.status == status,
            Slot.start_unix >= start_unix,
            Slot.start_unix < end_unix,
        )
        return self._scalars(stmt)

    def list_by_external_ids(self, provider_id: str, external_ids: Sequence[str]) -> List[Slot]:
        if not external_ids:
            return []
        stmt = select(Slot).where(
            Slot.provider_id == provider_id, Slot.external_slot_id.in_(list(external_ids))
        )
        return self._scalars(stmt)

    def list_expired_holds(self, now_unix: int, limit: int = 500) -> List[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.status == HELD, Slot.lock_expires_unix <= now_unix)
            .order_by(Slot.lock_expires_unix.asc())
            .limit(limit)
        )
        return self._scalars(stmt)

    def list_transitions(self, slot_id: str) -> List[SlotTransition]:
        stmt = (
            select(SlotTransition)
            .where(SlotTransition.slot_id == slot_id)
            .order_by(SlotTransition.occurred_unix.asc(), SlotTransition.id.asc())
        )
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error reading transitions for slot {slot_id}: {str(e)}")
            raise RepositoryException(f"Failed to read slot transitions: {str(e)}")

    # ----------------------------------------------------------------- writes

    def upsert_slots(
        self, provider_id: str, windows: Iterable[SlotWindow], synced_at: datetime
    ) -> UpsertResult:
        """
        Idempotent bulk reconciliation keyed by ``external_slot_id``.

        New windows are inserted as free. Existing rows get their window,
        duration and location refreshed only while they are free or cancelled;
        held and booked rows are left exactly as they are. ``is_bookable`` is
        written on insert only, so administrative blocks survive the sync.
        """
        result = UpsertResult()
        try:
            for window in windows:
                if self._insert_if_absent(provider_id, window, synced_at):
                    result.created += 1
                    continue
                refreshed = self.db.execute(
                    update(Slot)
                    .where(
                        Slot.external_slot_id == window.external_slot_id,
                        Slot.provider_id == provider_id,
                        Slot.status.in_((FREE, CANCELLED)),
                    )
                    .values(
                        start_unix=window.start_unix,
                        end_unix=window.end_unix,
                        duration_minutes=window.duration_minutes,
                        location_type=window.location_type,
                        last_synced_at=synced_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if refreshed.rowcount:
                    result.updated += 1
                else:
                    result.skipped += 1
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error upserting slots for provider {provider_id}: {str(e)}")
            raise RepositoryException(f"Failed to upsert slots: {str(e)}")
        return result

    def transition(
        self,
        slot_id: str,
        from_status: str,
        to_status: str,
        *,
        actor: str,
        now_unix: int,
        expected_token: Optional[str] = None,
        new_token: Optional[str] = None,
        held_by: Optional[str] = None,
        expires_unix: Optional[int] = None,
        lease: LeaseCondition = LeaseCondition.ANY,
        note: Optional[str] = None,
        administrative: bool = False,
    ) -> bool:
        """
        Compare-and-swap a slot from ``from_status`` to ``to_status``.

        Returns True when exactly one row changed (and the audit row was
        written), False when the guard did not match. Transitions outside the
        allowed graph raise InvariantViolation before touching the database.
        """
        pair = (from_status, to_status)
        allowed = pair in SLOT_TRANSITIONS or (administrative and pair in ADMIN_TRANSITIONS)
        if not allowed:
            logger.error(
                "invariant_violation",
                extra={"slot_id": slot_id, "from_status": from_status, "to_status": to_status},
            )
            raise InvariantViolation(
                f"Slot transition {from_status}->{to_status} is not allowed",
                code="SLOT_TRANSITION_NOT_ALLOWED",
                details={"slot_id": slot_id, "from": from_status, "to": to_status},
            )

        values = self._values_for(to_status, new_token, held_by, expires_unix)

        stmt = update(Slot).where(Slot.id == slot_id, Slot.status == from_status)
        if expected_token is not None:
            stmt = stmt.where(Slot.lock_token == expected_token)
        if lease is LeaseCondition.LIVE:
            stmt = stmt.where(Slot.lock_expires_unix > now_unix)
        elif lease is LeaseCondition.EXPIRED:
            stmt = stmt.where(Slot.lock_expires_unix <= now_unix)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            changed = self.db.execute(stmt).rowcount
            if changed != 1:
                return False
            self.db.add(
                SlotTransition(
                    id=generate_ulid(),
                    slot_id=slot_id,
                    from_status=from_status,
                    to_status=to_status,
                    actor=actor,
                    occurred_unix=now_unix,
                    note=note,
                )
            )
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error transitioning slot {slot_id}: {str(e)}")
            raise RepositoryException(f"Failed to transition slot: {str(e)}")

        self._expire_cached(slot_id)
        return True

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _available_clause(now_unix: int) -> Any:
        return or_(
            Slot.status == FREE,
            and_(Slot.status == HELD, Slot.lock_expires_unix <= now_unix),
        )

    @staticmethod
    def _values_for(
        to_status: str,
        new_token: Optional[str],
        held_by: Optional[str],
        expires_unix: Optional[int],
    ) -> Dict[str, Any]:
        if to_status == HELD:
            if not new_token or expires_unix is None:
                raise InvariantViolation(
                    "A hold requires a lock token and an expiry",
                    code="SLOT_HOLD_INCOMPLETE",
                )
            return {
                "status": HELD,
                "lock_token": new_token,
                "held_by": held_by,
                "lock_expires_unix": expires_unix,
            }
        if to_status == BOOKED:
            # The booker stays recorded in held_by; the lease itself ends.
            return {"status": BOOKED, "lock_token": None, "lock_expires_unix": None}
        return {"status": to_status, "lock_token": None, "held_by": None, "lock_expires_unix": None}

    def _insert_if_absent(self, provider_id: str, window: SlotWindow, synced_at: datetime) -> bool:
        values = {
            "id": generate_ulid(),
            "external_slot_id": window.external_slot_id,
            "provider_id": provider_id,
            "start_unix": window.start_unix,
            "end_unix": window.end_unix,
            "duration_minutes": window.duration_minutes,
            "status": FREE,
            "is_bookable": True,
            "location_type": window.location_type,
            "last_synced_at": synced_at,
        }
        if self.dialect_name == "postgresql":
            pg_stmt = (
                pg_insert(Slot)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["external_slot_id"])
                .returning(Slot.id)
            )
            return self.db.execute(pg_stmt).scalar_one_or_none() is not None

        stmt = insert(Slot).values(**values)
        if self.dialect_name == "sqlite":
            stmt = stmt.prefix_with("OR IGNORE")
        return bool(getattr(self.db.execute(stmt), "rowcount", 0))

    def _expire_cached(self, slot_id: str) -> None:
        """Drop a stale in-session copy of the slot after a bulk UPDATE."""
        cached = self.db.identity_map.get(Session.identity_key(Slot, slot_id))
        if cached is not None:
            self.db.expire(cached)

    def _scalars(self, stmt: Any) -> List[Slot]:
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Slot query error: {str(e)}")
            raise RepositoryException(f"Slot query failed: {str(e)}")
