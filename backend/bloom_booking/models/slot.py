"""
Slot store models.

``start_unix``/``end_unix`` are the only stored representation of a slot's
window. ``start_at``/``end_at`` are derived on every read and cannot be
assigned.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bloom_booking.core.enums import LocationType, SlotStatus
from bloom_booking.core.timestamps import datetime_from_unix
from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base

if TYPE_CHECKING:
    from bloom_booking.models.provider import Provider


class Slot(Base):
    """A bookable time window for one provider."""

    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint("start_unix < end_unix", name="ck_slots_window_order"),
        CheckConstraint(
            "status IN ('free', 'held', 'booked', 'cancelled')", name="ck_slots_status"
        ),
        CheckConstraint(
            "location_type IN ('in-person', 'telehealth', 'phone')", name="ck_slots_location_type"
        ),
        Index("ix_slots_provider_status_start", "provider_id", "status", "start_unix"),
        Index("ix_slots_status_lock_expiry", "status", "lock_expires_unix"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    external_slot_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    provider_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )

    start_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SlotStatus.FREE.value, nullable=False)
    # Administrative block, independent of status.
    is_bookable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    location_type: Mapped[str] = mapped_column(
        String(20), default=LocationType.IN_PERSON.value, nullable=False
    )

    # Lease fields, meaningful only while status == 'held'
    lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    held_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    lock_expires_unix: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    provider: Mapped["Provider"] = relationship("Provider", back_populates="slots")

    @property
    def start_at(self) -> datetime:
        return datetime_from_unix(self.start_unix)

    @property
    def end_at(self) -> datetime:
        return datetime_from_unix(self.end_unix)

    @property
    def lock_expires_at(self) -> Optional[datetime]:
        if self.lock_expires_unix is None:
            return None
        return datetime_from_unix(self.lock_expires_unix)

    def is_hold_live(self, now_unix: int) -> bool:
        """True while a hold exists and its lease has not run out."""
        return (
            self.status == SlotStatus.HELD.value
            and self.lock_expires_unix is not None
            and self.lock_expires_unix > now_unix
        )

    def __repr__(self) -> str:
        return f"<Slot(id={self.id}, start={self.start_unix}, status={self.status})>"


class SlotTransition(Base):
    """
    Append-only audit row written for every successful status change.

    ``slot_id`` carries no foreign key; rows survive administrative slot removal.
    """

    __tablename__ = "slot_transitions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    slot_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    occurred_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def occurred_at(self) -> datetime:
        return datetime_from_unix(self.occurred_unix)

    def __repr__(self) -> str:
        return f"<SlotTransition(slot={self.slot_id}, {self.from_status}->{self.to_status}, by={self.actor})>"
