"""Durable record of one Authorize -> Book -> Capture run."""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bloom_booking.core.enums import SagaState
from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base


class BookingSaga(Base):
    """
    Saga state for a single checkout.

    ``lease_expires_unix`` is copied from the slot hold when the saga starts so
    the reconciliation sweep can find abandoned runs without joining slots.
    """

    __tablename__ = "booking_sagas"
    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'authorized', 'booked', 'captured', 'failed_and_reversed')",
            name="ck_booking_sagas_state",
        ),
        Index("ix_booking_sagas_state_lease", "state", "lease_expires_unix"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    slot_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(26), nullable=False)
    lock_token: Mapped[str] = mapped_column(String(64), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lease_expires_unix: Mapped[int] = mapped_column(BigInteger, nullable=False)

    state: Mapped[str] = mapped_column(String(30), default=SagaState.PENDING.value, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    capture_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    capture_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    capture_halted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    external_appointment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    patient_first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    patient_last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    patient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    patient_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    booked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<BookingSaga(id={self.id}, slot={self.slot_id}, state={self.state})>"
