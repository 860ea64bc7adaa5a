"""
Payment models for the booking saga.

A PaymentAuthorization mirrors one manual-capture Stripe PaymentIntent.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bloom_booking.core.enums import PaymentStatus
from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base


class PaymentAuthorization(Base):
    """Funds held against a slot until the booking is confirmed."""

    __tablename__ = "payment_authorizations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('authorized', 'captured', 'cancelled', 'failed')",
            name="ck_payment_authorizations_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, comment="Amount in cents")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.AUTHORIZED.value, nullable=False)
    slot_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    saga_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    capture_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            PaymentStatus.CAPTURED.value,
            PaymentStatus.CANCELLED.value,
            PaymentStatus.FAILED.value,
        )

    def __repr__(self) -> str:
        return f"<PaymentAuthorization(intent={self.payment_intent_id}, amount={self.amount_cents}, status={self.status})>"
