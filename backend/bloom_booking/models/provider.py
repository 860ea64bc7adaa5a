"""Bookable provider (practitioner) whose calendar is synchronized."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base

if TYPE_CHECKING:
    from bloom_booking.models.slot import Slot


class Provider(Base):
    """A practitioner known to the external practice-management system."""

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    external_provider_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    booking_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Set when the provider was created by onboarding activation; reset removes it again.
    application_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("applications.id", ondelete="SET NULL"), nullable=True, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    slots: Mapped[List["Slot"]] = relationship(
        "Slot",
        back_populates="provider",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Provider(external_id={self.external_provider_id}, active={self.is_active})>"
