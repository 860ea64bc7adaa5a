"""Practitioner application / offer record."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from bloom_booking.core.enums import ApplicationStatus
from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base

_ACTIVE_APPLICATION = text("status <> 'withdrawn'")


class Application(Base):
    """
    A candidate practitioner's progress from submission to activation.

    Invariants enforced at the table level:
    - an accepted offer always has a signed contract;
    - a verified application always has a verification time and a linked identity;
    - one non-withdrawn application per email.
    """

    __tablename__ = "applications"
    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted', 'reviewing', 'interview', 'accepted', "
            "'offer_sent', 'offer_accepted', 'withdrawn')",
            name="ck_applications_status",
        ),
        CheckConstraint(
            "offer_accepted_at IS NULL OR signed_contract_url IS NOT NULL",
            name="ck_applications_acceptance_has_contract",
        ),
        CheckConstraint(
            "verified_with_provider = false OR "
            "(verified_at IS NOT NULL AND linked_provider_id IS NOT NULL)",
            name="ck_applications_verification_linked",
        ),
        Index(
            "uq_applications_active_email",
            "email",
            unique=True,
            postgresql_where=_ACTIVE_APPLICATION,
            sqlite_where=_ACTIVE_APPLICATION,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=ApplicationStatus.SUBMITTED.value, nullable=False
    )

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    contract_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Offer
    offer_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    consumed_offer_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    offer_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    offer_accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_contract_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # External practitioner directory
    verified_with_provider: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    linked_provider_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Application(id={self.id}, email={self.email}, status={self.status})>"
