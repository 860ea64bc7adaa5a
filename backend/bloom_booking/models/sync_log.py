"""Availability sync bookkeeping."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bloom_booking.core.enums import SyncOutcome
from bloom_booking.core.ulid_helper import generate_ulid
from bloom_booking.database import Base


class SyncLog(Base):
    """One row per provider per sync run."""

    __tablename__ = "sync_logs"
    __table_args__ = (Index("ix_sync_logs_provider_started", "provider_id", "started_at"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    provider_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default=SyncOutcome.IN_PROGRESS.value, nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_cancelled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<SyncLog(provider={self.provider_id}, status={self.status})>"
