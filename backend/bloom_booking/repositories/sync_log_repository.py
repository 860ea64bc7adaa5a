"""Sync log repository."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import SyncOutcome
from ..models.sync_log import SyncLog
from .base_repository import BaseRepository


class SyncLogRepository(BaseRepository[SyncLog]):
    def __init__(self, db: Session):
        super().__init__(db, SyncLog)

    def start(self, provider_id: str, started_at: datetime) -> SyncLog:
        return self.create(
            provider_id=provider_id,
            status=SyncOutcome.IN_PROGRESS.value,
            started_at=started_at,
        )

    def latest(self, provider_id: str) -> Optional[SyncLog]:
        query = (
            self._build_query()
            .filter(SyncLog.provider_id == provider_id)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        )
        return query.first()

    def latest_success(self, provider_id: str) -> Optional[SyncLog]:
        query = (
            self._build_query()
            .filter(
                SyncLog.provider_id == provider_id,
                SyncLog.status == SyncOutcome.SUCCESS.value,
            )
            .order_by(SyncLog.completed_at.desc(), SyncLog.id.desc())
        )
        return query.first()
