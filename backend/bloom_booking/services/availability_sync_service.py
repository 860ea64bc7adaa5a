# backend/bloom_booking/services/availability_sync_service.py
"""
Availability Sync Service.

Reconciles each provider's free windows from the scheduling system into the
slot store. The feed is authoritative for "free" only: held and booked
slots are never touched, whatever the feed says.

Each provider is synced in its own transaction. A failure for one provider
is logged, rolled back and recorded in its SyncLog; the next scheduled run
is the retry.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import SyncHealth, SyncOutcome
from ..core.exceptions import NotFoundException, RepositoryException
from ..core.timestamps import ensure_utc, unix_from_datetime, utc_now
from ..integrations.scheduling_client import SchedulingClient
from ..integrations.transformers import window_from_fhir_slot
from ..models.provider import Provider
from ..models.sync_log import SyncLog
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_repository import CANCELLED, FREE, SlotWindow
from .base import BaseService


@dataclass
class SyncResult:
    provider_id: str
    status: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: int = 0
    reactivated: int = 0
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped


@dataclass(frozen=True)
class SyncStatus:
    provider_id: str
    status: str
    last_full_sync: Optional[datetime]
    last_attempt_at: Optional[datetime]
    error_message: Optional[str] = None


class AvailabilitySyncService(BaseService):
    def __init__(
        self,
        db: Session,
        scheduling_client: SchedulingClient,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db, settings)
        self.scheduling_client = scheduling_client
        self.clock = clock or utc_now
        self.slot_repository = RepositoryFactory.create_slot_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)
        self.sync_log_repository = RepositoryFactory.create_sync_log_repository(db)

    @BaseService.measure_operation("sync_all_providers")
    def sync_all_providers(self, now: Optional[datetime] = None) -> List[SyncResult]:
        providers = self.provider_repository.list_active()
        results = [self.sync_provider(provider, now=now) for provider in providers]
        failed = sum(1 for r in results if r.status == SyncOutcome.ERROR.value)
        self.logger.info(
            "availability_sync_complete",
            extra={"providers": len(results), "failed": failed},
        )
        return results

    def sync_provider_by_id(self, provider_id: str, now: Optional[datetime] = None) -> SyncResult:
        provider = self.provider_repository.get_by_id(provider_id)
        if provider is None:
            raise NotFoundException(
                "Provider not found", code="PROVIDER_NOT_FOUND", details={"provider_id": provider_id}
            )
        return self.sync_provider(provider, now=now)

    @BaseService.measure_operation("sync_provider")
    def sync_provider(self, provider: Provider, now: Optional[datetime] = None) -> SyncResult:
        """Sync one provider. Never raises for provider-level failures; see the returned status."""
        now = now or self.clock()
        horizon_end = now + timedelta(weeks=self.settings.sync_horizon_weeks)
        provider_id = provider.id
        external_id = provider.external_provider_id

        with self.transaction():
            log_id = self.sync_log_repository.start(provider_id, now).id

        try:
            resources = self.scheduling_client.get_free_slots(external_id, now, horizon_end)
            windows: Dict[str, SlotWindow] = {}
            for resource in resources:
                window = window_from_fhir_slot(resource)
                if window is not None:
                    windows[window.external_slot_id] = window

            with self.transaction():
                result = self._reconcile(provider_id, windows, now, horizon_end)
                self._finish_log(log_id, result, now)
        except Exception as exc:
            self.logger.exception(
                "availability_sync_failed",
                extra={"provider_id": provider_id, "external_provider_id": external_id},
            )
            self.db.rollback()
            prometheus_metrics.record_sync(SyncOutcome.ERROR.value)
            self._mark_log_failed(log_id, str(exc), now)
            return SyncResult(provider_id=provider_id, status=SyncOutcome.ERROR.value, error=str(exc))

        prometheus_metrics.record_sync(SyncOutcome.SUCCESS.value)
        self.logger.info(
            "availability_sync_provider_complete",
            extra={
                "provider_id": provider_id,
                "slots_created": result.created,
                "slots_updated": result.updated,
                "slots_skipped": result.skipped,
                "slots_cancelled": result.cancelled,
                "slots_reactivated": result.reactivated,
            },
        )
        return result

    def get_sync_status(self, provider_id: str, now: Optional[datetime] = None) -> SyncStatus:
        if self.provider_repository.get_by_id(provider_id) is None:
            raise NotFoundException(
                "Provider not found", code="PROVIDER_NOT_FOUND", details={"provider_id": provider_id}
            )
        now = now or self.clock()
        latest = self.sync_log_repository.latest(provider_id)
        latest_success = self.sync_log_repository.latest_success(provider_id)
        last_full_sync = ensure_utc(latest_success.completed_at) if latest_success else None
        last_attempt = ensure_utc(latest.started_at) if latest else None

        if latest is not None and latest.status == SyncOutcome.ERROR.value:
            return SyncStatus(
                provider_id=provider_id,
                status=SyncHealth.ERROR.value,
                last_full_sync=last_full_sync,
                last_attempt_at=last_attempt,
                error_message=latest.error_message,
            )

        stale_after = timedelta(minutes=self.settings.sync_stale_after_minutes)
        if last_full_sync is None or now - last_full_sync > stale_after:
            health = SyncHealth.STALE.value
        else:
            health = SyncHealth.HEALTHY.value
        return SyncStatus(
            provider_id=provider_id,
            status=health,
            last_full_sync=last_full_sync,
            last_attempt_at=last_attempt,
        )

    # --------------------------------------------------------------- helpers

    def _reconcile(
        self,
        provider_id: str,
        windows: Dict[str, SlotWindow],
        now: datetime,
        horizon_end: datetime,
    ) -> SyncResult:
        upserted = self.slot_repository.upsert_slots(provider_id, windows.values(), now)
        # Bulk UPDATEs bypass the identity map.
        self.db.expire_all()
        result = SyncResult(
            provider_id=provider_id,
            status=SyncOutcome.SUCCESS.value,
            created=upserted.created,
            updated=upserted.updated,
            skipped=upserted.skipped,
        )

        now_unix = unix_from_datetime(now)
        stored_free = self.slot_repository.list_by_status_in_range(
            provider_id, FREE, now_unix, unix_from_datetime(horizon_end)
        )
        for slot_id in [s.id for s in stored_free if s.external_slot_id not in windows]:
            if self._cas(slot_id, FREE, CANCELLED, now_unix, "absent from provider feed"):
                result.cancelled += 1

        reported = self.slot_repository.list_by_external_ids(provider_id, list(windows))
        for slot_id in [s.id for s in reported if s.status == CANCELLED]:
            if self._cas(slot_id, CANCELLED, FREE, now_unix, "reported free again"):
                result.reactivated += 1
        return result

    def _cas(self, slot_id: str, from_status: str, to_status: str, now_unix: int, note: str) -> bool:
        won = self.slot_repository.transition(
            slot_id, from_status, to_status, actor="sync", now_unix=now_unix, note=note
        )
        prometheus_metrics.record_slot_transition(from_status, to_status, won)
        return won

    def _finish_log(self, log_id: str, result: SyncResult, now: datetime) -> None:
        self.sync_log_repository.update(
            log_id,
            status=SyncOutcome.SUCCESS.value,
            records_processed=result.processed,
            records_created=result.created,
            records_updated=result.updated,
            records_cancelled=result.cancelled,
            completed_at=now,
        )

    def _mark_log_failed(self, log_id: str, message: str, now: datetime) -> None:
        try:
            log: Optional[SyncLog] = self.sync_log_repository.get_by_id(log_id)
            if log is not None:
                log.status = SyncOutcome.ERROR.value
                log.error_message = message[:2000]
                log.completed_at = now
                self.db.commit()
        except (SQLAlchemyError, RepositoryException) as e:
            self.db.rollback()
            self.logger.error(f"Could not record sync failure for log {log_id}: {str(e)}")
