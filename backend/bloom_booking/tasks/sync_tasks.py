"""
Celery tasks for availability synchronization.

No retries: a provider that fails is picked up again on the next beat.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from bloom_booking.api.dependencies.services import get_scheduling_client
from bloom_booking.core.config import settings
from bloom_booking.database import get_db_session, with_db_retry
from bloom_booking.services.availability_sync_service import AvailabilitySyncService, SyncResult
from bloom_booking.tasks.celery_app import typed_task

logger = logging.getLogger(__name__)


def _summarize(results: List[SyncResult]) -> Dict[str, Any]:
    return {
        "providers": len(results),
        "failed": [r.provider_id for r in results if r.error],
        "slots_created": sum(r.created for r in results),
        "slots_updated": sum(r.updated for r in results),
        "slots_cancelled": sum(r.cancelled for r in results),
        "slots_reactivated": sum(r.reactivated for r in results),
    }


@typed_task(name="bloom_booking.tasks.sync_tasks.sync_availability")
def sync_availability(provider_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Pull free windows from the scheduling system into the slot store.

    Args:
        provider_id: Sync only this provider; all active providers when omitted
    """
    with get_db_session() as db:
        with_db_retry("sync_availability_ping", lambda: db.execute(text("SELECT 1")))
        service = AvailabilitySyncService(db, get_scheduling_client(), settings)
        if provider_id:
            results = [service.sync_provider_by_id(provider_id)]
        else:
            results = service.sync_all_providers()

    summary = _summarize(results)
    logger.info("sync_availability_finished", extra=summary)
    return summary
