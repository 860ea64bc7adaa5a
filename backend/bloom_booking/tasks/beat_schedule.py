# backend/bloom_booking/tasks/beat_schedule.py
"""
Celery Beat schedule for the booking core.

The availability sync is the retry mechanism for failed providers, so its
cadence is the only retry policy it has.
"""

from datetime import timedelta
from typing import Any

from bloom_booking.core.config import settings

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    "sync-provider-availability": {
        "task": "bloom_booking.tasks.sync_tasks.sync_availability",
        "schedule": timedelta(minutes=settings.sync_interval_minutes),
        "options": {"queue": "sync", "expires": settings.sync_interval_minutes * 60},
    },
    "reconcile-booking-sagas": {
        "task": "bloom_booking.tasks.payment_tasks.reconcile_booking_sagas",
        "schedule": timedelta(seconds=settings.reconcile_interval_seconds),
        "options": {"queue": "payments", "expires": settings.reconcile_interval_seconds},
    },
}

SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "production": {},
    "testing": {
        "sync-provider-availability": {
            "task": "bloom_booking.tasks.sync_tasks.sync_availability",
            "schedule": timedelta(seconds=30),
            "options": {"queue": "sync"},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Get the beat schedule for the specified environment.

    Args:
        environment: The environment name (production, development, testing)

    Returns:
        Mapping of entry name to Celery beat configuration dict
    """
    base: dict[str, dict[str, Any]] = dict(CELERYBEAT_SCHEDULE)
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    return base
