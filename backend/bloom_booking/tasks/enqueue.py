"""
Centralized task enqueue helpers.

The API never imports task functions directly; it sends by name so the web
process does not need the worker's task modules loaded.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from bloom_booking.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

SYNC_AVAILABILITY_TASK = "bloom_booking.tasks.sync_tasks.sync_availability"
RETRY_CAPTURE_TASK = "bloom_booking.tasks.payment_tasks.retry_capture"


def enqueue_task(
    task_name: str,
    args: Optional[Tuple[Any, ...]] = None,
    kwargs: Optional[Dict[str, Any]] = None,
    **options: Any,
) -> Any:
    """
    Enqueue a Celery task by name.

    Args:
        task_name: Fully qualified task name
        args: Positional arguments for the task
        kwargs: Keyword arguments for the task
        **options: Additional apply options (countdown, eta, queue, ...)

    Returns:
        AsyncResult from Celery
    """
    result = celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {}, **options)
    logger.info("task_enqueued", extra={"task_name": task_name, "task_id": result.id})
    return result


def schedule_capture_retry(saga_id: str, countdown: int) -> Any:
    return enqueue_task(RETRY_CAPTURE_TASK, args=(saga_id,), countdown=countdown)


def trigger_availability_sync(provider_id: Optional[str] = None) -> Any:
    return enqueue_task(SYNC_AVAILABILITY_TASK, kwargs={"provider_id": provider_id})
