# backend/bloom_booking/tasks/celery_app.py
"""
Celery application configuration for the booking core.

Redis is broker and result backend. Task modules are force-imported so
beat and the API's ``send_task`` calls always find registered names.
"""

import logging
import os
from typing import Any, Callable, Dict, ParamSpec, Protocol, Type, TypeVar, cast

from celery import Celery, Task
from celery.result import AsyncResult
from celery.signals import setup_logging

from bloom_booking.core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> REDIS_URL -> settings.redis_url
    broker_url = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or settings.redis_url
    if not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url}/0"
    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("bloom_booking", broker=broker_url, backend=result_backend)

    base_config: Dict[str, Any] = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": settings.clinic_timezone,
        "enable_utc": True,
        "worker_prefetch_multiplier": 1,
        "worker_max_tasks_per_child": 1000,
        "task_soft_time_limit": 240,
        "task_time_limit": 300,
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "beat_schedule_filename": "celerybeat-schedule",
        "worker_hijack_root_logger": False,
        "broker_transport_options": {"visibility_timeout": 3600},
    }
    if settings.is_production:
        base_config.update({"result_expires": 900, "task_compression": "gzip"})
    celery_app.conf.update(base_config)

    celery_app.conf.imports = tuple(
        set(celery_app.conf.imports or ())
        | {
            "bloom_booking.tasks.sync_tasks",
            "bloom_booking.tasks.payment_tasks",
        }
    )

    celery_app.conf.task_routes = {
        "bloom_booking.tasks.payment_tasks.*": {"queue": "payments"},
        "bloom_booking.tasks.sync_tasks.*": {"queue": "sync"},
    }

    from bloom_booking.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task that logs failures, retries and completions."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name, "task_args": str(args)},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={"task_id": task_id, "task_name": self.name, "retry_count": self.request.retries},
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any) -> None:
        logging.getLogger(__name__).info(
            f"Task {self.name}[{task_id}] completed successfully",
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_success(retval, task_id, args, kwargs)


celery_app.Task = cast(Type[Task], BaseTask)


P = ParamSpec("P")
R = TypeVar("R", covariant=True)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )
