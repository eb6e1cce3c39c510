"""
DealFlow Celery Application Configuration

This module configures the Celery distributed task queue for DealFlow,
including priority queues, retry policies, scheduling, and monitoring.
"""

import logging
import time
from datetime import timedelta
from typing import Any

from celery import Celery, Task
from celery.signals import (
    task_failure,
    task_postrun,
    task_prerun,
    task_retry,
)
from kombu import Exchange, Queue

from backend.core.config import settings

logger = logging.getLogger(__name__)


# =============================================================================
# Queue Definitions
# =============================================================================

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

TASK_QUEUES = (
    # High queue: waterfall processing for freshly enriched deals
    Queue(
        "high",
        exchange=priority_exchange,
        routing_key="high",
        queue_arguments={"x-max-priority": 7},
    ),
    # Normal queue: maintenance
    Queue(
        "normal",
        exchange=default_exchange,
        routing_key="normal",
        queue_arguments={"x-max-priority": 3},
    ),
)

TASK_ROUTES = {
    "backend.tasks.waterfall.process_deal_waterfall": {"queue": "high"},
    "backend.tasks.cleanup.cleanup_resilience_state": {"queue": "normal"},
}


# =============================================================================
# Celery Application
# =============================================================================


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Configured Celery application instance.
    """
    app = Celery(
        "dealflow",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=[
            "backend.tasks.cleanup",
            "backend.tasks.waterfall",
        ],
    )

    app.conf.update(
        # Serialization
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        # Queues
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="normal",
        task_default_exchange="default",
        task_default_routing_key="normal",
        # Time limits; waterfall monitoring runs up to its own timeout
        task_soft_time_limit=600,
        task_time_limit=900,
        # Retry policy
        task_default_retry_delay=10,
        task_max_retries=3,
        # Concurrency
        worker_concurrency=4,
        worker_prefetch_multiplier=1,
        # Result backend
        result_expires=86400,
        result_extended=True,
        # Acknowledge after the task completes
        task_track_started=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # Timezone
        timezone="UTC",
        enable_utc=True,
        # Broker
        broker_connection_retry_on_startup=True,
        broker_pool_limit=10,
        # Beat schedule
        beat_schedule={
            "resilience-cleanup": {
                "task": "backend.tasks.cleanup.cleanup_resilience_state",
                "schedule": timedelta(minutes=settings.resilience_cleanup_interval_minutes),
                "options": {"queue": "normal"},
            },
        },
    )

    return app


celery_app = create_celery_app()


# =============================================================================
# Custom Task Base Class with Retry Policy
# =============================================================================


class BaseTaskWithRetry(Task):
    """
    Base task class with exponential backoff retry policy.

    Implements:
        - 3 retry attempts
        - Exponential backoff starting at 10 seconds
        - Maximum delay of 5 minutes
    """

    autoretry_for = (Exception,)
    max_retries = 3
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """Log task failure."""
        logger.error(
            f"Task {self.name}[{task_id}] failed after {self.request.retries} retries: {exc}",
            exc_info=True,
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """Log task retry."""
        logger.warning(
            f"Task {self.name}[{task_id}] retrying (attempt {self.request.retries + 1}/{self.max_retries}): {exc}"
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


celery_app.Task = BaseTaskWithRetry


# =============================================================================
# Monitoring Hooks
# =============================================================================

_task_start_times: dict[str, float] = {}


@task_prerun.connect
def task_prerun_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    **extra: Any,
) -> None:
    """Record task start time for latency tracking."""
    if task_id:
        _task_start_times[task_id] = time.time()
        logger.debug(f"Task {sender.name if sender else 'unknown'}[{task_id}] started")


@task_postrun.connect
def task_postrun_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    state: str | None = None,
    **extra: Any,
) -> None:
    """Log task latency."""
    if task_id and task_id in _task_start_times:
        latency = time.time() - _task_start_times.pop(task_id)
        task_name = sender.name if sender else "unknown"
        logger.info(f"Task {task_name}[{task_id}] completed in {latency:.3f}s with state={state}")


@task_failure.connect
def task_failure_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    exception: Exception | None = None,
    **kwargs: Any,
) -> None:
    """Handle task failure."""
    logger.error(f"Task {sender.name if sender else 'unknown'}[{task_id}] failed: {exception}")
    if task_id:
        _task_start_times.pop(task_id, None)


@task_retry.connect
def task_retry_handler(
    sender: Task | None = None,
    request: Any = None,
    reason: Any = None,
    **kwargs: Any,
) -> None:
    """Handle task retry."""
    task_id = request.id if request else "unknown"
    logger.warning(f"Task {sender.name if sender else 'unknown'}[{task_id}] retrying: {reason}")


__all__ = [
    "celery_app",
    "BaseTaskWithRetry",
]
