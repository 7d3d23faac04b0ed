"""
Narrow enqueue interface over the durable job queue.

Producers only ever see `QueueService.enqueue(queue_name, payload) -> job_id`.
The Celery implementation routes each named queue to the task that consumes it.
"""

import asyncio
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict

import structlog

from paygate.shared.core.constants import (
    BILLING_NOTIFICATIONS_QUEUE,
    PAYMENT_DUNNING_QUEUE,
    PAYMENT_WEBHOOK_QUEUE,
)
from paygate.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

QUEUE_TASKS: Dict[str, str] = {
    PAYMENT_WEBHOOK_QUEUE: "payments.process_webhook",
    PAYMENT_DUNNING_QUEUE: "payments.dunning_sweep",
    # External email worker owns this task; producers only enqueue
    BILLING_NOTIFICATIONS_QUEUE: "billing.send_notification",
}


class QueueService(ABC):
    """At-least-once job queue producer."""

    @abstractmethod
    async def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        """Enqueue `payload` on `queue_name` and return the job id."""


class CeleryQueueService(QueueService):
    def __init__(self, app: Any = None):
        if app is None:
            from paygate.shared.core.celery_app import celery_app

            app = celery_app
        self.app = app

    async def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        task_name = QUEUE_TASKS.get(queue_name)
        if task_name is None:
            raise ConfigurationError(
                f"No task is bound to queue '{queue_name}'",
                details={"queue": queue_name},
            )
        # send_task blocks on the broker connection
        result = await asyncio.to_thread(
            self.app.send_task, task_name, args=(payload,), queue=queue_name
        )
        job_id = str(result.id)
        logger.info("job_enqueued", queue=queue_name, task=task_name, job_id=job_id)
        return job_id


@lru_cache
def get_queue_service() -> QueueService:
    return CeleryQueueService()
