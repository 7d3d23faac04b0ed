from celery import Celery
from kombu import Queue

from paygate.shared.core.config import get_settings
from paygate.shared.core.constants import (
    BILLING_NOTIFICATIONS_QUEUE,
    GRACE_PERIOD_CHECK_JOB,
    PAYMENT_DUNNING_QUEUE,
    PAYMENT_WEBHOOK_QUEUE,
)

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "paygate_worker",
    broker=broker_url,
    backend=backend_url,
    include=["paygate.tasks.payment_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Worker settings
    worker_prefetch_multiplier=1,  # Fair dispatch
    task_acks_late=True,  # Redeliver if worker crashes mid-task
    task_reject_on_worker_lost=True,
    broker_connection_timeout=5,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
    broker_connection_retry_on_startup=True,
    task_queues=(
        Queue(PAYMENT_WEBHOOK_QUEUE),
        Queue(PAYMENT_DUNNING_QUEUE),
    ),
    task_routes={
        "payments.process_webhook": {"queue": PAYMENT_WEBHOOK_QUEUE},
        "payments.dunning_sweep": {"queue": PAYMENT_DUNNING_QUEUE},
        # Owned by the external notification worker; its queue is left out of
        # task_queues so payment workers never consume it
        "billing.send_notification": {"queue": BILLING_NOTIFICATIONS_QUEUE},
    },
    beat_schedule={
        "dunning-grace-period-sweep": {
            "task": "payments.dunning_sweep",
            "schedule": settings.DUNNING_SWEEP_INTERVAL_MINUTES * 60.0,
            "args": ({"type": GRACE_PERIOD_CHECK_JOB},),
            "options": {"queue": PAYMENT_DUNNING_QUEUE},
        },
    },
)


# Eager execution for unit tests without Redis
if settings.TESTING:
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        broker_url="memory://",
        result_backend="cache+memory://",
        broker_connection_retry_on_startup=False,  # Never block in tests
    )

if __name__ == "__main__":
    celery_app.start()
