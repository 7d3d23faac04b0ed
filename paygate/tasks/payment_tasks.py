"""
Payment worker tasks - webhook processing and the dunning sweep.
"""

import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Coroutine, Dict, List, cast

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.modules.billing.domain.billing.dunning_service import DunningService
from paygate.modules.billing.domain.billing.webhook_processor import (
    PaymentWebhookProcessor,
)
from paygate.shared.core.config import get_settings
from paygate.shared.core.constants import (
    GRACE_PERIOD_CHECK_JOB,
    PAYMENT_DUNNING_QUEUE,
    PAYMENT_WEBHOOK_QUEUE,
)
from paygate.shared.core.events import get_event_bus
from paygate.shared.core.exceptions import BillingError
from paygate.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def _open_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session for one task run; pooled connections are released on exit."""
    try:
        async with async_session_maker() as session:
            yield session
    finally:
        engine = get_engine()
        # Each task runs on a fresh event loop; network pools cannot outlive it
        if engine.dialect.name != "sqlite":
            await engine.dispose()


def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


@shared_task(  # type: ignore[untyped-decorator]
    name="payments.process_webhook",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=settings.WEBHOOK_RETRY_BACKOFF_MAX_SECONDS,
    retry_jitter=True,
    # max_retries counts re-runs after the first attempt
    max_retries=max(settings.WEBHOOK_MAX_ATTEMPTS - 1, 0),
)
def process_payment_webhook(self: Any, job: Dict[str, Any]) -> str:
    """
    Apply one normalized webhook to local billing state.

    Failures propagate so Celery retries with exponential backoff; the audit row
    keeps the last error and attempt count.
    """
    job_id = getattr(self.request, "id", None)
    structlog.contextvars.bind_contextvars(job_id=job_id, queue=PAYMENT_WEBHOOK_QUEUE)
    try:
        return cast(str, run_async(_process_payment_webhook_logic, job))
    finally:
        structlog.contextvars.unbind_contextvars("job_id", "queue")


async def _process_payment_webhook_logic(job: Dict[str, Any]) -> str:
    events = get_event_bus()
    async with _open_db_session() as db:
        dunning = DunningService(db, events)
        processor = PaymentWebhookProcessor(db, dunning, events)
        return await processor.process(job)


@shared_task(  # type: ignore[untyped-decorator]
    name="payments.dunning_sweep",
    bind=True,
)
def run_dunning_sweep(self: Any, job: Dict[str, Any]) -> List[str]:
    """Periodic grace-period check; suspends subscriptions past their limits."""
    job_type = (job or {}).get("type")
    if job_type != GRACE_PERIOD_CHECK_JOB:
        raise BillingError(
            f"Unsupported dunning job type: {job_type}",
            code="unsupported_job_type",
            details={"type": job_type},
        )

    job_id = getattr(self.request, "id", None)
    structlog.contextvars.bind_contextvars(job_id=job_id, queue=PAYMENT_DUNNING_QUEUE)
    try:
        suspended = cast(List[str], run_async(_dunning_sweep_logic))
    finally:
        structlog.contextvars.unbind_contextvars("job_id", "queue")
    logger.info("dunning_sweep_task_completed", suspended_count=len(suspended))
    return suspended


async def _dunning_sweep_logic() -> List[str]:
    async with _open_db_session() as db:
        return await DunningService(db, get_event_bus()).check_grace_periods()
