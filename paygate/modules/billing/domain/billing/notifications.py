"""
Billing notification subscribers.

Each handler turns a domain event into a templated email job on the
`billing-notifications` queue. Delivery failures are logged and dropped so
they never affect the billing transition that raised the event.
"""

from typing import Any, Callable, Dict, Optional

import structlog

from paygate.modules.billing.domain.billing.events import (
    PaymentFailedEvent,
    PaymentRecoveredEvent,
    SubscriptionCanceledEvent,
)
from paygate.shared.core.constants import BILLING_NOTIFICATIONS_QUEUE
from paygate.shared.core.events import EventBus
from paygate.shared.core.queue import QueueService, get_queue_service

logger = structlog.get_logger()


class BillingNotifier:
    def __init__(self, queue_factory: Callable[[], QueueService] = get_queue_service):
        self._queue_factory = queue_factory

    async def _send(self, template_id: str, account_id: str, variables: Dict[str, Any]) -> Optional[str]:
        log = logger.bind(template_id=template_id, account_id=account_id)
        try:
            # accountId is the routing key; the consumer resolves recipients
            job_id = await self._queue_factory().enqueue(
                BILLING_NOTIFICATIONS_QUEUE,
                {"to": account_id, "templateId": template_id, "variables": variables},
            )
        except Exception as exc:
            log.error("billing_notification_enqueue_failed", error=str(exc))
            return None
        log.info("billing_notification_queued", job_id=job_id)
        return job_id

    async def on_payment_failed(self, event: PaymentFailedEvent) -> None:
        await self._send(
            "payment-failed",
            event.account_id,
            {
                "subscriptionId": event.subscription_id,
                "failureCount": event.failure_count,
                "accountId": event.account_id,
            },
        )

    async def on_payment_recovered(self, event: PaymentRecoveredEvent) -> None:
        await self._send(
            "payment-recovered",
            event.account_id,
            {"subscriptionId": event.subscription_id, "accountId": event.account_id},
        )

    async def on_subscription_canceled(self, event: SubscriptionCanceledEvent) -> None:
        if not event.suspended:
            return
        await self._send(
            "subscription-suspended",
            event.account_id,
            {
                "subscriptionId": event.subscription_id,
                "workspaceId": event.workspace_id,
                "reason": event.reason,
            },
        )


def register_billing_notifications(bus: EventBus, notifier: Optional[BillingNotifier] = None) -> BillingNotifier:
    notifier = notifier or BillingNotifier()
    bus.subscribe(PaymentFailedEvent, notifier.on_payment_failed)
    bus.subscribe(PaymentRecoveredEvent, notifier.on_payment_recovered)
    bus.subscribe(SubscriptionCanceledEvent, notifier.on_subscription_canceled)
    return notifier
