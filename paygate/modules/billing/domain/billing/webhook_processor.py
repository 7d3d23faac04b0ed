"""
Payment webhook worker.

Consumes jobs from the `payment-webhook` queue. Delivery is at-least-once, so
the audit table doubles as the idempotency ledger:
1. A PROCESSED audit row for (provider, rawEventId) makes the job a no-op
2. The audit row is committed as PENDING before any mutation
3. The normalized event is dispatched to its handler
4. The audit row is finalized PROCESSED, or FAILED and the error re-raised
   so the queue retries with backoff
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.catalog import PlanPrice
from paygate.models.payment_provider_mapping import (
    MappingEntityType,
    PaymentProviderMapping,
)
from paygate.models.subscription import (
    Subscription,
    SubscriptionStatus,
    map_provider_status,
)
from paygate.models.webhook_event import WebhookEvent, WebhookEventStatus
from paygate.modules.billing.domain.billing.dunning_service import DunningService
from paygate.modules.billing.domain.billing.events import (
    PaymentRecoveredEvent,
    SubscriptionCanceledEvent,
    SubscriptionCreatedEvent,
)
from paygate.modules.billing.domain.billing.mapping_repository import (
    PaymentProviderMappingRepository,
)
from paygate.modules.billing.domain.billing.normalizer import (
    NormalizedWebhookEvent,
    StripeEventFields,
    WebhookEventType,
    event_fields,
)
from paygate.modules.billing.domain.billing.subscription_commands import (
    handle_payment_failed,
)
from paygate.modules.billing.domain.billing.subscription_repository import (
    resolve_from_mapping,
)
from paygate.shared.core.constants import PAYMENT_WEBHOOK_QUEUE
from paygate.shared.core.events import EventBus
from paygate.shared.core.ops_metrics import WEBHOOKS_PROCESSED
from paygate.shared.db.session import tenant_scope

logger = structlog.get_logger()


class PaymentWebhookProcessor:
    def __init__(self, session: AsyncSession, dunning: DunningService, events: EventBus):
        self.session = session
        self.dunning = dunning
        self.events = events
        self.mappings = PaymentProviderMappingRepository(session)

    async def _find_audit(self, provider: str, raw_event_id: str) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.raw_event_id == raw_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def process(self, job: Mapping[str, Any]) -> str:
        """Apply one webhook job. Returns `processed` or `duplicate`."""
        event = NormalizedWebhookEvent.from_job_payload(job)
        raw_event_id = str(job["rawEventId"])
        raw_event_type = str(job.get("rawEventType") or "")
        log = logger.bind(
            provider=event.provider,
            raw_event_id=raw_event_id,
            event_type=event.event_type.value,
            idempotency_key=event.idempotency_key,
        )

        audit = await self._find_audit(event.provider, raw_event_id)
        if audit is not None and audit.status == WebhookEventStatus.PROCESSED.value:
            WEBHOOKS_PROCESSED.labels(
                provider=event.provider,
                event_type=event.event_type.value,
                status="duplicate",
            ).inc()
            log.info("webhook_already_processed", webhook_event_id=str(audit.id))
            return "duplicate"

        if audit is None:
            audit = WebhookEvent(
                id=uuid4(),
                provider=event.provider,
                raw_event_id=raw_event_id,
                attempts=0,
            )
            self.session.add(audit)
        audit.account_id = event.account_id
        audit.webhook_type = raw_event_type
        audit.event_name = event.event_type.value
        audit.status = WebhookEventStatus.PENDING.value
        audit.payload = event.data
        audit.metadata_ = {
            "rawEventId": raw_event_id,
            "idempotencyKey": event.idempotency_key,
            "normalizedEventType": event.event_type.value,
        }
        audit.queue_name = PAYMENT_WEBHOOK_QUEUE
        audit.error_message = None
        audit.attempts = (audit.attempts or 0) + 1
        audit_id = audit.id
        # A concurrent delivery of the same event fails here on the unique key
        await self.session.commit()

        try:
            await self._dispatch(event, log)
        except Exception as exc:
            await self.session.rollback()
            audit.status = WebhookEventStatus.FAILED.value
            audit.error_message = str(exc)[:2000]
            await self.session.commit()
            WEBHOOKS_PROCESSED.labels(
                provider=event.provider,
                event_type=event.event_type.value,
                status="failed",
            ).inc()
            log.error(
                "webhook_processing_failed",
                webhook_event_id=str(audit_id),
                error=str(exc),
                exc_info=True,
            )
            raise

        audit.status = WebhookEventStatus.PROCESSED.value
        audit.processed_at = datetime.now(timezone.utc)
        await self.session.commit()
        WEBHOOKS_PROCESSED.labels(
            provider=event.provider,
            event_type=event.event_type.value,
            status="processed",
        ).inc()
        log.info("webhook_processed", webhook_event_id=str(audit_id))
        return "processed"

    async def _dispatch(self, event: NormalizedWebhookEvent, log: Any) -> None:
        fields = event_fields(event.provider, event.data)
        handlers = {
            WebhookEventType.CHECKOUT_COMPLETED: self._checkout_completed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            WebhookEventType.SUBSCRIPTION_CANCELED: self._subscription_canceled,
            WebhookEventType.PAYMENT_SUCCEEDED: self._payment_succeeded,
            WebhookEventType.PAYMENT_FAILED: self._payment_failed,
        }
        await handlers[event.event_type](event, fields, log)

    async def _resolve_subscription(
        self, provider: str, provider_subscription_id: Optional[str], log: Any
    ) -> Optional[Tuple[PaymentProviderMapping, Subscription]]:
        """Reverse lookup; a missing mapping is logged and skipped, never retried."""
        if not provider_subscription_id:
            log.warning("webhook_subscription_ref_missing")
            return None
        mapping = await self.mappings.find_by_provider_and_provider_id(
            provider, provider_subscription_id, entity_type=MappingEntityType.SUBSCRIPTION
        )
        if mapping is None:
            log.warning(
                "webhook_subscription_mapping_not_found",
                provider_subscription_id=provider_subscription_id,
            )
            return None
        subscription = await resolve_from_mapping(self.session, mapping)
        if subscription is None:
            log.warning(
                "webhook_subscription_not_found",
                provider_subscription_id=provider_subscription_id,
                workspace_id=mapping.entity_id,
            )
            return None
        return mapping, subscription

    async def _checkout_completed(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        account_id = event.account_id
        workspace_id = fields.metadata_value("entityId") or event.entity_id
        provider_subscription_id = fields.subscription_ref()
        provider_customer_id = fields.customer_ref()

        if not account_id or not workspace_id:
            # Paid conversion that cannot be attributed; needs operator follow-up
            log.critical(
                "checkout_completed_unattributed",
                account_id=account_id,
                workspace_id=workspace_id,
                provider_customer_id=provider_customer_id,
                provider_subscription_id=provider_subscription_id,
            )
            return
        if not provider_subscription_id:
            log.warning("checkout_completed_missing_subscription", workspace_id=workspace_id)
            return

        existing = await self.mappings.find_by_provider_and_provider_id(
            event.provider, provider_subscription_id, entity_type=MappingEntityType.SUBSCRIPTION
        )
        if existing is not None and existing.is_active:
            log.info(
                "checkout_completed_already_applied",
                provider_subscription_id=provider_subscription_id,
            )
            return

        plan_price_id = await self._resolve_plan_price_id(event.provider, fields)
        if plan_price_id is None:
            log.critical(
                "checkout_completed_price_unmapped",
                provider_price_id=fields.price_ref(),
                plan_price_id=fields.metadata_value("planPriceId"),
                workspace_id=workspace_id,
                account_id=account_id,
            )
            return

        metadata = fields.metadata()
        subscription = Subscription(
            id=uuid4(),
            account_id=account_id,
            workspace_id=workspace_id,
            plan_price_id=plan_price_id,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_end=fields.subscription_period_end(),
        )
        async with tenant_scope(self.session, account_id):
            self.session.add(subscription)
            await self.session.flush()
            await self.mappings.replace_mapping(
                MappingEntityType.SUBSCRIPTION,
                workspace_id,
                event.provider,
                provider_subscription_id,
                metadata={"subscriptionId": str(subscription.id)},
            )
            if provider_customer_id:
                await self._ensure_customer_mapping(
                    event.provider, provider_customer_id, account_id, workspace_id, metadata
                )

        await self.events.publish(
            SubscriptionCreatedEvent(
                subscription_id=str(subscription.id),
                workspace_id=workspace_id,
                account_id=account_id,
                plan_code=str(metadata.get("planCode") or ""),
                provider=event.provider,
                provider_subscription_id=provider_subscription_id,
            )
        )
        log.info(
            "checkout_completed_processed",
            subscription_id=str(subscription.id),
            workspace_id=workspace_id,
            account_id=account_id,
        )

    async def _resolve_plan_price_id(
        self, provider: str, fields: StripeEventFields
    ) -> Optional[str]:
        """
        Local plan price for a completed checkout.

        Stripe omits `line_items` from checkout.session.completed unless the
        session is re-fetched with expansion, so the `planPriceId` stamped into
        the session metadata at checkout is the fallback.
        """
        provider_price_id = fields.price_ref()
        if provider_price_id:
            mapping = await self.mappings.find_by_provider_and_provider_id(
                provider, provider_price_id, entity_type=MappingEntityType.PLAN_PRICE
            )
            return mapping.entity_id if mapping is not None else None

        plan_price_id = fields.metadata_value("planPriceId")
        if plan_price_id and await self.session.get(PlanPrice, plan_price_id) is not None:
            return plan_price_id
        return None

    async def _ensure_customer_mapping(
        self,
        provider: str,
        provider_customer_id: str,
        account_id: str,
        workspace_id: str,
        metadata: Mapping[str, Any],
    ) -> None:
        # Keyed on the provider customer id so one customer paying for several
        # workspaces under account scope keeps a single mapping row
        existing = await self.mappings.find_by_provider_and_provider_id(
            provider, provider_customer_id
        )
        if existing is not None:
            return
        entity_type = str(metadata.get("billingEntityType") or MappingEntityType.ACCOUNT.value)
        if entity_type not in (MappingEntityType.ACCOUNT.value, MappingEntityType.WORKSPACE.value):
            entity_type = MappingEntityType.ACCOUNT.value
        entity_id = metadata.get("billingEntityId") or (
            account_id if entity_type == MappingEntityType.ACCOUNT.value else workspace_id
        )
        await self.mappings.replace_mapping(
            entity_type, str(entity_id), provider, provider_customer_id
        )

    async def _subscription_created(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        # The subscription row is created from checkout.session.completed
        if not event.account_id:
            log.warning("subscription_created_missing_account")
            return
        log.info(
            "subscription_created_received",
            provider_subscription_id=fields.object_id(),
            account_id=event.account_id,
        )

    async def _subscription_updated(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        resolved = await self._resolve_subscription(event.provider, fields.object_id(), log)
        if resolved is None:
            return
        _, subscription = resolved

        if subscription.is_terminal:
            log.info(
                "subscription_update_ignored_terminal",
                subscription_id=str(subscription.id),
                status=subscription.status,
                provider_status=fields.status(),
            )
            return

        status = map_provider_status(fields.status())
        period_end = fields.subscription_period_end()
        async with tenant_scope(self.session, subscription.account_id):
            subscription.status = status
            if status == SubscriptionStatus.CANCELED.value and subscription.canceled_at is None:
                subscription.canceled_at = datetime.now(timezone.utc)
            if period_end is not None:
                subscription.current_period_end = period_end

        log.info(
            "subscription_updated",
            subscription_id=str(subscription.id),
            new_status=status,
        )

    async def _subscription_canceled(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        resolved = await self._resolve_subscription(event.provider, fields.object_id(), log)
        if resolved is None:
            return
        mapping, subscription = resolved

        was_terminal = subscription.is_terminal
        now = datetime.now(timezone.utc)
        async with tenant_scope(self.session, subscription.account_id):
            if not was_terminal:
                subscription.status = SubscriptionStatus.CANCELED.value
                subscription.canceled_at = now
            await self.mappings.deactivate_by_entity(
                MappingEntityType.SUBSCRIPTION, mapping.entity_id, event.provider
            )

        if was_terminal:
            log.info(
                "subscription_cancel_ignored_terminal",
                subscription_id=str(subscription.id),
                status=subscription.status,
            )
            return

        await self.events.publish(
            SubscriptionCanceledEvent(
                subscription_id=str(subscription.id),
                workspace_id=subscription.workspace_id,
                account_id=subscription.account_id,
                canceled_at=now,
                provider=event.provider,
            )
        )
        log.info("subscription_canceled", subscription_id=str(subscription.id))

    async def _payment_succeeded(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        resolved = await self._resolve_subscription(
            event.provider, fields.subscription_ref(), log
        )
        if resolved is None:
            return
        _, subscription = resolved

        recovered = False
        period_end = fields.line_item_period_end()
        async with tenant_scope(self.session, subscription.account_id):
            if subscription.status == SubscriptionStatus.PAST_DUE.value:
                subscription.status = SubscriptionStatus.ACTIVE.value
                await self.dunning.record_recovery(str(subscription.id))
                recovered = True
            if period_end is not None:
                subscription.current_period_end = period_end

        if recovered:
            await self.events.publish(
                PaymentRecoveredEvent(
                    subscription_id=str(subscription.id),
                    account_id=subscription.account_id,
                    provider=event.provider,
                )
            )
        log.info(
            "payment_succeeded_processed",
            subscription_id=str(subscription.id),
            recovered=recovered,
        )

    async def _payment_failed(
        self, event: NormalizedWebhookEvent, fields: StripeEventFields, log: Any
    ) -> None:
        provider_subscription_id = fields.subscription_ref()
        resolved = await self._resolve_subscription(
            event.provider, provider_subscription_id, log
        )
        if resolved is None:
            return
        _, subscription = resolved

        await handle_payment_failed(
            self.session,
            self.dunning,
            self.events,
            subscription,
            event.provider,
            str(provider_subscription_id),
        )
