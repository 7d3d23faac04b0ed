"""
Subscription state changes issued outside the webhook dispatch table.

Every write goes through tenant_scope(account_id), which commits; domain
events are published only after the commit.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.payment_provider_mapping import MappingEntityType
from paygate.models.subscription import Subscription, SubscriptionStatus
from paygate.modules.billing.domain.billing.events import (
    PaymentFailedEvent,
    SubscriptionCanceledEvent,
)
from paygate.modules.billing.domain.billing.mapping_repository import (
    PaymentProviderMappingRepository,
)
from paygate.modules.billing.domain.billing.subscription_repository import (
    get_subscription,
)
from paygate.shared.core.events import EventBus
from paygate.shared.core.exceptions import ConflictError, ResourceNotFoundError
from paygate.shared.db.session import tenant_scope

if TYPE_CHECKING:
    from paygate.modules.billing.domain.billing.dunning_service import DunningService
    from paygate.modules.billing.domain.gateway.base import PaymentGateway

logger = structlog.get_logger()

CANCELABLE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value}


async def _load(session: AsyncSession, subscription_id: object) -> Subscription:
    subscription = await get_subscription(session, subscription_id)
    if subscription is None:
        raise ResourceNotFoundError(
            f"Subscription {subscription_id} not found",
            details={"subscription_id": str(subscription_id)},
        )
    return subscription


async def handle_payment_failed(
    session: AsyncSession,
    dunning: "DunningService",
    events: EventBus,
    subscription: Subscription,
    provider: str,
    provider_subscription_id: str,
) -> int:
    """Record the failure and move the subscription to past_due."""
    log = logger.bind(
        subscription_id=str(subscription.id),
        account_id=subscription.account_id,
        provider=provider,
    )
    if subscription.is_terminal:
        log.info("payment_failed_ignored_terminal", status=subscription.status)
        return 0

    async with tenant_scope(session, subscription.account_id):
        failure_count = await dunning.record_failure(str(subscription.id))
        subscription.status = SubscriptionStatus.PAST_DUE.value

    await events.publish(
        PaymentFailedEvent(
            subscription_id=str(subscription.id),
            account_id=subscription.account_id,
            provider=provider,
            provider_subscription_id=provider_subscription_id,
            failure_count=failure_count,
        )
    )
    log.info("payment_failure_handled", failure_count=failure_count)
    return failure_count


async def suspend_subscription(
    session: AsyncSession,
    subscription: Subscription,
    reason: str,
    events: EventBus,
) -> None:
    """Dunning escalation: status unpaid, access ends now."""
    now = datetime.now(timezone.utc)
    async with tenant_scope(session, subscription.account_id):
        subscription.status = SubscriptionStatus.UNPAID.value
        subscription.canceled_at = now

    await events.publish(
        SubscriptionCanceledEvent(
            subscription_id=str(subscription.id),
            workspace_id=subscription.workspace_id,
            account_id=subscription.account_id,
            canceled_at=now,
            reason=f"Suspended: {reason}",
            suspended=True,
        )
    )
    logger.warning(
        "subscription_suspended",
        subscription_id=str(subscription.id),
        account_id=subscription.account_id,
        reason=reason,
    )


async def cancel_subscription(
    session: AsyncSession,
    gateway: "PaymentGateway",
    subscription_id: object,
    events: EventBus,
    reason: Optional[str] = None,
) -> Subscription:
    """Manual cancel from active or past_due, propagated to the provider."""
    subscription = await _load(session, subscription_id)
    if subscription.status not in CANCELABLE_STATUSES:
        raise ConflictError(
            f"Subscription cannot be canceled from status '{subscription.status}'",
            code="invalid_subscription_transition",
            details={"subscription_id": str(subscription.id), "status": subscription.status},
        )

    provider = gateway.provider.value
    mappings = PaymentProviderMappingRepository(session)
    mapping = await mappings.find_active_by_entity_and_provider(
        MappingEntityType.SUBSCRIPTION, subscription.workspace_id, provider
    )
    if mapping is not None:
        await gateway.cancel_subscription(mapping.provider_id)

    now = datetime.now(timezone.utc)
    async with tenant_scope(session, subscription.account_id):
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = now
        if mapping is not None:
            await mappings.deactivate_by_entity(
                MappingEntityType.SUBSCRIPTION, subscription.workspace_id, provider
            )

    await events.publish(
        SubscriptionCanceledEvent(
            subscription_id=str(subscription.id),
            workspace_id=subscription.workspace_id,
            account_id=subscription.account_id,
            canceled_at=now,
            provider=provider,
            reason=reason,
        )
    )
    logger.info(
        "subscription_canceled_manually",
        subscription_id=str(subscription.id),
        provider_subscription_id=mapping.provider_id if mapping else None,
    )
    return subscription


async def extend_subscription(
    session: AsyncSession, subscription_id: object, current_period_end: datetime
) -> Subscription:
    subscription = await _load(session, subscription_id)
    if subscription.is_terminal:
        raise ConflictError(
            "Cannot extend a canceled or suspended subscription",
            code="invalid_subscription_transition",
            details={"subscription_id": str(subscription.id), "status": subscription.status},
        )
    async with tenant_scope(session, subscription.account_id):
        subscription.current_period_end = current_period_end
    logger.info(
        "subscription_extended",
        subscription_id=str(subscription.id),
        current_period_end=current_period_end.isoformat(),
    )
    return subscription
