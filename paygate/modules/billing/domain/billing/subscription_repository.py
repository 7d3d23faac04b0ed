from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.payment_provider_mapping import PaymentProviderMapping
from paygate.models.subscription import Subscription, TERMINAL_STATUSES


def _as_uuid(value: object) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def get_subscription(session: AsyncSession, subscription_id: object) -> Optional[Subscription]:
    key = _as_uuid(subscription_id)
    if key is None:
        return None
    return await session.get(Subscription, key)


async def find_latest_by_workspace(
    session: AsyncSession, workspace_id: str, *, exclude_terminal: bool = False
) -> Optional[Subscription]:
    stmt = select(Subscription).where(Subscription.workspace_id == str(workspace_id))
    if exclude_terminal:
        stmt = stmt.where(Subscription.status.notin_([s.value for s in TERMINAL_STATUSES]))
    result = await session.execute(
        stmt.order_by(Subscription.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_from_mapping(
    session: AsyncSession, mapping: PaymentProviderMapping
) -> Optional[Subscription]:
    """
    Subscription behind a `subscription` mapping.

    The mapping is keyed by workspace; the exact row id is kept in its
    metadata, with the workspace's latest subscription as fallback.
    """
    subscription_id = (mapping.metadata_ or {}).get("subscriptionId")
    if subscription_id:
        subscription = await get_subscription(session, subscription_id)
        if subscription is not None:
            return subscription
    return await find_latest_by_workspace(session, mapping.entity_id)
