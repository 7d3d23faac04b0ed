from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.catalog import Plan, PlanPrice
from paygate.models.payment_provider_mapping import MappingEntityType
from paygate.modules.billing.domain.billing.events import GatewayLinkedEvent
from paygate.modules.billing.domain.billing.mapping_repository import (
    PaymentProviderMappingRepository,
)
from paygate.modules.billing.domain.gateway.base import PaymentProvider
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.events import EventBus
from paygate.shared.core.exceptions import BillingError, ResourceNotFoundError

logger = structlog.get_logger()


@dataclass(frozen=True)
class PriceLink:
    plan_price_id: str
    provider_price_id: str


async def link_gateway_plan(
    session: AsyncSession,
    gateway_factory: PaymentGatewayFactory,
    events: EventBus,
    plan_id: str,
    provider: Any,
    provider_product_id: str,
    price_links: Sequence[PriceLink] = (),
    linked_by: Optional[str] = None,
) -> None:
    """
    Link a plan (and optionally its prices) to a provider product.

    The product must exist in the provider's live catalog. The plan mapping and
    every price mapping are replaced in a single transaction.
    """
    resolved = PaymentProvider.parse(provider)
    log = logger.bind(
        plan_id=plan_id,
        provider=resolved.value,
        provider_product_id=provider_product_id,
    )
    log.info("gateway_link_started", linked_by=linked_by)

    plan = await session.get(Plan, plan_id)
    if plan is None:
        raise ResourceNotFoundError(f"Plan not found: {plan_id}", details={"plan_id": plan_id})

    if price_links:
        requested = {link.plan_price_id for link in price_links}
        owned = set(
            (
                await session.execute(
                    select(PlanPrice.id).where(
                        PlanPrice.plan_id == plan_id, PlanPrice.id.in_(requested)
                    )
                )
            ).scalars()
        )
        missing = sorted(requested - owned)
        if missing:
            raise ResourceNotFoundError(
                "Plan prices not found for this plan",
                details={"plan_id": plan_id, "plan_price_ids": missing},
            )

    gateway = gateway_factory.create(resolved)
    products = await gateway.list_products()
    if not any(product.id == provider_product_id for product in products):
        raise ResourceNotFoundError(
            f"Product '{provider_product_id}' not found in gateway '{resolved.value}'",
            details={"provider": resolved.value, "provider_product_id": provider_product_id},
        )

    if price_links:
        gateway_prices = {
            price.id for price in await gateway.list_prices(provider_product_id, active_only=False)
        }
        unknown = sorted(
            link.provider_price_id for link in price_links if link.provider_price_id not in gateway_prices
        )
        if unknown:
            raise BillingError(
                "Prices do not belong to the linked product",
                code="gateway_price_mismatch",
                details={"provider_product_id": provider_product_id, "provider_price_ids": unknown},
            )

    mappings = PaymentProviderMappingRepository(session)
    try:
        await mappings.replace_mapping(
            MappingEntityType.PLAN, plan_id, resolved, provider_product_id
        )
        for link in price_links:
            await mappings.replace_mapping(
                MappingEntityType.PLAN_PRICE,
                link.plan_price_id,
                resolved,
                link.provider_price_id,
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    log.info("gateway_link_completed", price_count=len(price_links))
    await events.publish(
        GatewayLinkedEvent(
            plan_id=plan_id,
            provider=resolved.value,
            product_id=provider_product_id,
            price_ids=[link.provider_price_id for link in price_links],
        )
    )
