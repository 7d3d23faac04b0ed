"""
Admin endpoints for payment gateway catalog inspection and plan linking.
"""

from datetime import datetime
from typing import Annotated, List, Optional

import structlog
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.subscription import Subscription
from paygate.modules.billing.api.v1.billing_models import (
    CancelSubscriptionRequest,
    ExtendSubscriptionRequest,
    GatewayHealthResponse,
    GatewayPriceResponse,
    GatewayProductResponse,
    LinkGatewayRequest,
    SubscriptionResponse,
)
from paygate.modules.billing.api.v1.deps import (
    CurrentUser,
    event_bus,
    gateway_factory,
    require_admin,
)
from paygate.modules.billing.domain.billing.link_gateway import (
    PriceLink,
    link_gateway_plan,
)
from paygate.modules.billing.domain.billing.subscription_commands import (
    cancel_subscription,
    extend_subscription,
)
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.events import EventBus
from paygate.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["Billing Admin"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=str(subscription.id),
        status=subscription.status,
        workspace_id=subscription.workspace_id,
        account_id=subscription.account_id,
        current_period_end=_iso(subscription.current_period_end),
        canceled_at=_iso(subscription.canceled_at),
    )


@router.get(
    "/gateway/{provider}/products",
    response_model=List[GatewayProductResponse],
)
async def list_gateway_products(
    provider: str,
    _admin: Annotated[CurrentUser, Depends(require_admin)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
) -> List[GatewayProductResponse]:
    gateway = factory.create(provider)
    products = await gateway.list_products()
    return [
        GatewayProductResponse(
            id=p.id, name=p.name, description=p.description, active=p.active
        )
        for p in products
    ]


@router.get(
    "/gateway/{provider}/products/{product_id}/prices",
    response_model=List[GatewayPriceResponse],
)
async def list_gateway_prices(
    provider: str,
    product_id: str,
    _admin: Annotated[CurrentUser, Depends(require_admin)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
) -> List[GatewayPriceResponse]:
    gateway = factory.create(provider)
    prices = await gateway.list_prices(product_id)
    return [
        GatewayPriceResponse(
            id=p.id,
            currency=p.currency,
            unit_amount=p.unit_amount,
            interval=p.interval,
            active=p.active,
        )
        for p in prices
    ]


@router.post("/gateway/{provider}/health", response_model=GatewayHealthResponse)
async def check_gateway_health(
    provider: str,
    _admin: Annotated[CurrentUser, Depends(require_admin)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
) -> GatewayHealthResponse:
    gateway = factory.create(provider)
    result = await gateway.health_check()
    return GatewayHealthResponse(
        provider=gateway.provider.value,
        healthy=result.healthy,
        latency_ms=result.latency_ms,
        message=result.message,
    )


@router.post(
    "/plans/{plan_id}/link-gateway",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def link_plan_to_gateway(
    plan_id: str,
    link_req: LinkGatewayRequest,
    admin: Annotated[CurrentUser, Depends(require_admin)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
    events: Annotated[EventBus, Depends(event_bus)],
    db: AsyncSession = Depends(get_db),
) -> Response:
    await link_gateway_plan(
        db,
        factory,
        events,
        plan_id=plan_id,
        provider=link_req.provider,
        provider_product_id=link_req.provider_product_id,
        price_links=[
            PriceLink(
                plan_price_id=link.plan_price_id,
                provider_price_id=link.provider_price_id,
            )
            for link in link_req.provider_price_ids
        ],
        linked_by=admin.id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
)
async def cancel_subscription_admin(
    subscription_id: str,
    cancel_req: CancelSubscriptionRequest,
    admin: Annotated[CurrentUser, Depends(require_admin)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
    events: Annotated[EventBus, Depends(event_bus)],
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    gateway = factory.create(cancel_req.provider)
    subscription = await cancel_subscription(
        db, gateway, subscription_id, events, reason=cancel_req.reason
    )
    logger.info(
        "admin_subscription_canceled",
        subscription_id=subscription_id,
        canceled_by=admin.id,
    )
    return _subscription_response(subscription)


@router.post(
    "/subscriptions/{subscription_id}/extend",
    response_model=SubscriptionResponse,
)
async def extend_subscription_admin(
    subscription_id: str,
    extend_req: ExtendSubscriptionRequest,
    admin: Annotated[CurrentUser, Depends(require_admin)],
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    subscription = await extend_subscription(
        db, subscription_id, extend_req.current_period_end
    )
    logger.info(
        "admin_subscription_extended",
        subscription_id=subscription_id,
        extended_by=admin.id,
    )
    return _subscription_response(subscription)
