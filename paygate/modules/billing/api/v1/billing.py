"""
Billing API endpoints.

Provides:
- POST /billing/webhook/{provider} - Verify and enqueue provider webhooks
- POST /billing/checkout - Start a hosted checkout for a plan
- POST /billing/portal - Open the provider's customer portal
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.modules.billing.api.v1.billing_models import (
    CheckoutRequest,
    CheckoutResponse,
    PortalRequest,
    PortalResponse,
    WebhookAck,
)
from paygate.modules.billing.api.v1.deps import (
    CurrentUser,
    billing_directory,
    gateway_factory,
    queue_service,
    require_user,
)
from paygate.modules.billing.domain.billing.checkout_service import (
    BillingDirectory,
    BillingService,
)
from paygate.modules.billing.domain.billing.ingestion import WebhookIngestionService
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.queue import QueueService
from paygate.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def handle_webhook(
    provider: str,
    request: Request,
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
    queue: Annotated[QueueService, Depends(queue_service)],
) -> WebhookAck:
    """
    Verify a provider webhook and hand it to the processing queue.

    The signature is computed over the exact request bytes, so the body is read
    raw and never re-serialized. Processing happens in the worker.
    """
    body = await request.body()
    service = WebhookIngestionService(factory, queue)
    result = await service.ingest(provider, body, request.headers)
    return WebhookAck(received=bool(result.get("received", True)))


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    checkout_req: CheckoutRequest,
    user: Annotated[CurrentUser, Depends(require_user)],
    directory: Annotated[BillingDirectory, Depends(billing_directory)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
    db: AsyncSession = Depends(get_db),
) -> CheckoutResponse:
    billing = BillingService(db, directory, factory)
    result = await billing.create_checkout_session(
        user_id=user.id,
        workspace_id=checkout_req.workspace_id,
        plan_code=checkout_req.plan_code,
        provider=checkout_req.provider,
    )
    return CheckoutResponse(checkout_url=result.url, session_id=result.session_id)


@router.post(
    "/portal",
    response_model=PortalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_portal(
    portal_req: PortalRequest,
    user: Annotated[CurrentUser, Depends(require_user)],
    directory: Annotated[BillingDirectory, Depends(billing_directory)],
    factory: Annotated[PaymentGatewayFactory, Depends(gateway_factory)],
    db: AsyncSession = Depends(get_db),
) -> PortalResponse:
    billing = BillingService(db, directory, factory)
    result = await billing.create_portal_session(
        user_id=user.id, workspace_id=portal_req.workspace_id
    )
    return PortalResponse(portal_url=result.url)
