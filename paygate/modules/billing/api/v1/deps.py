"""
Request dependencies for the billing routers.

Authentication is owned by the host application: its middleware places the
authenticated principal on `request.state.user` (an object exposing `id` and
`role`) and the directory adapter on `app.state.billing_directory`.
"""

from typing import Any, Optional

from fastapi import HTTPException, Request, status
from pydantic import BaseModel

from paygate.modules.billing.domain.billing.checkout_service import BillingDirectory
from paygate.modules.billing.domain.gateway.factory import (
    PaymentGatewayFactory,
    get_gateway_factory,
)
from paygate.shared.core.events import EventBus, get_event_bus
from paygate.shared.core.queue import QueueService, get_queue_service

ADMIN_ROLES = frozenset({"admin", "owner"})


class CurrentUser(BaseModel):
    id: str
    role: str = "member"


def gateway_factory() -> PaymentGatewayFactory:
    return get_gateway_factory()


def queue_service() -> QueueService:
    return get_queue_service()


def event_bus() -> EventBus:
    return get_event_bus()


def billing_directory(request: Request) -> BillingDirectory:
    directory: Optional[BillingDirectory] = getattr(
        request.app.state, "billing_directory", None
    )
    if directory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing directory not configured",
        )
    return directory


def require_user(request: Request) -> CurrentUser:
    principal: Any = getattr(request.state, "user", None)
    if principal is None or not getattr(principal, "id", None):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentUser(
        id=str(principal.id), role=str(getattr(principal, "role", "member"))
    )


def require_admin(request: Request) -> CurrentUser:
    user = require_user(request)
    if user.role.lower() not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions: admin role required",
        )
    return user
