from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookAck(CamelModel):
    received: bool = True


class CheckoutRequest(CamelModel):
    workspace_id: str = Field(min_length=1)
    plan_code: str = Field(min_length=1)
    provider: str = "stripe"


class CheckoutResponse(CamelModel):
    checkout_url: str
    session_id: str


class PortalRequest(CamelModel):
    workspace_id: str = Field(min_length=1)


class PortalResponse(CamelModel):
    portal_url: str


class GatewayProductResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    active: bool


class GatewayPriceResponse(CamelModel):
    id: str
    currency: str
    unit_amount: int
    interval: str
    active: bool


class GatewayHealthResponse(CamelModel):
    provider: str
    healthy: bool
    latency_ms: Optional[float] = None
    message: Optional[str] = None


class PriceLinkRequest(CamelModel):
    plan_price_id: str = Field(min_length=1)
    provider_price_id: str = Field(min_length=1)


class LinkGatewayRequest(CamelModel):
    provider: str
    provider_product_id: str = Field(min_length=1)
    provider_price_ids: List[PriceLinkRequest] = Field(default_factory=list)


class CancelSubscriptionRequest(CamelModel):
    provider: str = "stripe"
    reason: Optional[str] = None


class SubscriptionResponse(CamelModel):
    id: str
    status: str
    workspace_id: str
    account_id: str
    current_period_end: Optional[str] = None
    canceled_at: Optional[str] = None


class ExtendSubscriptionRequest(CamelModel):
    current_period_end: datetime
