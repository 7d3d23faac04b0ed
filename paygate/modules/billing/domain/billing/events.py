from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SubscriptionCreatedEvent:
    subscription_id: str
    workspace_id: str
    account_id: str
    plan_code: str
    provider: str
    provider_subscription_id: str
    status: str = "active"
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SubscriptionCanceledEvent:
    subscription_id: str
    workspace_id: str
    account_id: str
    canceled_at: datetime
    provider: Optional[str] = None
    reason: Optional[str] = None
    # True when dunning escalation ended the subscription
    suspended: bool = False


@dataclass(frozen=True)
class PaymentFailedEvent:
    subscription_id: str
    account_id: str
    provider: str
    provider_subscription_id: str
    failure_count: int
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class PaymentRecoveredEvent:
    subscription_id: str
    account_id: str
    provider: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class GatewayLinkedEvent:
    plan_id: str
    provider: str
    product_id: str
    price_ids: List[str] = field(default_factory=list)
    occurred_at: datetime = field(default_factory=_utcnow)
