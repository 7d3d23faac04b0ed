from paygate.models.catalog import Plan, PlanPrice
from paygate.models.dunning import DunningRecord
from paygate.models.payment_provider_mapping import (
    MappingEntityType,
    PaymentProviderMapping,
)
from paygate.models.subscription import Subscription, SubscriptionStatus
from paygate.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Plan",
    "PlanPrice",
    "DunningRecord",
    "MappingEntityType",
    "PaymentProviderMapping",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookEventStatus",
]
