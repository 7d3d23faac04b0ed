"""
Webhook normalization.

Maps raw provider events onto the canonical WebhookEventType taxonomy and
derives the idempotency key. Provider payload quirks stay inside the
per-provider field extractors; everything downstream reads Optional values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from paygate.modules.billing.domain.billing.exceptions import UnknownEventTypeError
from paygate.modules.billing.domain.gateway.base import PaymentProvider, RawWebhookEvent

logger = structlog.get_logger()


class WebhookEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


STRIPE_EVENT_MAP: Dict[str, WebhookEventType] = {
    "checkout.session.completed": WebhookEventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELED,
    "invoice.payment_succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(value: Any) -> Dict[str, Any]:
    if isinstance(value, list) and value:
        return _as_dict(value[0])
    return {}


def _ref(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    ref_id = _as_dict(value).get("id")
    return str(ref_id) if ref_id else None


def _epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class StripeEventFields:
    """Best-effort readers over a Stripe event's `data.object`."""

    def __init__(self, data: Mapping[str, Any]):
        self.data = dict(data or {})

    def metadata(self) -> Dict[str, Any]:
        return _as_dict(self.data.get("metadata"))

    def metadata_value(self, key: str) -> Optional[str]:
        value = self.metadata().get(key)
        return str(value) if value else None

    def object_id(self) -> Optional[str]:
        return _ref(self.data.get("id"))

    def subscription_ref(self) -> Optional[str]:
        return _ref(self.data.get("subscription"))

    def customer_ref(self) -> Optional[str]:
        return _ref(self.data.get("customer"))

    def price_ref(self) -> Optional[str]:
        line_item = _first(_as_dict(self.data.get("line_items")).get("data"))
        price = _ref(line_item.get("price"))
        if price:
            return price
        return _ref(_first(self.data.get("display_items")).get("price"))

    def line_item_period_end(self) -> Optional[datetime]:
        line = _first(_as_dict(self.data.get("lines")).get("data"))
        return _epoch(_as_dict(line.get("period")).get("end"))

    def subscription_period_end(self) -> Optional[datetime]:
        period_end = self.data.get("current_period_end")
        if period_end is None:
            item = _first(_as_dict(self.data.get("items")).get("data"))
            period_end = item.get("current_period_end")
        return _epoch(period_end)

    def status(self) -> Optional[str]:
        status = self.data.get("status")
        return str(status) if status else None

    def account_id(self) -> Optional[str]:
        """Event metadata, then nested customer, then nested subscription."""
        for source in (
            self.data,
            _as_dict(self.data.get("customer")),
            _as_dict(self.data.get("subscription")),
        ):
            account_id = _as_dict(source.get("metadata")).get("accountId")
            if account_id:
                return str(account_id)
        return None


FIELD_EXTRACTORS = {
    PaymentProvider.STRIPE: StripeEventFields,
}


def event_fields(provider: Any, data: Mapping[str, Any]) -> StripeEventFields:
    return FIELD_EXTRACTORS[PaymentProvider.parse(provider)](data)


@dataclass
class NormalizedWebhookEvent:
    event_type: WebhookEventType
    provider: str
    idempotency_key: str
    data: Dict[str, Any] = field(default_factory=dict)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    account_id: Optional[str] = None

    def to_job_payload(self, raw_event: RawWebhookEvent) -> Dict[str, Any]:
        """Queue contract: the normalized event plus rawEventId/rawEventType."""
        return {
            "eventType": self.event_type.value,
            "provider": self.provider,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "accountId": self.account_id,
            "data": self.data,
            "idempotencyKey": self.idempotency_key,
            "rawEventId": raw_event.id,
            "rawEventType": raw_event.type,
        }

    @classmethod
    def from_job_payload(cls, payload: Mapping[str, Any]) -> "NormalizedWebhookEvent":
        return cls(
            event_type=WebhookEventType(payload["eventType"]),
            provider=str(payload["provider"]),
            idempotency_key=str(payload["idempotencyKey"]),
            data=dict(payload.get("data") or {}),
            entity_type=payload.get("entityType"),
            entity_id=payload.get("entityId"),
            account_id=payload.get("accountId"),
        )


class WebhookNormalizer:
    EVENT_MAPS: Dict[PaymentProvider, Dict[str, WebhookEventType]] = {
        PaymentProvider.STRIPE: STRIPE_EVENT_MAP,
    }

    def normalize(self, provider: Any, raw_event: RawWebhookEvent) -> NormalizedWebhookEvent:
        resolved = PaymentProvider.parse(provider)
        event_type = self.EVENT_MAPS[resolved].get(raw_event.type)
        if event_type is None:
            logger.info(
                "webhook_event_type_unmapped",
                provider=resolved.value,
                raw_event_id=raw_event.id,
                raw_event_type=raw_event.type,
            )
            raise UnknownEventTypeError(resolved.value, raw_event.type)

        fields = event_fields(resolved, raw_event.data)
        return NormalizedWebhookEvent(
            event_type=event_type,
            provider=resolved.value,
            entity_type=fields.metadata_value("entityType"),
            entity_id=fields.metadata_value("entityId"),
            account_id=fields.account_id(),
            data=dict(raw_event.data),
            idempotency_key=f"{resolved.value}:{raw_event.id}",
        )
