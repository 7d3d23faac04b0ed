import pytest
from datetime import datetime, timezone

from paygate.modules.billing.domain.billing.exceptions import UnknownEventTypeError
from paygate.modules.billing.domain.billing.normalizer import (
    NormalizedWebhookEvent,
    StripeEventFields,
    WebhookEventType,
    WebhookNormalizer,
)
from paygate.modules.billing.domain.gateway.base import RawWebhookEvent


def _raw(event_type: str, data: dict, event_id: str = "evt_1") -> RawWebhookEvent:
    return RawWebhookEvent(id=event_id, type=event_type, data=data, provider="stripe")


@pytest.mark.parametrize(
    "raw_type,expected",
    [
        ("checkout.session.completed", WebhookEventType.CHECKOUT_COMPLETED),
        ("customer.subscription.created", WebhookEventType.SUBSCRIPTION_CREATED),
        ("customer.subscription.updated", WebhookEventType.SUBSCRIPTION_UPDATED),
        ("customer.subscription.deleted", WebhookEventType.SUBSCRIPTION_CANCELED),
        ("invoice.payment_succeeded", WebhookEventType.PAYMENT_SUCCEEDED),
        ("invoice.payment_failed", WebhookEventType.PAYMENT_FAILED),
    ],
)
def test_stripe_event_types_map_to_canonical(raw_type, expected):
    normalized = WebhookNormalizer().normalize("stripe", _raw(raw_type, {}))
    assert normalized.event_type is expected


def test_unknown_event_type_raises():
    with pytest.raises(UnknownEventTypeError) as exc:
        WebhookNormalizer().normalize("stripe", _raw("charge.refunded", {}))
    assert exc.value.event_type == "charge.refunded"
    assert exc.value.status_code == 200


def test_idempotency_key_and_entity_fields():
    data = {
        "id": "cs_1",
        "metadata": {"entityId": "workspace-1", "entityType": "workspace", "accountId": "account-1"},
    }
    normalized = WebhookNormalizer().normalize("STRIPE", _raw("checkout.session.completed", data, "evt_42"))
    assert normalized.idempotency_key == "stripe:evt_42"
    assert normalized.provider == "stripe"
    assert normalized.entity_id == "workspace-1"
    assert normalized.entity_type == "workspace"
    assert normalized.account_id == "account-1"


def test_account_id_priority_event_then_customer_then_subscription():
    fields = StripeEventFields(
        {
            "metadata": {"accountId": "from-event"},
            "customer": {"id": "cus_1", "metadata": {"accountId": "from-customer"}},
            "subscription": {"id": "sub_1", "metadata": {"accountId": "from-subscription"}},
        }
    )
    assert fields.account_id() == "from-event"

    fields = StripeEventFields(
        {
            "customer": {"id": "cus_1", "metadata": {"accountId": "from-customer"}},
            "subscription": {"id": "sub_1", "metadata": {"accountId": "from-subscription"}},
        }
    )
    assert fields.account_id() == "from-customer"

    fields = StripeEventFields(
        {"customer": "cus_1", "subscription": {"id": "sub_1", "metadata": {"accountId": "from-subscription"}}}
    )
    assert fields.account_id() == "from-subscription"
    assert StripeEventFields({"customer": "cus_1"}).account_id() is None


def test_refs_accept_ids_or_expanded_objects():
    fields = StripeEventFields({"subscription": {"id": "sub_1"}, "customer": "cus_1"})
    assert fields.subscription_ref() == "sub_1"
    assert fields.customer_ref() == "cus_1"
    assert StripeEventFields({}).subscription_ref() is None


def test_price_ref_prefers_line_items_then_display_items():
    assert StripeEventFields(
        {"line_items": {"data": [{"price": {"id": "price_xyz"}}]}, "display_items": [{"price": "price_old"}]}
    ).price_ref() == "price_xyz"
    assert StripeEventFields({"display_items": [{"price": "price_old"}]}).price_ref() == "price_old"
    assert StripeEventFields({}).price_ref() is None


def test_period_ends_are_utc_datetimes():
    invoice = StripeEventFields({"lines": {"data": [{"period": {"end": 1767225600}}]}})
    assert invoice.line_item_period_end() == datetime(2026, 1, 1, tzinfo=timezone.utc)

    subscription = StripeEventFields({"items": {"data": [{"current_period_end": 1767225600}]}})
    assert subscription.subscription_period_end() == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert StripeEventFields({"current_period_end": "junk"}).subscription_period_end() is None


def test_job_payload_contract():
    raw = _raw("invoice.payment_failed", {"subscription": "sub_abc"}, "evt_9")
    normalized = WebhookNormalizer().normalize("stripe", raw)
    payload = normalized.to_job_payload(raw)

    assert payload == {
        "eventType": "payment_failed",
        "provider": "stripe",
        "entityType": None,
        "entityId": None,
        "accountId": None,
        "data": {"subscription": "sub_abc"},
        "idempotencyKey": "stripe:evt_9",
        "rawEventId": "evt_9",
        "rawEventType": "invoice.payment_failed",
    }
    restored = NormalizedWebhookEvent.from_job_payload(payload)
    assert restored.event_type is WebhookEventType.PAYMENT_FAILED
    assert restored.idempotency_key == "stripe:evt_9"
