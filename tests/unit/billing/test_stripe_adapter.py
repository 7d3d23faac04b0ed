import json

import pytest
import stripe
import tenacity
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from paygate.models.subscription import map_provider_status
from paygate.modules.billing.domain.billing.exceptions import SignatureVerificationError
from paygate.modules.billing.domain.gateway.base import CheckoutParams, CustomerData
from paygate.modules.billing.domain.gateway.stripe_adapter import StripeGateway
from paygate.shared.core.config import GatewayConfig
from paygate.shared.core.exceptions import ExternalAPIError

ADAPTER = "paygate.modules.billing.domain.gateway.stripe_adapter.stripe"


@pytest.fixture
def gateway() -> StripeGateway:
    return StripeGateway(
        GatewayConfig(
            provider="stripe",
            secret_key="sk_test_adapter",
            webhook_secret="whsec_adapter",
            api_version="2024-06-20",
        )
    )


@pytest.fixture(autouse=True)
def no_retry_wait():
    with patch.object(StripeGateway._invoke.retry, "wait", tenacity.wait_none()):
        yield


@pytest.mark.asyncio
async def test_create_customer_passes_credentials_per_request(gateway):
    with patch(f"{ADAPTER}.Customer.create") as create:
        create.return_value = {"id": "cus_1", "email": "a@example.com", "name": "Ada", "metadata": {"entityId": "account-1"}}
        result = await gateway.create_customer("a@example.com", "Ada", {"entityId": "account-1"})

    assert result.id == "cus_1"
    assert result.metadata == {"entityId": "account-1"}
    kwargs = create.call_args.kwargs
    assert kwargs["api_key"] == "sk_test_adapter"
    assert kwargs["stripe_version"] == "2024-06-20"
    assert kwargs["email"] == "a@example.com"
    assert kwargs["name"] == "Ada"


@pytest.mark.asyncio
async def test_create_customer_omits_empty_name(gateway):
    with patch(f"{ADAPTER}.Customer.create") as create:
        create.return_value = {"id": "cus_2"}
        await gateway.create_customer("b@example.com")
    assert "name" not in create.call_args.kwargs


@pytest.mark.asyncio
async def test_update_customer_sends_only_set_fields(gateway):
    with patch(f"{ADAPTER}.Customer.modify") as modify:
        modify.return_value = {"id": "cus_1", "email": "new@example.com"}
        await gateway.update_customer("cus_1", CustomerData(email="new@example.com"))
    args, kwargs = modify.call_args
    assert args == ("cus_1",)
    assert kwargs["email"] == "new@example.com"
    assert "name" not in kwargs and "phone" not in kwargs


@pytest.mark.asyncio
async def test_checkout_session_is_single_item_subscription(gateway):
    params = CheckoutParams(
        customer_id="cus_1",
        price_id="price_xyz",
        entity_id="workspace-1",
        entity_type="workspace",
        success_url="https://app/ok",
        cancel_url="https://app/cancel",
        metadata={"planCode": "pro", "accountId": "account-1"},
    )
    with patch(f"{ADAPTER}.checkout.Session.create") as create:
        create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
        result = await gateway.create_checkout_session(params)

    assert result.session_id == "cs_1"
    assert result.url == "https://checkout.stripe.com/c/cs_1"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_xyz", "quantity": 1}]
    expected_metadata = {
        "entityId": "workspace-1",
        "entityType": "workspace",
        "planCode": "pro",
        "accountId": "account-1",
    }
    assert kwargs["metadata"] == expected_metadata
    assert kwargs["subscription_data"] == {"metadata": expected_metadata}


@pytest.mark.asyncio
async def test_portal_session(gateway):
    with patch(f"{ADAPTER}.billing_portal.Session.create") as create:
        create.return_value = {"url": "https://billing.stripe.com/p/1"}
        result = await gateway.create_portal_session("cus_1", "https://app/billing")
    assert result.url == "https://billing.stripe.com/p/1"
    assert create.call_args.kwargs["return_url"] == "https://app/billing"


@pytest.mark.asyncio
async def test_cancel_subscription_maps_status(gateway):
    with patch(f"{ADAPTER}.Subscription.cancel") as cancel:
        cancel.return_value = {
            "id": "sub_abc",
            "status": "canceled",
            "customer": {"id": "cus_1"},
            "items": {"data": [{"current_period_end": 1767225600}]},
        }
        result = await gateway.cancel_subscription("sub_abc")
    assert result.status == "canceled"
    assert result.customer_id == "cus_1"
    assert result.current_period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stripe_status, expected",
    [
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("unpaid", "canceled"),
        ("incomplete", "incomplete"),
    ],
)
async def test_subscription_result_uses_local_status_map(gateway, stripe_status, expected):
    with patch(f"{ADAPTER}.Subscription.cancel") as cancel:
        cancel.return_value = {"id": "sub_abc", "status": stripe_status, "customer": "cus_1"}
        result = await gateway.cancel_subscription("sub_abc")
    assert result.status == expected
    assert result.status == map_provider_status(stripe_status)


@pytest.mark.asyncio
async def test_list_products_and_prices(gateway):
    with patch(f"{ADAPTER}.Product.list") as list_products, patch(f"{ADAPTER}.Price.list") as list_prices:
        list_products.return_value = {"data": [{"id": "prod_1", "name": "Pro", "description": None, "active": True}]}
        list_prices.return_value = {
            "data": [
                {"id": "price_1", "product": "prod_1", "unit_amount": 4900, "currency": "usd",
                 "recurring": {"interval": "month", "interval_count": 1}, "active": True},
                {"id": "price_2", "product": "prod_1", "unit_amount": 100, "currency": "usd",
                 "recurring": None, "active": True},
            ]
        }
        products = await gateway.list_products()
        prices = await gateway.list_prices("prod_1", active_only=False)

    assert [p.id for p in products] == ["prod_1"]
    assert list_products.call_args.kwargs["active"] is True
    assert "active" not in list_prices.call_args.kwargs
    assert prices[0].interval == "month"
    assert prices[0].unit_amount == 4900
    assert prices[1].interval == "one_time"


@pytest.mark.asyncio
async def test_transient_errors_are_retried(gateway):
    with patch(f"{ADAPTER}.Product.list") as list_products:
        list_products.side_effect = [
            stripe.APIConnectionError("connection reset"),
            {"data": []},
        ]
        assert await gateway.list_products() == []
    assert list_products.call_count == 2


@pytest.mark.asyncio
async def test_persistent_errors_surface_as_external_api_error(gateway):
    with patch(f"{ADAPTER}.Product.list") as list_products:
        list_products.side_effect = stripe.RateLimitError("slow down")
        with pytest.raises(ExternalAPIError) as exc:
            await gateway.list_products()
    assert list_products.call_count == 3
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried(gateway):
    with patch(f"{ADAPTER}.Customer.create") as create:
        create.side_effect = stripe.InvalidRequestError("No such price", param="price")
        with pytest.raises(ExternalAPIError):
            await gateway.create_customer("c@example.com")
    assert create.call_count == 1


@pytest.mark.asyncio
async def test_health_check_never_raises(gateway):
    with patch(f"{ADAPTER}.Balance.retrieve") as retrieve:
        retrieve.return_value = MagicMock()
        healthy = await gateway.health_check()
        retrieve.side_effect = stripe.AuthenticationError("bad key")
        unhealthy = await gateway.health_check()

    assert healthy.healthy is True
    assert unhealthy.healthy is False
    assert "bad key" in unhealthy.message
    assert unhealthy.latency_ms >= 0


def test_verify_webhook_signature(gateway, make_stripe_event, sign_stripe):
    body = make_stripe_event("evt_1", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_abc"})
    event = gateway.verify_webhook_signature(body, sign_stripe(body, secret="whsec_adapter"))
    assert event.id == "evt_1"
    assert event.type == "invoice.payment_failed"
    assert event.data == {"id": "in_1", "subscription": "sub_abc"}
    assert event.provider == "stripe"


def test_verify_webhook_signature_rejects_bad_signature(gateway, make_stripe_event, sign_stripe):
    body = make_stripe_event("evt_1", "invoice.payment_failed", {})
    with pytest.raises(SignatureVerificationError):
        gateway.verify_webhook_signature(body, sign_stripe(body, secret="whsec_wrong"))
    with pytest.raises(SignatureVerificationError):
        gateway.verify_webhook_signature(body, "garbage")


def test_verify_uses_explicit_secret(gateway, make_stripe_event, sign_stripe):
    body = json.dumps({"id": "evt_2", "type": "invoice.payment_succeeded", "data": {"object": {}}}).encode()
    event = gateway.verify_webhook_signature(body, sign_stripe(body, secret="whsec_rotated"), secret="whsec_rotated")
    assert event.id == "evt_2"
