import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
import tenacity

from paygate.models.subscription import map_provider_status
from paygate.modules.billing.domain.billing.exceptions import (
    SignatureVerificationError,
)
from paygate.modules.billing.domain.gateway.base import (
    CheckoutParams,
    CheckoutResult,
    CustomerData,
    CustomerResult,
    GatewayHealthResult,
    GatewayPrice,
    GatewayProduct,
    PaymentGateway,
    PaymentProvider,
    PortalResult,
    RawWebhookEvent,
    SubscriptionResult,
)
from paygate.shared.core.config import GatewayConfig
from paygate.shared.core.exceptions import ExternalAPIError

logger = structlog.get_logger()

# Retry decorator for Stripe transient failures
stripe_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type(
        (stripe.APIConnectionError, stripe.RateLimitError)
    ),
    wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe expandable fields are either an id string or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeGateway(PaymentGateway):
    """
    Stripe adapter over the official `stripe` SDK.

    The SDK is blocking, so every call runs in a worker thread. Credentials are
    passed per request instead of through the module-global `stripe.api_key`.
    """

    provider = PaymentProvider.STRIPE

    def __init__(self, config: GatewayConfig):
        self.config = config

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.config.secret_key}
        if self.config.api_version:
            options["stripe_version"] = self.config.api_version
        return options

    @stripe_retry
    def _invoke(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        return fn(*args, **params, **self._request_options())

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        try:
            return await asyncio.to_thread(self._invoke, fn, *args, **params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_api_error",
                operation=operation,
                error=str(exc),
                http_status=getattr(exc, "http_status", None),
            )
            raise ExternalAPIError(
                f"Stripe {operation} failed: {getattr(exc, 'user_message', None) or exc}",
                details={"provider": self.provider.value, "operation": operation},
            ) from exc

    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> CustomerResult:
        params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        customer = await self._call("create_customer", stripe.Customer.create, **params)
        return CustomerResult(
            id=customer["id"],
            email=customer.get("email") or email,
            name=customer.get("name") or name,
            metadata=dict(customer.get("metadata") or {}),
        )

    async def update_customer(self, customer_id: str, data: CustomerData) -> CustomerResult:
        customer = await self._call(
            "update_customer", stripe.Customer.modify, customer_id, **data.to_params()
        )
        return CustomerResult(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
            metadata=dict(customer.get("metadata") or {}),
        )

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        metadata = {
            "entityId": params.entity_id,
            "entityType": params.entity_type,
            **params.metadata,
        }
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            customer=params.customer_id,
            mode="subscription",
            line_items=[{"price": params.price_id, "quantity": 1}],
            success_url=params.success_url,
            cancel_url=params.cancel_url,
            metadata=metadata,
            # Copied onto the subscription so later invoice/subscription events carry it
            subscription_data={"metadata": metadata},
        )
        return CheckoutResult(url=session["url"], session_id=session["id"])

    async def create_portal_session(self, customer_id: str, return_url: str) -> PortalResult:
        session = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return PortalResult(url=session["url"])

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> SubscriptionResult:
        subscription = await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            metadata=metadata or {},
        )
        return self._subscription_result(subscription)

    async def cancel_subscription(self, subscription_id: str) -> SubscriptionResult:
        subscription = await self._call(
            "cancel_subscription", stripe.Subscription.cancel, subscription_id
        )
        return self._subscription_result(subscription)

    def _subscription_result(self, subscription: Any) -> SubscriptionResult:
        period_end = subscription.get("current_period_end")
        if period_end is None:
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        return SubscriptionResult(
            id=subscription["id"],
            status=map_provider_status(subscription.get("status")),
            customer_id=_ref_id(subscription.get("customer")),
            current_period_end=_from_epoch(period_end),
        )

    def verify_webhook_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> RawWebhookEvent:
        try:
            stripe.Webhook.construct_event(
                payload, signature, secret or self.config.webhook_secret
            )
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise SignatureVerificationError(
                f"Webhook signature verification failed: {exc}",
                details={"provider": self.provider.value},
            ) from exc

        body = json.loads(payload)
        return RawWebhookEvent(
            id=str(body["id"]),
            type=str(body["type"]),
            data=dict((body.get("data") or {}).get("object") or {}),
            provider=self.provider.value,
        )

    async def list_products(self, active_only: bool = True) -> List[GatewayProduct]:
        params: Dict[str, Any] = {"limit": 100}
        if active_only:
            params["active"] = True
        products = await self._call("list_products", stripe.Product.list, **params)
        return [
            GatewayProduct(
                id=product["id"],
                name=product.get("name") or "",
                description=product.get("description") or None,
                active=bool(product.get("active")),
                metadata=dict(product.get("metadata") or {}),
            )
            for product in products.get("data") or []
        ]

    async def list_prices(self, product_id: str, active_only: bool = True) -> List[GatewayPrice]:
        params: Dict[str, Any] = {"product": product_id, "limit": 100}
        if active_only:
            params["active"] = True
        prices = await self._call("list_prices", stripe.Price.list, **params)
        results = []
        for price in prices.get("data") or []:
            recurring = price.get("recurring") or {}
            results.append(
                GatewayPrice(
                    id=price["id"],
                    product_id=_ref_id(price.get("product")) or product_id,
                    unit_amount=int(price.get("unit_amount") or 0),
                    currency=price.get("currency") or "",
                    interval=recurring.get("interval") or "one_time",
                    interval_count=recurring.get("interval_count"),
                    active=bool(price.get("active")),
                    nickname=price.get("nickname"),
                )
            )
        return results

    async def health_check(self) -> GatewayHealthResult:
        start = time.perf_counter()
        try:
            await asyncio.to_thread(
                stripe.Balance.retrieve, **self._request_options()
            )
            return GatewayHealthResult(
                healthy=True,
                latency_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        except Exception as exc:
            logger.warning("stripe_health_check_failed", error=str(exc))
            return GatewayHealthResult(
                healthy=False,
                latency_ms=round((time.perf_counter() - start) * 1000, 2),
                message=str(exc),
            )
