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

__all__ = [
    "CheckoutParams",
    "CheckoutResult",
    "CustomerData",
    "CustomerResult",
    "GatewayHealthResult",
    "GatewayPrice",
    "GatewayProduct",
    "PaymentGateway",
    "PaymentProvider",
    "PortalResult",
    "RawWebhookEvent",
    "SubscriptionResult",
]
