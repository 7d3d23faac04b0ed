from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class PaymentProvider(str, Enum):
    """Payment processors the platform can integrate with."""

    STRIPE = "stripe"

    @classmethod
    def parse(cls, value: Any) -> "PaymentProvider":
        """Case-insensitive lookup; raises UnknownProviderError."""
        from paygate.modules.billing.domain.billing.exceptions import (
            UnknownProviderError,
        )

        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownProviderError(str(value))


@dataclass(frozen=True, slots=True)
class CustomerResult:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CustomerData:
    """Partial customer update; unset fields are left untouched at the provider."""

    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for key in ("email", "name", "phone", "metadata"):
            value = getattr(self, key)
            if value is not None:
                params[key] = value
        return params


@dataclass(frozen=True, slots=True)
class CheckoutParams:
    customer_id: str
    price_id: str
    entity_id: str
    entity_type: str
    success_url: str
    cancel_url: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CheckoutResult:
    url: str
    session_id: str


@dataclass(frozen=True, slots=True)
class PortalResult:
    url: str


@dataclass(frozen=True, slots=True)
class SubscriptionResult:
    id: str
    status: str  # active | canceled | pending
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class GatewayProduct:
    id: str
    name: str
    description: Optional[str]
    active: bool
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GatewayPrice:
    id: str
    product_id: str
    unit_amount: int
    currency: str
    interval: str  # month | year | ... | one_time
    active: bool
    interval_count: Optional[int] = None
    nickname: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GatewayHealthResult:
    healthy: bool
    latency_ms: float
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RawWebhookEvent:
    """Signature-verified provider event; `data` is the provider's object payload."""

    id: str
    type: str
    data: Dict[str, Any]
    provider: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaymentGateway(ABC):
    """
    Canonical interface over an external payment processor.

    Capabilities:
    - Customer management
    - Checkout and customer portal sessions
    - Subscription create/cancel
    - Webhook signature verification
    - Catalog introspection (products, prices)
    - Health check
    """

    provider: PaymentProvider

    @abstractmethod
    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> CustomerResult:
        raise NotImplementedError()

    @abstractmethod
    async def update_customer(self, customer_id: str, data: CustomerData) -> CustomerResult:
        raise NotImplementedError()

    @abstractmethod
    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        """Subscription-mode session with exactly one line item."""
        raise NotImplementedError()

    @abstractmethod
    async def create_portal_session(self, customer_id: str, return_url: str) -> PortalResult:
        raise NotImplementedError()

    @abstractmethod
    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> SubscriptionResult:
        raise NotImplementedError()

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> SubscriptionResult:
        raise NotImplementedError()

    @abstractmethod
    def verify_webhook_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> RawWebhookEvent:
        """
        Verify and parse a webhook delivery.

        Pure and synchronous: no I/O happens before the signature is checked.
        Raises SignatureVerificationError on mismatch.
        """
        raise NotImplementedError()

    @abstractmethod
    async def list_products(self, active_only: bool = True) -> List[GatewayProduct]:
        raise NotImplementedError()

    @abstractmethod
    async def list_prices(self, product_id: str, active_only: bool = True) -> List[GatewayPrice]:
        raise NotImplementedError()

    @abstractmethod
    async def health_check(self) -> GatewayHealthResult:
        """Lightweight read-only probe. Never raises."""
        raise NotImplementedError()
