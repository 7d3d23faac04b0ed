"""
Payment Gateway Factory

Resolves a provider to its configured adapter. Adapters are registered once
from settings at construction; lookups are pure and safe on every request.
"""

from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from paygate.modules.billing.domain.billing.exceptions import (
    UnconfiguredProviderError,
)
from paygate.modules.billing.domain.gateway.base import PaymentGateway, PaymentProvider
from paygate.modules.billing.domain.gateway.stripe_adapter import StripeGateway
from paygate.shared.core.config import GatewayConfig, Settings, get_settings
from paygate.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

GATEWAY_BUILDERS: Dict[PaymentProvider, Callable[[GatewayConfig], PaymentGateway]] = {
    PaymentProvider.STRIPE: StripeGateway,
}


class PaymentGatewayFactory:
    def __init__(self, gateways: Optional[Mapping[PaymentProvider, PaymentGateway]] = None):
        self._gateways: Dict[PaymentProvider, PaymentGateway] = dict(gateways or {})

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PaymentGatewayFactory":
        """Register an adapter for every provider whose credentials are present."""
        settings = settings or get_settings()
        gateways: Dict[PaymentProvider, PaymentGateway] = {}
        for provider, builder in GATEWAY_BUILDERS.items():
            try:
                config = settings.get_gateway_config(provider.value)
            except ConfigurationError as exc:
                logger.info(
                    "payment_gateway_not_configured",
                    provider=provider.value,
                    reason=exc.message,
                )
                continue
            gateways[provider] = builder(config)
            logger.info("payment_gateway_registered", provider=provider.value)
        return cls(gateways)

    def register(self, provider: PaymentProvider, gateway: PaymentGateway) -> None:
        self._gateways[provider] = gateway

    def create(self, provider: Any) -> PaymentGateway:
        resolved = PaymentProvider.parse(provider)
        gateway = self._gateways.get(resolved)
        if gateway is None:
            raise UnconfiguredProviderError(resolved.value)
        return gateway

    def get_available_providers(self) -> List[PaymentProvider]:
        return list(self._gateways.keys())

    def is_configured(self, provider: PaymentProvider) -> bool:
        return provider in self._gateways


@lru_cache
def get_gateway_factory() -> PaymentGatewayFactory:
    """Process-wide factory; FastAPI routes depend on this and tests override it."""
    return PaymentGatewayFactory.from_settings()
