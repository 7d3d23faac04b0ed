import pytest

from paygate.modules.billing.domain.billing.exceptions import (
    UnconfiguredProviderError,
    UnknownProviderError,
)
from paygate.modules.billing.domain.gateway.base import PaymentProvider
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.modules.billing.domain.gateway.stripe_adapter import StripeGateway
from paygate.shared.core.config import Settings


def test_from_settings_registers_configured_providers():
    settings = Settings(TESTING=True, STRIPE_SECRET_KEY="sk_test_1", STRIPE_WEBHOOK_SECRET="whsec_1")
    factory = PaymentGatewayFactory.from_settings(settings)

    gateway = factory.create("stripe")
    assert isinstance(gateway, StripeGateway)
    assert gateway.config.secret_key == "sk_test_1"
    assert factory.get_available_providers() == [PaymentProvider.STRIPE]
    assert factory.is_configured(PaymentProvider.STRIPE)


def test_from_settings_skips_provider_without_credentials(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    factory = PaymentGatewayFactory.from_settings(Settings(TESTING=True))

    assert factory.get_available_providers() == []
    with pytest.raises(UnconfiguredProviderError) as exc:
        factory.create(PaymentProvider.STRIPE)
    assert exc.value.status_code == 400
    assert exc.value.code == "provider_not_configured"


def test_create_accepts_any_case(fake_gateway):
    factory = PaymentGatewayFactory({PaymentProvider.STRIPE: fake_gateway})
    assert factory.create(" Stripe ") is fake_gateway


def test_create_unknown_provider(fake_gateway):
    factory = PaymentGatewayFactory({PaymentProvider.STRIPE: fake_gateway})
    with pytest.raises(UnknownProviderError) as exc:
        factory.create("paddle")
    assert exc.value.status_code == 404


def test_register_overrides_adapter(fake_gateway):
    factory = PaymentGatewayFactory()
    factory.register(PaymentProvider.STRIPE, fake_gateway)
    assert factory.create("stripe") is fake_gateway
