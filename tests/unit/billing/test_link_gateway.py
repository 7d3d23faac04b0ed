import pytest

from paygate.modules.billing.domain.billing.events import GatewayLinkedEvent
from paygate.modules.billing.domain.billing.exceptions import UnconfiguredProviderError
from paygate.modules.billing.domain.billing.link_gateway import PriceLink, link_gateway_plan
from paygate.modules.billing.domain.billing.mapping_repository import (
    PaymentProviderMappingRepository,
)
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.exceptions import BillingError, ResourceNotFoundError


@pytest.mark.asyncio
async def test_link_plan_and_prices(db_session, gateway_factory, event_bus, catalog):
    await link_gateway_plan(
        db_session,
        gateway_factory,
        event_bus,
        "plan-1",
        "stripe",
        "prod_pro",
        [PriceLink("plan_price-1", "price_xyz")],
        linked_by="admin-1",
    )

    repo = PaymentProviderMappingRepository(db_session)
    plan_mapping = await repo.find_active_by_entity_and_provider("plan", "plan-1", "stripe")
    price_mapping = await repo.find_active_by_entity_and_provider("plan_price", "plan_price-1", "stripe")
    assert plan_mapping.provider_id == "prod_pro"
    assert price_mapping.provider_id == "price_xyz"

    [event] = event_bus.of_type(GatewayLinkedEvent)
    assert event.plan_id == "plan-1"
    assert event.price_ids == ["price_xyz"]


@pytest.mark.asyncio
async def test_relink_replaces_active_price(db_session, gateway_factory, event_bus, linked_catalog, fake_gateway):
    await link_gateway_plan(
        db_session,
        gateway_factory,
        event_bus,
        "plan-1",
        "Stripe",
        "prod_pro",
        [PriceLink("plan_price-1", "price_xyz_annual")],
    )

    repo = PaymentProviderMappingRepository(db_session)
    active = await repo.find_active_by_entity_and_provider("plan_price", "plan_price-1", "stripe")
    assert active.provider_id == "price_xyz_annual"
    history = await repo.find_by_entity_type_and_id("plan_price", "plan_price-1")
    assert sorted(m.provider_id for m in history) == ["price_xyz", "price_xyz_annual"]
    assert fake_gateway.called("list_prices") == [{"product_id": "prod_pro", "active_only": False}]


@pytest.mark.asyncio
async def test_link_plan_without_prices(db_session, gateway_factory, event_bus, catalog, fake_gateway):
    await link_gateway_plan(db_session, gateway_factory, event_bus, "plan-1", "stripe", "prod_pro")

    repo = PaymentProviderMappingRepository(db_session)
    assert (await repo.find_active_by_entity_and_provider("plan", "plan-1", "stripe")).provider_id == "prod_pro"
    assert fake_gateway.called("list_prices") == []


@pytest.mark.asyncio
async def test_link_unknown_plan(db_session, gateway_factory, event_bus, catalog):
    with pytest.raises(ResourceNotFoundError):
        await link_gateway_plan(db_session, gateway_factory, event_bus, "plan-404", "stripe", "prod_pro")


@pytest.mark.asyncio
async def test_link_rejects_price_of_another_plan(db_session, gateway_factory, event_bus, catalog):
    with pytest.raises(ResourceNotFoundError) as exc:
        await link_gateway_plan(
            db_session,
            gateway_factory,
            event_bus,
            "plan-1",
            "stripe",
            "prod_pro",
            [PriceLink("plan_price-0", "price_xyz")],
        )
    assert exc.value.details["plan_price_ids"] == ["plan_price-0"]


@pytest.mark.asyncio
async def test_link_unknown_product_writes_nothing(db_session, gateway_factory, event_bus, catalog):
    with pytest.raises(ResourceNotFoundError):
        await link_gateway_plan(db_session, gateway_factory, event_bus, "plan-1", "stripe", "prod_missing")

    repo = PaymentProviderMappingRepository(db_session)
    assert await repo.find_by_entity_type_and_id("plan", "plan-1") == []
    assert event_bus.published == []


@pytest.mark.asyncio
async def test_link_rejects_price_from_other_product(db_session, gateway_factory, event_bus, catalog):
    with pytest.raises(BillingError) as exc:
        await link_gateway_plan(
            db_session,
            gateway_factory,
            event_bus,
            "plan-1",
            "stripe",
            "prod_pro",
            [PriceLink("plan_price-1", "price_other")],
        )
    assert exc.value.code == "gateway_price_mismatch"


@pytest.mark.asyncio
async def test_link_requires_configured_provider(db_session, event_bus, catalog):
    with pytest.raises(UnconfiguredProviderError):
        await link_gateway_plan(db_session, PaymentGatewayFactory(), event_bus, "plan-1", "stripe", "prod_pro")
