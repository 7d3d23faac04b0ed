"""
Global pytest fixtures for the Paygate test suite.

Provides:
- Async database session on a temporary SQLite file
- In-memory queue, recording event bus and a fake payment gateway
- Stripe-format webhook signing helpers
- Async HTTP client bound to the real app
"""
import os

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_paygate"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_paygate"
os.environ["FRONTEND_URL"] = "https://app.example.com"
os.environ["ENVIRONMENT"] = "development"

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest
import pytest_asyncio

from paygate.models import (  # noqa: F401
    DunningRecord,
    PaymentProviderMapping,
    Plan,
    PlanPrice,
    Subscription,
    WebhookEvent,
)
from paygate.modules.billing.domain.billing.checkout_service import (
    DirectoryAccount,
    DirectoryUser,
    DirectoryWorkspace,
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
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.modules.billing.domain.gateway.stripe_adapter import StripeGateway
from paygate.shared.core.config import GatewayConfig
from paygate.shared.core.events import EventBus
from paygate.shared.core.queue import QueueService

STRIPE_WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


# ============================================================================
# Test doubles
# ============================================================================

class FakeQueueService(QueueService):
    """Collects enqueued jobs instead of talking to a broker."""

    def __init__(self) -> None:
        self.jobs: List[Tuple[str, Dict[str, Any]]] = []

    async def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        self.jobs.append((queue_name, payload))
        return f"job-{len(self.jobs)}"

    def payloads(self, queue_name: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.jobs if name == queue_name]


class RecordingEventBus(EventBus):
    def __init__(self) -> None:
        super().__init__()
        self.published: List[Any] = []

    async def publish(self, event: Any) -> None:
        self.published.append(event)
        await super().publish(event)

    def of_type(self, event_type: type) -> List[Any]:
        return [e for e in self.published if isinstance(e, event_type)]


class FakeGateway(PaymentGateway):
    """
    Scriptable gateway. Signature verification is the real Stripe check so
    signed test payloads behave exactly like production deliveries.
    """

    provider = PaymentProvider.STRIPE

    def __init__(self, webhook_secret: str = STRIPE_WEBHOOK_SECRET) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self.products: List[GatewayProduct] = [
            GatewayProduct(id="prod_pro", name="Pro", description="Pro plan", active=True),
        ]
        self.prices: Dict[str, List[GatewayPrice]] = {
            "prod_pro": [
                GatewayPrice(
                    id="price_xyz",
                    product_id="prod_pro",
                    unit_amount=4900,
                    currency="usd",
                    interval="month",
                    active=True,
                ),
                GatewayPrice(
                    id="price_xyz_annual",
                    product_id="prod_pro",
                    unit_amount=49000,
                    currency="usd",
                    interval="year",
                    active=False,
                ),
            ]
        }
        self.health = GatewayHealthResult(healthy=True, latency_ms=12.5)
        self._customer_seq = 0
        self._verifier = StripeGateway(
            GatewayConfig(
                provider="stripe",
                secret_key="sk_test_paygate",
                webhook_secret=webhook_secret,
            )
        )

    async def create_customer(
        self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> CustomerResult:
        self._customer_seq += 1
        self.calls.append(("create_customer", {"email": email, "name": name, "metadata": metadata}))
        return CustomerResult(
            id=f"cus_{self._customer_seq}", email=email, name=name, metadata=dict(metadata or {})
        )

    async def update_customer(self, customer_id: str, data: CustomerData) -> CustomerResult:
        self.calls.append(("update_customer", {"customer_id": customer_id, **data.to_params()}))
        return CustomerResult(id=customer_id, email=data.email, name=data.name)

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutResult:
        self.calls.append(("create_checkout_session", params))
        return CheckoutResult(url="https://checkout.stripe.test/c/cs_test_1", session_id="cs_test_1")

    async def create_portal_session(self, customer_id: str, return_url: str) -> PortalResult:
        self.calls.append(("create_portal_session", {"customer_id": customer_id, "return_url": return_url}))
        return PortalResult(url=f"https://billing.stripe.test/p/{customer_id}")

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> SubscriptionResult:
        self.calls.append(("create_subscription", {"customer_id": customer_id, "price_id": price_id}))
        return SubscriptionResult(id="sub_new", status="active", customer_id=customer_id)

    async def cancel_subscription(self, subscription_id: str) -> SubscriptionResult:
        self.calls.append(("cancel_subscription", subscription_id))
        return SubscriptionResult(id=subscription_id, status="canceled")

    async def list_products(self, active_only: bool = True) -> List[GatewayProduct]:
        self.calls.append(("list_products", {"active_only": active_only}))
        return [p for p in self.products if p.active or not active_only]

    async def list_prices(self, product_id: str, active_only: bool = True) -> List[GatewayPrice]:
        self.calls.append(("list_prices", {"product_id": product_id, "active_only": active_only}))
        return [p for p in self.prices.get(product_id, []) if p.active or not active_only]

    async def health_check(self) -> GatewayHealthResult:
        return self.health

    def verify_webhook_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> RawWebhookEvent:
        return self._verifier.verify_webhook_signature(payload, signature, secret)

    def called(self, name: str) -> List[Any]:
        return [args for call, args in self.calls if call == name]


class FakeDirectory:
    """In-memory users, workspaces and accounts for checkout flows."""

    def __init__(self) -> None:
        self.users = {
            "user-1": DirectoryUser(id="user-1", email="owner@example.com", full_name="Olivia Owner"),
            "user-2": DirectoryUser(id="user-2", email="viewer@example.com"),
        }
        self.workspaces = {
            "workspace-1": DirectoryWorkspace(id="workspace-1", account_id="account-1"),
        }
        self.accounts = {"account-1": DirectoryAccount(id="account-1", name="Acme")}
        self.billing_managers = {("user-1", "workspace-1")}

    async def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        return self.users.get(user_id)

    async def get_workspace(self, workspace_id: str) -> Optional[DirectoryWorkspace]:
        return self.workspaces.get(workspace_id)

    async def get_account(self, account_id: str) -> Optional[DirectoryAccount]:
        return self.accounts.get(account_id)

    async def can_manage_billing(self, user: DirectoryUser, workspace: DirectoryWorkspace) -> bool:
        return (user.id, workspace.id) in self.billing_managers


# ============================================================================
# Webhook signing helpers
# ============================================================================

def stripe_event_body(event_id: str, event_type: str, data_object: Dict[str, Any]) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }
    ).encode()


def stripe_signature_header(
    payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """`Stripe-Signature` header value: t=<ts>,v1=<hex hmac-sha256 of "ts.payload">."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def sign_stripe():
    return stripe_signature_header


@pytest.fixture
def make_stripe_event():
    return stripe_event_body


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_url = f"sqlite+aiosqlite:///{tmp_path / f'test_{uuid4().hex}.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine):
    """Create database tables and return a session factory bound to them."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from paygate.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator:
    """Provide an async session with proper cleanup."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def catalog(db_session):
    """Two plans; `pro` is the one linked to the fake gateway in most tests."""
    starter = Plan(id="plan-0", code="starter", name="Starter")
    pro = Plan(id="plan-1", code="pro", name="Pro", description="For growing teams")
    db_session.add_all([starter, pro])
    await db_session.flush()
    db_session.add_all(
        [
            PlanPrice(id="plan_price-0", plan_id="plan-0", amount=1900, currency="usd", interval="month"),
            PlanPrice(id="plan_price-1", plan_id="plan-1", amount=4900, currency="usd", interval="month"),
            PlanPrice(
                id="plan_price-1-old",
                plan_id="plan-1",
                amount=3900,
                currency="usd",
                interval="month",
                is_current=False,
            ),
        ]
    )
    await db_session.commit()
    return {"starter": starter, "pro": pro}


@pytest_asyncio.fixture
async def linked_catalog(db_session, catalog):
    """`pro` linked to prod_pro / price_xyz and `starter` to price_starter."""
    from paygate.modules.billing.domain.billing.mapping_repository import (
        PaymentProviderMappingRepository,
    )

    repo = PaymentProviderMappingRepository(db_session)
    await repo.create("plan", "plan-1", "stripe", "prod_pro")
    await repo.create("plan_price", "plan_price-1", "stripe", "price_xyz")
    await repo.create("plan", "plan-0", "stripe", "prod_starter")
    await repo.create("plan_price", "plan_price-0", "stripe", "price_starter")
    await db_session.commit()
    return catalog


@pytest.fixture
def make_subscription(db_session):
    """Insert a subscription (under tenant scope) plus its provider mapping."""
    from paygate.modules.billing.domain.billing.mapping_repository import (
        PaymentProviderMappingRepository,
    )
    from paygate.shared.db.session import tenant_scope

    async def _make(
        status: str = "active",
        provider_subscription_id: Optional[str] = "sub_abc",
        workspace_id: str = "workspace-1",
        account_id: str = "account-1",
        plan_price_id: str = "plan_price-1",
    ) -> Subscription:
        subscription = Subscription(
            id=uuid4(),
            account_id=account_id,
            workspace_id=workspace_id,
            plan_price_id=plan_price_id,
            status=status,
            current_period_end=datetime(2026, 11, 1, tzinfo=timezone.utc),
        )
        async with tenant_scope(db_session, account_id):
            db_session.add(subscription)
        if provider_subscription_id:
            repo = PaymentProviderMappingRepository(db_session)
            await repo.replace_mapping(
                "subscription",
                workspace_id,
                "stripe",
                provider_subscription_id,
                metadata={"subscriptionId": str(subscription.id)},
            )
            await db_session.commit()
        return subscription

    return _make


# ============================================================================
# Service doubles
# ============================================================================

@pytest.fixture
def fake_queue() -> FakeQueueService:
    return FakeQueueService()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateway_factory(fake_gateway) -> PaymentGatewayFactory:
    return PaymentGatewayFactory({PaymentProvider.STRIPE: fake_gateway})


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Use the real Paygate app for integration tests."""
    from paygate.main import app as paygate_app

    return paygate_app


class _Principal:
    def __init__(self, user_id: str, role: str) -> None:
        self.id = user_id
        self.role = role


@pytest_asyncio.fixture
async def async_client(
    app, db_session, gateway_factory, fake_queue, event_bus, directory
) -> AsyncGenerator:
    """
    Async test client. Overrides DB, gateway, queue and event bus dependencies.

    Requests authenticate with `X-Test-User` / `X-Test-Role` headers, which a
    test-only middleware turns into `request.state.user`.
    """
    from httpx import AsyncClient, ASGITransport
    from paygate.modules.billing.api.v1 import deps
    from paygate.shared.db.session import get_db

    async def _override_db():
        yield db_session

    overrides = {
        get_db: _override_db,
        deps.gateway_factory: lambda: gateway_factory,
        deps.queue_service: lambda: fake_queue,
        deps.event_bus: lambda: event_bus,
    }
    old_overrides = dict(app.dependency_overrides)
    app.dependency_overrides.update(overrides)
    app.state.billing_directory = directory

    transport = ASGITransport(app=_AuthHeaderApp(app))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.dependency_overrides.update(old_overrides)
    app.state.billing_directory = None


class _AuthHeaderApp:
    """ASGI wrapper standing in for the host application's auth middleware."""

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            headers = dict(scope.get("headers") or [])
            user_id = headers.get(b"x-test-user")
            if user_id:
                role = headers.get(b"x-test-role", b"member").decode()
                state = scope.setdefault("state", {})
                state["user"] = _Principal(user_id.decode(), role)
        await self.app(scope, receive, send)
