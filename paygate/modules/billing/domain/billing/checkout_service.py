"""
Checkout and customer-portal orchestration.

Users, workspaces, accounts and billing permissions live outside this
service and are reached through the BillingDirectory protocol. Plans,
prices, subscriptions and provider mappings are local.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.catalog import Plan, PlanPrice
from paygate.models.payment_provider_mapping import (
    MappingEntityType,
    PaymentProviderMapping,
)
from paygate.modules.billing.domain.billing.exceptions import (
    MappingNotFoundError,
    UnsupportedCapabilityError,
)
from paygate.modules.billing.domain.billing.mapping_repository import (
    PaymentProviderMappingRepository,
)
from paygate.modules.billing.domain.billing.subscription_repository import (
    find_latest_by_workspace,
)
from paygate.modules.billing.domain.gateway.base import (
    CheckoutParams,
    CheckoutResult,
    PaymentGateway,
    PaymentProvider,
    PortalResult,
)
from paygate.modules.billing.domain.gateway.factory import PaymentGatewayFactory
from paygate.shared.core.config import Settings, get_settings
from paygate.shared.core.exceptions import (
    AuthorizationError,
    BillingError,
    ConflictError,
    ResourceNotFoundError,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class DirectoryUser:
    id: str
    email: str
    full_name: Optional[str] = None


@dataclass(frozen=True)
class DirectoryWorkspace:
    id: str
    account_id: str
    name: Optional[str] = None


@dataclass(frozen=True)
class DirectoryAccount:
    id: str
    name: Optional[str] = None


class BillingDirectory(Protocol):
    """Lookups the host application provides for users, workspaces and accounts."""

    async def get_user(self, user_id: str) -> Optional[DirectoryUser]: ...

    async def get_workspace(self, workspace_id: str) -> Optional[DirectoryWorkspace]: ...

    async def get_account(self, account_id: str) -> Optional[DirectoryAccount]: ...

    async def can_manage_billing(self, user: DirectoryUser, workspace: DirectoryWorkspace) -> bool: ...


class BillingService:
    def __init__(
        self,
        session: AsyncSession,
        directory: BillingDirectory,
        gateway_factory: PaymentGatewayFactory,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.directory = directory
        self.gateway_factory = gateway_factory
        self.settings = settings or get_settings()
        self.mappings = PaymentProviderMappingRepository(session)

    async def _resolve_context(self, user_id: str, workspace_id: str) -> tuple[DirectoryUser, DirectoryWorkspace, DirectoryAccount]:
        user = await self.directory.get_user(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found", details={"user_id": user_id})
        workspace = await self.directory.get_workspace(workspace_id)
        if workspace is None:
            raise ResourceNotFoundError(
                "Workspace not found", details={"workspace_id": workspace_id}
            )
        if not await self.directory.can_manage_billing(user, workspace):
            raise AuthorizationError(
                "Not allowed to manage billing for this workspace",
                details={"workspace_id": workspace_id},
            )
        account = await self.directory.get_account(workspace.account_id)
        if account is None:
            raise ResourceNotFoundError(
                "Account not found", details={"account_id": workspace.account_id}
            )
        return user, workspace, account

    def _billing_entity(self, account: DirectoryAccount, workspace: DirectoryWorkspace) -> tuple[str, str]:
        if self.settings.BILLING_SCOPE == MappingEntityType.WORKSPACE.value:
            return MappingEntityType.WORKSPACE.value, workspace.id
        return MappingEntityType.ACCOUNT.value, account.id

    async def _current_plan_code(self, workspace_id: str) -> Optional[str]:
        subscription = await find_latest_by_workspace(
            self.session, workspace_id, exclude_terminal=True
        )
        if subscription is None:
            return None
        result = await self.session.execute(
            select(Plan.code)
            .join(PlanPrice, PlanPrice.plan_id == Plan.id)
            .where(PlanPrice.id == subscription.plan_price_id)
        )
        return result.scalar_one_or_none()

    async def _resolve_customer(
        self,
        gateway: PaymentGateway,
        provider: str,
        entity_type: str,
        entity_id: str,
        user: DirectoryUser,
    ) -> str:
        mapping = await self.mappings.find_active_by_entity_and_provider(
            entity_type, entity_id, provider
        )
        if mapping is not None:
            return mapping.provider_id

        customer = await gateway.create_customer(
            user.email,
            user.full_name or user.email,
            {"entityType": entity_type, "entityId": entity_id},
        )
        try:
            await self.mappings.create(entity_type, entity_id, provider, customer.id)
            await self.session.commit()
        except IntegrityError:
            # A concurrent checkout linked a customer first; use that one
            await self.session.rollback()
            winner: Optional[PaymentProviderMapping] = await self.mappings.find_active_by_entity_and_provider(
                entity_type, entity_id, provider
            )
            if winner is None:
                raise
            logger.warning(
                "billing_customer_mapping_race",
                entity_type=entity_type,
                entity_id=entity_id,
                discarded_customer_id=customer.id,
            )
            return winner.provider_id
        logger.info(
            "billing_customer_created",
            provider=provider,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return customer.id

    async def create_checkout_session(
        self,
        user_id: str,
        workspace_id: str,
        plan_code: str,
        provider: Any = PaymentProvider.STRIPE,
    ) -> CheckoutResult:
        user, workspace, account = await self._resolve_context(user_id, workspace_id)

        plan = (
            await self.session.execute(
                select(Plan).where(Plan.code == plan_code, Plan.is_active.is_(True))
            )
        ).scalar_one_or_none()
        if plan is None:
            raise BillingError(
                f"Plan '{plan_code}' not found", code="plan_not_found"
            )

        if await self._current_plan_code(workspace.id) == plan_code:
            raise ConflictError(
                "Workspace already has this plan",
                code="plan_already_active",
                details={"workspace_id": workspace.id, "plan_code": plan_code},
            )

        resolved = PaymentProvider.parse(provider)
        gateway = self.gateway_factory.create(resolved)

        plan_price = (
            await self.session.execute(
                select(PlanPrice)
                .where(PlanPrice.plan_id == plan.id, PlanPrice.is_current.is_(True))
                .order_by(PlanPrice.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if plan_price is None:
            raise BillingError(
                f"Plan '{plan_code}' has no active price configured",
                code="plan_price_missing",
            )
        price_mapping = await self.mappings.find_active_by_entity_and_provider(
            MappingEntityType.PLAN_PRICE, plan_price.id, resolved
        )
        if price_mapping is None:
            raise MappingNotFoundError(
                f"Plan '{plan_code}' is not linked to the {resolved.value} gateway. "
                f"Link it from the admin panel (POST /api/v1/billing/admin/plans/{plan.id}/link-gateway).",
                details={"plan_id": plan.id, "plan_price_id": plan_price.id, "provider": resolved.value},
            )

        entity_type, entity_id = self._billing_entity(account, workspace)
        customer_id = await self._resolve_customer(
            gateway, resolved.value, entity_type, entity_id, user
        )

        result = await gateway.create_checkout_session(
            CheckoutParams(
                customer_id=customer_id,
                price_id=price_mapping.provider_id,
                entity_id=workspace.id,
                entity_type=MappingEntityType.WORKSPACE.value,
                success_url=self.settings.checkout_success_url,
                cancel_url=self.settings.checkout_cancel_url,
                metadata={
                    "planCode": plan_code,
                    "planPriceId": plan_price.id,
                    "accountId": account.id,
                    "billingEntityType": entity_type,
                    "billingEntityId": entity_id,
                },
            )
        )
        logger.info(
            "checkout_session_created",
            provider=resolved.value,
            workspace_id=workspace.id,
            plan_code=plan_code,
            session_id=result.session_id,
        )
        return result

    async def create_portal_session(
        self,
        user_id: str,
        workspace_id: str,
        provider: Any = PaymentProvider.STRIPE,
    ) -> PortalResult:
        resolved = PaymentProvider.parse(provider)
        if resolved is not PaymentProvider.STRIPE:
            raise UnsupportedCapabilityError(resolved.value, "Customer portal")

        _, workspace, account = await self._resolve_context(user_id, workspace_id)
        gateway = self.gateway_factory.create(resolved)

        entity_type, entity_id = self._billing_entity(account, workspace)
        mapping = await self.mappings.find_active_by_entity_and_provider(
            entity_type, entity_id, resolved
        )
        if mapping is None:
            raise BillingError(
                "No billing customer exists yet; complete a checkout first",
                code="billing_customer_missing",
                details={"entity_type": entity_type, "entity_id": entity_id},
            )

        result = await gateway.create_portal_session(
            mapping.provider_id, self.settings.billing_portal_return_url
        )
        logger.info(
            "portal_session_created",
            provider=resolved.value,
            workspace_id=workspace.id,
        )
        return result
