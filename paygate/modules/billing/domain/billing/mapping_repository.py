from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.payment_provider_mapping import (
    MappingEntityType,
    PaymentProviderMapping,
)

logger = structlog.get_logger()

EntityTypeLike = Union[MappingEntityType, str]


def _entity_type(value: EntityTypeLike) -> str:
    # Closed set: raises ValueError for anything outside MappingEntityType
    return MappingEntityType(value).value


def _provider(value: Any) -> str:
    return str(getattr(value, "value", value))


class PaymentProviderMappingRepository:
    """
    Access to `payment_provider_mappings`.

    Writes only flush; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_entity_type_and_id(
        self, entity_type: EntityTypeLike, entity_id: str
    ) -> List[PaymentProviderMapping]:
        result = await self.session.execute(
            select(PaymentProviderMapping)
            .where(
                PaymentProviderMapping.entity_type == _entity_type(entity_type),
                PaymentProviderMapping.entity_id == str(entity_id),
            )
            .order_by(PaymentProviderMapping.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_by_provider_and_provider_id(
        self,
        provider: Any,
        provider_id: str,
        entity_type: Optional[EntityTypeLike] = None,
    ) -> Optional[PaymentProviderMapping]:
        """Reverse lookup; the active row wins over historical ones."""
        stmt = select(PaymentProviderMapping).where(
            PaymentProviderMapping.provider == _provider(provider),
            PaymentProviderMapping.provider_id == str(provider_id),
        )
        if entity_type is not None:
            stmt = stmt.where(
                PaymentProviderMapping.entity_type == _entity_type(entity_type)
            )
        stmt = stmt.order_by(
            PaymentProviderMapping.is_active.desc(),
            PaymentProviderMapping.created_at.desc(),
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_entity_and_provider(
        self, entity_type: EntityTypeLike, entity_id: str, provider: Any
    ) -> Optional[PaymentProviderMapping]:
        result = await self.session.execute(
            select(PaymentProviderMapping)
            .where(
                PaymentProviderMapping.entity_type == _entity_type(entity_type),
                PaymentProviderMapping.entity_id == str(entity_id),
                PaymentProviderMapping.provider == _provider(provider),
            )
            .order_by(PaymentProviderMapping.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_active_by_entity_and_provider(
        self, entity_type: EntityTypeLike, entity_id: str, provider: Any
    ) -> Optional[PaymentProviderMapping]:
        result = await self.session.execute(
            select(PaymentProviderMapping).where(
                PaymentProviderMapping.entity_type == _entity_type(entity_type),
                PaymentProviderMapping.entity_id == str(entity_id),
                PaymentProviderMapping.provider == _provider(provider),
                PaymentProviderMapping.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        entity_type: EntityTypeLike,
        entity_id: str,
        provider: Any,
        provider_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> PaymentProviderMapping:
        """Always inserts a new row; existing rows are never reused."""
        mapping = PaymentProviderMapping(
            entity_type=_entity_type(entity_type),
            entity_id=str(entity_id),
            provider=_provider(provider),
            provider_id=str(provider_id),
            is_active=is_active,
            metadata_=dict(metadata or {}),
        )
        self.session.add(mapping)
        await self.session.flush()
        logger.info(
            "payment_mapping_created",
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            provider=mapping.provider,
            provider_id=mapping.provider_id,
        )
        return mapping

    async def deactivate_by_entity(
        self,
        entity_type: EntityTypeLike,
        entity_id: str,
        provider: Optional[Any] = None,
    ) -> int:
        stmt = (
            update(PaymentProviderMapping)
            .where(
                PaymentProviderMapping.entity_type == _entity_type(entity_type),
                PaymentProviderMapping.entity_id == str(entity_id),
                PaymentProviderMapping.is_active.is_(True),
            )
            .values(is_active=False, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        if provider is not None:
            stmt = stmt.where(PaymentProviderMapping.provider == _provider(provider))
        result = await self.session.execute(stmt)
        count = int(result.rowcount or 0)
        if count:
            logger.info(
                "payment_mapping_deactivated",
                entity_type=_entity_type(entity_type),
                entity_id=str(entity_id),
                provider=_provider(provider) if provider is not None else None,
                count=count,
            )
        return count

    async def replace_mapping(
        self,
        entity_type: EntityTypeLike,
        entity_id: str,
        provider: Any,
        provider_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentProviderMapping:
        """
        Deactivate the entity's active mapping for `provider` and insert the new one.

        Both statements run in one savepoint, so committed state never holds
        zero or two active rows for the tuple.
        """
        async with self.session.begin_nested():
            await self.deactivate_by_entity(entity_type, entity_id, provider)
            return await self.create(
                entity_type, entity_id, provider, provider_id, metadata=metadata
            )
