from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    String,
    Uuid as PG_UUID,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from paygate.shared.db.base import Base


class MappingEntityType(str, Enum):
    """Internal entity kinds that can be linked to a provider object."""

    ACCOUNT = "account"
    WORKSPACE = "workspace"
    PLAN = "plan"
    PLAN_PRICE = "plan_price"
    SUBSCRIPTION = "subscription"


class PaymentProviderMapping(Base):
    """
    Polymorphic link between an internal entity and its id at a payment provider.

    Rows are never updated in place on re-link: the previous row is deactivated
    and a new one inserted, so inactive rows form the link history. The partial
    unique index allows one active row per (entity_type, entity_id, provider).
    """

    __tablename__ = "payment_provider_mappings"
    __table_args__ = (
        Index(
            "uq_ppm_active_entity_provider",
            "entity_type",
            "entity_id",
            "provider",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_ppm_provider_provider_id", "provider", "provider_id"),
        Index("idx_ppm_entity", "entity_type", "entity_id"),
        CheckConstraint(
            "entity_type IN ('account', 'workspace', 'plan', 'plan_price', 'subscription')",
            name="entity_type_valid",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # `metadata` is reserved on declarative classes
    metadata_: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql"), default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentProviderMapping {self.entity_type}:{self.entity_id} "
            f"{self.provider}:{self.provider_id} active={self.is_active}>"
        )
