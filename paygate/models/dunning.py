from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from paygate.shared.db.base import Base


class DunningRecord(Base):
    """Consecutive payment failures tracked for one subscription."""

    __tablename__ = "dunning_records"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_failure_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    last_failure_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
