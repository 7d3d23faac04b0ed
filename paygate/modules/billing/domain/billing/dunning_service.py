"""
Dunning Service - payment failure tracking and escalation

Failure state is persisted per subscription in `dunning_records` so every
worker replica shares one counter:
1. invoice.payment_failed increments the counter (first failure creates it)
2. A successful payment clears it
3. The periodic sweep suspends subscriptions past the grace period or retry ceiling
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.models.dunning import DunningRecord
from paygate.shared.core.config import Settings, get_settings
from paygate.shared.core.events import EventBus
from paygate.shared.core.ops_metrics import DUNNING_SUSPENSIONS

logger = structlog.get_logger()


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class FailureRecord:
    subscription_id: str
    failure_count: int
    first_failure_at: datetime
    last_failure_at: datetime


class DunningRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _bump(self, subscription_id: str, now: datetime) -> Optional[int]:
        result = await self.session.execute(
            update(DunningRecord)
            .where(DunningRecord.subscription_id == subscription_id)
            .values(
                failure_count=DunningRecord.failure_count + 1,
                last_failure_at=now,
            )
            .returning(DunningRecord.failure_count)
        )
        return result.scalar_one_or_none()

    async def increment(self, subscription_id: str, now: Optional[datetime] = None) -> int:
        """Atomically add one failure and return the new count."""
        now = now or datetime.now(timezone.utc)
        count = await self._bump(subscription_id, now)
        if count is not None:
            return int(count)

        try:
            async with self.session.begin_nested():
                self.session.add(
                    DunningRecord(
                        subscription_id=subscription_id,
                        failure_count=1,
                        first_failure_at=now,
                        last_failure_at=now,
                    )
                )
            return 1
        except IntegrityError:
            # Another worker inserted the first failure concurrently
            count = await self._bump(subscription_id, now)
            if count is None:
                raise
            return int(count)

    async def get(self, subscription_id: str) -> Optional[DunningRecord]:
        return await self.session.get(DunningRecord, subscription_id)

    async def list_all(self) -> List[DunningRecord]:
        result = await self.session.execute(
            select(DunningRecord).order_by(DunningRecord.first_failure_at)
        )
        return list(result.scalars().all())

    async def delete(self, subscription_id: str) -> bool:
        result = await self.session.execute(
            delete(DunningRecord).where(DunningRecord.subscription_id == subscription_id)
        )
        return bool(result.rowcount)


class DunningService:
    """
    Tracks consecutive payment failures and escalates to suspension.

    Thresholds come from DUNNING_GRACE_PERIOD_DAYS and DUNNING_MAX_RETRIES.
    """

    def __init__(
        self,
        session: AsyncSession,
        events: EventBus,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.events = events
        self.settings = settings or get_settings()
        self.repository = DunningRepository(session)

    @property
    def grace_period_days(self) -> int:
        return int(self.settings.DUNNING_GRACE_PERIOD_DAYS)

    @property
    def max_retries(self) -> int:
        return int(self.settings.DUNNING_MAX_RETRIES)

    async def record_failure(self, subscription_id: str) -> int:
        """Count one more failure. Runs inside the caller's transaction."""
        failure_count = await self.repository.increment(str(subscription_id))
        if failure_count == 1:
            logger.info("dunning_first_failure", subscription_id=str(subscription_id))
        else:
            logger.info(
                "dunning_failure_recorded",
                subscription_id=str(subscription_id),
                failure_count=failure_count,
            )
        return failure_count

    async def record_recovery(self, subscription_id: str) -> None:
        """Clear tracked failures. Idempotent when nothing is tracked."""
        cleared = await self.repository.delete(str(subscription_id))
        logger.info(
            "dunning_recovered",
            subscription_id=str(subscription_id),
            had_record=cleared,
        )

    async def get_failure_record(self, subscription_id: str) -> Optional[FailureRecord]:
        record = await self.repository.get(str(subscription_id))
        if record is None:
            return None
        return FailureRecord(
            subscription_id=record.subscription_id,
            failure_count=record.failure_count,
            first_failure_at=_as_utc(record.first_failure_at),
            last_failure_at=_as_utc(record.last_failure_at),
        )

    async def check_grace_periods(self, now: Optional[datetime] = None) -> List[str]:
        """
        Suspend every tracked subscription past the grace period or retry ceiling.

        Escalated records are removed whether or not the suspension applied.
        Returns the ids of subscriptions that were suspended.
        """
        from paygate.modules.billing.domain.billing.subscription_commands import (
            suspend_subscription,
        )
        from paygate.modules.billing.domain.billing.subscription_repository import (
            get_subscription,
        )

        now = now or datetime.now(timezone.utc)
        suspended: List[str] = []
        records = [
            (r.subscription_id, r.failure_count, _as_utc(r.first_failure_at))
            for r in await self.repository.list_all()
        ]

        for subscription_id, failure_count, first_failure_at in records:
            days_elapsed = (now - first_failure_at) // timedelta(days=1)
            if days_elapsed < self.grace_period_days and failure_count < self.max_retries:
                continue

            log = logger.bind(
                subscription_id=subscription_id,
                days_since_first_failure=days_elapsed,
                failure_count=failure_count,
            )
            log.info("dunning_grace_expired")
            try:
                subscription = await get_subscription(self.session, subscription_id)
                if subscription is not None and not subscription.is_terminal:
                    await suspend_subscription(
                        self.session,
                        subscription,
                        f"Grace period expired after {days_elapsed} days and {failure_count} failures",
                        self.events,
                    )
                    suspended.append(subscription_id)
                    DUNNING_SUSPENSIONS.inc()
                else:
                    log.info(
                        "dunning_suspension_skipped",
                        status=getattr(subscription, "status", None),
                    )
            except Exception as exc:
                await self.session.rollback()
                log.error("dunning_suspension_failed", error=str(exc), exc_info=True)

            await self.repository.delete(subscription_id)
            await self.session.commit()

        logger.info(
            "dunning_sweep_completed",
            tracked=len(records),
            suspended=len(suspended),
        )
        return suspended
