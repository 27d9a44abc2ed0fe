"""
Scheduled Jobs
==============

Background tasks for maintenance operations:
- Expiry of subscriptions whose paid or grace period ended
- Replay / discard of buffered store notifications
- Monthly usage counter reset
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import RepositoryError
from app.models.subscription import (
    EventSource,
    SubscriptionEventType,
    SubscriptionStatus,
)
from app.services.cache import CacheInvalidator
from app.services.reconciliation import ReconciliationEngine, SubscriptionEvent
from app.services.store_validation import StoreValidators
from app.services.subscription_repository import SubscriptionRepository
from app.services.usage_tracker import UsageTracker
from app.services.user_notices import publish_notice
from app.services.webhook_ingestion import WebhookIngestionService
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Statuses that grant access until the expiry passes
LAPSABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.GRACE_PERIOD,
)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        db: AsyncSession,
        validators: Optional[StoreValidators] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.validators = validators
        self.clock = clock
        self.repository = SubscriptionRepository(db)

    async def expire_lapsed_subscriptions(self, batch_size: int = 500) -> dict:
        """
        Move subscriptions past their expiry to EXPIRED.

        Run every few minutes. Entitlement checks already compare expiry
        against now, so this only brings the stored status in line and
        emits the expiry notice. The derived event never moves the
        watermark, so a late store event still applies afterwards.
        """
        now = self.clock()
        engine = ReconciliationEngine(self.repository, clock=self.clock)

        lapsed = [
            (subscription.user_id, subscription.platform, subscription.expiry_date)
            for subscription in await self.repository.list_lapsed(now, LAPSABLE_STATUSES, limit=batch_size)
        ]

        processed = 0
        errors = []

        for user_id, platform, expiry_date in lapsed:
            event = SubscriptionEvent(
                kind=SubscriptionEventType.EXPIRED,
                event_time=now,
                expiry_date=expiry_date,
            )
            try:
                outcome = await engine.apply_event(user_id, event, source=EventSource.HOUSEKEEPING)
                await self.db.commit()
            except RepositoryError as e:
                await self.db.rollback()
                logger.error("Failed to expire subscription for user %s: %s", user_id, e)
                errors.append({"user_id": user_id, "error": str(e)})
                continue

            if outcome.applied:
                processed += 1
                await CacheInvalidator.on_subscription_change(user_id)
                await publish_notice(user_id, outcome.notice, platform=platform.value)

        if processed:
            logger.info("Expired %d lapsed subscriptions", processed)

        return {
            "job": "expire_lapsed_subscriptions",
            "processed": processed,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def retry_pending_notifications(self, batch_size: int = 200) -> dict:
        """
        Replay buffered notifications whose subscription now exists and
        discard the ones that waited longer than the pending window.

        Run every few minutes.
        """
        now = self.clock()
        ingestion = WebhookIngestionService(self.db, self.validators, clock=self.clock)

        summary = await ingestion.process_pending(limit=batch_size)
        await self.db.commit()

        return {
            "job": "retry_pending_notifications",
            **summary,
            "run_at": now.isoformat(),
        }

    async def reset_usage_counters(self, batch_size: int = 1000) -> dict:
        """
        Archive and zero usage counters from the previous month.

        Run on first day of each month at 00:00 UTC. Counters are also
        rolled over lazily on first use, so a missed run loses nothing.
        """
        now = self.clock()
        tracker = UsageTracker(self.db, clock=self.clock)

        reset = await tracker.reset_stale_counters(limit=batch_size)
        await self.db.commit()

        return {
            "job": "reset_usage_counters",
            "reset": reset,
            "run_at": now.isoformat(),
        }


# Job runner functions (can be called from scheduler like APScheduler or Celery)

async def run_expiration_check(db: AsyncSession) -> dict:
    """Run subscription expiry sweep."""
    service = ScheduledJobService(db)
    return await service.expire_lapsed_subscriptions()


async def run_pending_notification_retry(
    db: AsyncSession,
    validators: Optional[StoreValidators] = None,
) -> dict:
    """Run pending notification replay."""
    service = ScheduledJobService(db, validators)
    return await service.retry_pending_notifications()


async def run_monthly_usage_reset(db: AsyncSession) -> dict:
    """Run monthly usage counter reset."""
    service = ScheduledJobService(db)
    return await service.reset_usage_counters()
