"""
Subscription Service
====================

The synchronous path: a client hands over a purchase artifact right after
buying, we validate it with the store and reconcile the result.

Validation happens before any database work. A rejected or unconfirmed
purchase leaves the stored subscription untouched.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PurchaseValidationError
from app.models.subscription import SubscriptionLog
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.reconciliation import ReconcileOutcome, ReconciliationEngine
from app.services.store_validation import PurchaseArtifact, StoreValidators
from app.services.subscription_repository import SubscriptionRepository
from app.services.usage_tracker import UsageTracker
from app.services.user_notices import publish_notice
from app.services.webhook_ingestion import WebhookIngestionService
from app.utils.helpers import format_datetime, parse_date, utc_now

logger = logging.getLogger(__name__)


def serialize_subscription(subscription) -> dict[str, Any]:
    """API view of a stored subscription."""
    return {
        "user_id": subscription.user_id,
        "platform": subscription.platform.value,
        "product_id": subscription.product_id,
        "tier": subscription.tier.value,
        "status": subscription.status.value,
        "expiry_date": format_datetime(subscription.expiry_date),
        "auto_renewing": subscription.auto_renewing,
        "last_verified_at": format_datetime(subscription.last_verified_at),
        "updated_at": format_datetime(subscription.updated_at),
    }


def serialize_log(entry: SubscriptionLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "platform": entry.platform.value,
        "product_id": entry.product_id,
        "old_status": entry.old_status.value if entry.old_status else None,
        "new_status": entry.new_status.value,
        "old_tier": entry.old_tier.value if entry.old_tier else None,
        "new_tier": entry.new_tier.value,
        "event_type": entry.event_type.value,
        "source": entry.source.value,
        "event_time": format_datetime(entry.event_time),
        "expiry_date": format_datetime(entry.expiry_date),
        "timestamp": format_datetime(entry.timestamp),
    }


class SubscriptionService:
    """Purchase verification, status and history for one request."""

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
        self.engine = ReconciliationEngine(self.repository, clock=clock)

    async def verify_purchase(self, user_id: str, artifact: PurchaseArtifact) -> ReconcileOutcome:
        """
        Validate a purchase with its store and reconcile the user's record.

        Raises:
            PurchaseValidationError: the store said no, or could not be reached.
            RepositoryError: persistence failed; nothing was committed.
        """
        if self.validators is None:
            raise RuntimeError("SubscriptionService needs store validators to verify purchases")

        result = await self.validators.validate(artifact)
        if not result.is_valid:
            logger.info(
                "Rejected %s purchase for user %s: not currently valid",
                result.platform.value,
                user_id,
            )
            raise PurchaseValidationError(
                "Purchase is not valid",
                reason=PurchaseValidationError.REJECTED,
                platform=result.platform.value,
                store_status=result.raw_status,
            )

        outcome = await self.engine.apply_validation(user_id, result)

        # Notifications that arrived before the record existed
        ingestion = WebhookIngestionService(self.db, self.validators, clock=self.clock)
        replayed = await ingestion.replay_pending(result.platform, result.purchase_token)
        if replayed:
            outcome.subscription = await self.repository.get_by_user(user_id)

        await self.db.commit()

        await CacheInvalidator.on_subscription_change(user_id)
        notices = [outcome.notice] + [r.notice for r in replayed if r.applied]
        for notice in notices:
            await publish_notice(user_id, notice, platform=result.platform.value)

        logger.info(
            "Verified %s purchase for user %s: %s (%d pending replayed)",
            result.platform.value,
            user_id,
            outcome.outcome.value,
            len(replayed),
        )
        return outcome

    async def get_status(self, user_id: str) -> dict[str, Any]:
        """Subscription details, cached for a short while."""
        cache_key = CacheKeys.subscription_details(user_id)
        cached = await CacheManager.get(cache_key)
        if cached is not None:
            return cached

        details = await UsageTracker(self.db, clock=self.clock).get_subscription_details(user_id)
        await self.db.commit()

        # Never serve a cached "active" past the expiry
        ttl = CacheManager.TTL_SHORT
        if details["is_active"] and details["expiry_date"]:
            remaining = (parse_date(details["expiry_date"]) - self.clock()).total_seconds()
            ttl = max(1, min(ttl, int(remaining)))

        await CacheManager.set(cache_key, details, ttl=ttl)
        return details

    async def get_history(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        entries = await self.repository.list_logs(user_id, since=since, until=until, limit=limit)
        return [serialize_log(entry) for entry in entries]
