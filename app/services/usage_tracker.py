"""
Usage Tracker
=============

Entitlement resolution and metered feature usage.

- ``get_subscription_details``: access, effective tier, limits and usage
- ``record_usage``: atomic check-and-increment against the tier limit
- ``check_feature``: the same check without incrementing

Counters belong to the calendar month (UTC). A row whose ``last_reset``
is before the current month start is rolled over: its counts are copied
to ``feature_usage_history`` and zeroed. Rollover happens lazily on read
and in the monthly housekeeping job.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from fastapi import status
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.entitlements import (
    ALL_FEATURES,
    METERED_FEATURES,
    allows_usage,
    get_limit,
    get_required_tier_for_feature,
    get_tier_limits,
    is_unlimited,
)
from app.core.errors import AppException, ConcurrentUpdateError, ErrorCodes, FeatureLimitReached
from app.models.subscription import Subscription, SubscriptionTier
from app.models.usage import FeatureUsage, FeatureUsageHistory
from app.services.subscription_repository import (
    SubscriptionRepository,
    dialect_insert,
    repository_guard,
)
from app.utils.helpers import format_datetime, month_start, utc_now

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = tuple(METERED_FEATURES.values())

_ROLLOVER_ATTEMPTS = 3


def next_month_start(moment: datetime) -> datetime:
    start = month_start(moment)
    return month_start(start + timedelta(days=32))


def _unknown_feature(message: str) -> AppException:
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        code=ErrorCodes.FEATURE_UNKNOWN,
        message=message,
        field="feature",
    )


def usage_snapshot(usage: FeatureUsage) -> dict[str, Any]:
    data: dict[str, Any] = {column: getattr(usage, column) for column in COUNTER_COLUMNS}
    data["last_reset"] = format_datetime(usage.last_reset)
    return data


class UsageTracker:
    """Entitlements and usage counters for one session."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.subscriptions = SubscriptionRepository(db)

    # -------------------------------------------------------------------------
    # Entitlements
    # -------------------------------------------------------------------------

    @staticmethod
    def effective_tier(subscription: Optional[Subscription], now: datetime) -> SubscriptionTier:
        """The tier a user can use right now; FREE without current access."""
        if subscription is not None and subscription.is_active_at(now):
            return subscription.tier
        return SubscriptionTier.FREE

    async def resolve_tier(self, user_id: str) -> SubscriptionTier:
        subscription = await self.subscriptions.get_by_user(user_id)
        return self.effective_tier(subscription, self.clock())

    async def get_subscription_details(self, user_id: str) -> dict[str, Any]:
        """
        Current entitlement picture for a user.

        ``is_active`` compares expiry against now; the stored status alone
        never grants access.
        """
        now = self.clock()
        subscription = await self.subscriptions.get_by_user(user_id)
        tier = self.effective_tier(subscription, now)
        usage = await self.get_usage(user_id)

        details: dict[str, Any] = {
            "is_active": subscription is not None and subscription.is_active_at(now),
            "tier": tier.value,
            "subscription_tier": subscription.tier.value if subscription else None,
            "status": subscription.status.value if subscription else None,
            "platform": subscription.platform.value if subscription else None,
            "product_id": subscription.product_id if subscription else None,
            "expiry_date": format_datetime(subscription.expiry_date) if subscription else None,
            "auto_renewing": subscription.auto_renewing if subscription else False,
            "limits": dict(get_tier_limits(tier)),
            "usage": usage_snapshot(usage),
        }
        return details

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    async def get_usage(self, user_id: str) -> FeatureUsage:
        """Counters for the current period, creating or rolling them over as needed."""
        await self._ensure_row(user_id)

        for _ in range(_ROLLOVER_ATTEMPTS):
            usage = await self._load(user_id)
            if not await self._is_stale(usage) or await self._rollover(usage):
                return await self._load(user_id)

        # Never count against last month's row
        raise ConcurrentUpdateError(user_id, _ROLLOVER_ATTEMPTS, resource="Usage counters")

    async def record_usage(self, user_id: str, feature: str) -> dict[str, Any]:
        """
        Count one use of a metered feature.

        Raises:
            FeatureLimitReached: the tier's limit is used up. ``-1`` never is.
        """
        column_name = self._counter_for(feature)
        tier = await self.resolve_tier(user_id)
        limit = get_limit(tier, feature)

        await self.get_usage(user_id)

        table = FeatureUsage.__table__
        column = table.c[column_name]
        stmt = (
            update(table)
            .where(table.c.user_id == user_id)
            .values({column_name: column + 1, "updated_at": self.clock()})
        )
        if not is_unlimited(limit):
            stmt = stmt.where(column < limit)

        async with repository_guard("record_usage"):
            result = await self.db.execute(stmt)

        usage = await self._load(user_id)
        used = getattr(usage, column_name)
        if result.rowcount != 1:
            logger.info("User %s hit %s limit (%s/%s)", user_id, feature, used, limit)
            raise FeatureLimitReached(feature, tier, limit, used)

        return {
            "feature": feature,
            "tier": tier.value,
            "limit": limit,
            "used": used,
            "remaining": None if is_unlimited(limit) else max(limit - used, 0),
        }

    async def check_feature(self, user_id: str, feature: str) -> dict[str, Any]:
        """Whether one more use of ``feature`` would be allowed, without counting it."""
        if feature not in ALL_FEATURES:
            raise _unknown_feature(f"Unknown feature: {feature}")

        tier = await self.resolve_tier(user_id)
        limit = get_limit(tier, feature)

        used = None
        remaining = None
        if feature in METERED_FEATURES:
            usage = await self.get_usage(user_id)
            used = getattr(usage, METERED_FEATURES[feature])
            if not is_unlimited(limit):
                remaining = max(limit - used, 0)

        return {
            "feature": feature,
            "allowed": allows_usage(limit, used or 0),
            "tier": tier.value,
            "limit": limit,
            "used": used,
            "remaining": remaining,
            "required_tier": get_required_tier_for_feature(feature).value,
        }

    async def reset_stale_counters(self, limit: int = 1000) -> int:
        """Roll over every counter row left from a previous period."""
        period_start = month_start(self.clock())
        stmt = (
            select(FeatureUsage)
            .where(FeatureUsage.last_reset < period_start)
            .limit(limit)
        )
        async with repository_guard("list_stale_usage"):
            rows = list((await self.db.execute(stmt)).scalars().all())

        reset = 0
        for usage in rows:
            if await self._rollover(usage):
                reset += 1
        return reset

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _counter_for(feature: str) -> str:
        column = METERED_FEATURES.get(feature)
        if column is None:
            raise _unknown_feature(f"{feature} is not a metered feature")
        return column

    async def _ensure_row(self, user_id: str) -> None:
        table = FeatureUsage.__table__
        now = self.clock()
        stmt = (
            dialect_insert(self.db, table)
            .values(
                user_id=user_id,
                last_reset=now,
                created_at=now,
                updated_at=now,
                **{column: 0 for column in COUNTER_COLUMNS},
            )
            .on_conflict_do_nothing(index_elements=[table.c.user_id])
        )
        async with repository_guard("ensure_usage"):
            await self.db.execute(stmt)

    async def _load(self, user_id: str) -> FeatureUsage:
        stmt = (
            select(FeatureUsage)
            .where(FeatureUsage.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        async with repository_guard("load_usage"):
            result = await self.db.execute(stmt)
        return result.scalar_one()

    async def _is_stale(self, usage: FeatureUsage) -> bool:
        return usage.last_reset < month_start(self.clock())

    async def _rollover(self, usage: FeatureUsage) -> bool:
        """
        Archive and zero the counters if nobody touched the row meanwhile.

        The update matches on every counter so counts that moved after the
        read are never lost from the archive.
        """
        now = self.clock()
        table = FeatureUsage.__table__
        previous = {column: getattr(usage, column) for column in COUNTER_COLUMNS}

        stmt = (
            update(table)
            .where(
                table.c.user_id == usage.user_id,
                table.c.last_reset == usage.last_reset,
                *[table.c[column] == value for column, value in previous.items()],
            )
            .values(last_reset=now, updated_at=now, **{column: 0 for column in COUNTER_COLUMNS})
        )
        async with repository_guard("rollover_usage"):
            result = await self.db.execute(stmt)
        if result.rowcount != 1:
            return False

        period_start = month_start(usage.last_reset)
        async with repository_guard("archive_usage"):
            await self.db.execute(
                insert(FeatureUsageHistory).values(
                    user_id=usage.user_id,
                    period_start=period_start,
                    period_end=next_month_start(period_start),
                    created_at=now,
                    **previous,
                )
            )
        logger.info("Usage counters for user %s rolled over: %s", usage.user_id, previous)
        return True
