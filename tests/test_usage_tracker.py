"""
Usage Tracker Tests
===================

Metered feature counters, tier limits and monthly rollover.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.errors import AppException, ConcurrentUpdateError, ErrorCodes, FeatureLimitReached
from app.models.subscription import SubscriptionTier
from app.models.usage import FeatureUsageHistory
from app.services.reconciliation import ReconciliationEngine
from app.services.subscription_repository import SubscriptionRepository
from app.services.usage_tracker import UsageTracker, next_month_start
from tests.conftest import USER_ID, make_result

NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


class ContendedTracker(UsageTracker):
    """Tracker whose rollover always loses to another writer."""

    async def _rollover(self, usage):
        return False


async def subscribe(db_session, product_id: str, expiry: datetime = NOW + timedelta(days=30)):
    engine = ReconciliationEngine(SubscriptionRepository(db_session), clock=lambda: NOW)
    await engine.apply_validation(USER_ID, make_result(product_id=product_id, expiry=expiry))
    await db_session.commit()


def test_next_month_start():
    assert next_month_start(NOW) == datetime(2026, 11, 1, tzinfo=timezone.utc)
    assert next_month_start(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )


class TestUsageTracker:
    """Tests for counters and limits."""

    @pytest.mark.asyncio
    async def test_free_tier_without_subscription(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)

        details = await tracker.get_subscription_details(USER_ID)

        assert details["is_active"] is False
        assert details["tier"] == SubscriptionTier.FREE.value
        assert details["status"] is None
        assert details["limits"]["recipes_per_month"] == 5
        assert details["usage"]["recipes_created"] == 0

    @pytest.mark.asyncio
    async def test_expired_subscription_falls_back_to_free(self, db_session):
        await subscribe(db_session, "com.app.premium", expiry=NOW + timedelta(hours=1))
        tracker = UsageTracker(db_session, clock=lambda: NOW + timedelta(hours=2))

        details = await tracker.get_subscription_details(USER_ID)

        assert details["is_active"] is False
        assert details["tier"] == SubscriptionTier.FREE.value
        assert details["subscription_tier"] == SubscriptionTier.PREMIUM.value

    @pytest.mark.asyncio
    async def test_record_until_limit(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)

        for expected in range(1, 6):
            record = await tracker.record_usage(USER_ID, "recipes_per_month")
            assert record["used"] == expected
            assert record["remaining"] == 5 - expected

        with pytest.raises(FeatureLimitReached) as exc_info:
            await tracker.record_usage(USER_ID, "recipes_per_month")

        assert exc_info.value.limit == 5
        assert exc_info.value.used == 5
        usage = await tracker.get_usage(USER_ID)
        assert usage.recipes_created == 5

    @pytest.mark.asyncio
    async def test_professional_is_unlimited(self, db_session):
        await subscribe(db_session, "com.app.professional")
        tracker = UsageTracker(db_session, clock=lambda: NOW)

        for _ in range(25):
            record = await tracker.record_usage(USER_ID, "collections")

        assert record["tier"] == SubscriptionTier.PROFESSIONAL.value
        assert record["limit"] == -1
        assert record["used"] == 25
        assert record["remaining"] is None

    @pytest.mark.asyncio
    async def test_unknown_feature(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)

        with pytest.raises(AppException) as exc_info:
            await tracker.record_usage(USER_ID, "ad_free")

        assert exc_info.value.code == ErrorCodes.FEATURE_UNKNOWN

    @pytest.mark.asyncio
    async def test_check_feature(self, db_session):
        await subscribe(db_session, "com.app.basic")
        tracker = UsageTracker(db_session, clock=lambda: NOW)

        search = await tracker.check_feature(USER_ID, "advanced_search")
        ads = await tracker.check_feature(USER_ID, "ad_free")
        plans = await tracker.check_feature(USER_ID, "meal_plans")

        assert search["allowed"] is True
        assert ads["allowed"] is False
        assert ads["required_tier"] == SubscriptionTier.PREMIUM.value
        assert plans["allowed"] is True
        assert plans["used"] == 0
        assert plans["remaining"] == 3

    @pytest.mark.asyncio
    async def test_new_month_rolls_counters_over(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)
        await tracker.record_usage(USER_ID, "recipes_per_month")
        await tracker.record_usage(USER_ID, "price_alerts")

        next_month = UsageTracker(db_session, clock=lambda: datetime(2026, 11, 2, tzinfo=timezone.utc))
        usage = await next_month.get_usage(USER_ID)

        assert usage.recipes_created == 0
        assert usage.price_alerts_set == 0
        history = (await db_session.execute(select(FeatureUsageHistory))).scalars().all()
        assert len(history) == 1
        assert history[0].recipes_created == 1
        assert history[0].price_alerts_set == 1
        assert history[0].period_start == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert history[0].period_end == datetime(2026, 11, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_reset_stale_counters(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)
        await tracker.record_usage(USER_ID, "meal_plans")
        await tracker.record_usage("user-0002", "meal_plans")

        later = UsageTracker(db_session, clock=lambda: datetime(2026, 11, 1, 0, 5, tzinfo=timezone.utc))

        assert await later.reset_stale_counters() == 2
        assert await later.reset_stale_counters() == 0

    @pytest.mark.asyncio
    async def test_contended_rollover_does_not_count_against_last_month(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)
        for _ in range(4):
            await tracker.record_usage(USER_ID, "recipes_per_month")

        contended = ContendedTracker(db_session, clock=lambda: datetime(2026, 11, 2, tzinfo=timezone.utc))

        with pytest.raises(ConcurrentUpdateError):
            await contended.record_usage(USER_ID, "recipes_per_month")

        usage = await tracker.get_usage(USER_ID)
        assert usage.recipes_created == 4
