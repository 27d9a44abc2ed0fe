"""
Scheduled Job Tests
===================

Expiry sweep, pending notification housekeeping and monthly usage reset.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.models.subscription import (
    NotificationOutcome,
    NotificationReceipt,
    Platform,
    SubscriptionStatus,
)
from app.services.cache import CacheKeys
from app.services.reconciliation import ReconciliationEngine
from app.services.scheduled_jobs import (
    ScheduledJobService,
    run_expiration_check,
    run_monthly_usage_reset,
    run_pending_notification_retry,
)
from app.services.subscription_repository import SubscriptionRepository
from app.services.usage_tracker import UsageTracker
from app.services.webhook_ingestion import WebhookIngestionService
from tests.conftest import USER_ID, android_envelope, android_subscription_notification, make_result

NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


async def subscribe(
    db_session,
    user_id: str = USER_ID,
    token: str = "tok123",
    expiry: datetime = NOW + timedelta(days=30),
):
    engine = ReconciliationEngine(SubscriptionRepository(db_session), clock=lambda: NOW)
    await engine.apply_validation(user_id, make_result(token=token, expiry=expiry))
    await db_session.commit()


async def receipt_outcome(db_session, message_id: str) -> NotificationOutcome:
    result = await db_session.execute(
        select(NotificationReceipt.outcome).where(NotificationReceipt.message_id == message_id)
    )
    return result.scalar_one()


class TestExpirySweep:
    """Tests for expire_lapsed_subscriptions."""

    @pytest.mark.asyncio
    async def test_lapsed_subscriptions_expire(self, db_session, fake_redis):
        await subscribe(db_session, expiry=NOW + timedelta(hours=1))
        await subscribe(db_session, user_id="user-0002", token="tok456", expiry=NOW + timedelta(days=20))

        later = NOW + timedelta(hours=2)
        service = ScheduledJobService(db_session, clock=lambda: later)
        result = await service.expire_lapsed_subscriptions()

        assert result["job"] == "expire_lapsed_subscriptions"
        assert result["processed"] == 1
        assert result["errors"] == []

        repository = SubscriptionRepository(db_session)
        assert (await repository.get_by_user(USER_ID)).status == SubscriptionStatus.EXPIRED
        assert (await repository.get_by_user("user-0002")).status == SubscriptionStatus.ACTIVE

        notices = fake_redis.streams[CacheKeys.user_notice_stream()]
        assert notices[-1]["notice"] == "subscription_expired"

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, db_session):
        await subscribe(db_session, expiry=NOW + timedelta(hours=1))
        service = ScheduledJobService(db_session, clock=lambda: NOW + timedelta(hours=2))

        await service.expire_lapsed_subscriptions()
        second = await service.expire_lapsed_subscriptions()

        assert second["processed"] == 0

    @pytest.mark.asyncio
    async def test_late_store_event_still_applies_after_sweep(self, db_session):
        await subscribe(db_session, expiry=NOW + timedelta(hours=1))
        await ScheduledJobService(
            db_session, clock=lambda: NOW + timedelta(hours=2)
        ).expire_lapsed_subscriptions()

        ingestion = WebhookIngestionService(db_session, clock=lambda: NOW + timedelta(hours=3))
        notification = ingestion.decode(
            Platform.ANDROID,
            android_envelope(
                android_subscription_notification(2, event_time=NOW + timedelta(minutes=30)),
                message_id="msg-late-renewal",
            ),
        )
        result = await ingestion.ingest(notification)

        assert result.outcome == NotificationOutcome.APPLIED
        sub = await SubscriptionRepository(db_session).get_by_user(USER_ID)
        assert sub.status == SubscriptionStatus.ACTIVE


class TestPendingNotifications:
    """Tests for retry_pending_notifications."""

    async def buffer(self, db_session, message_id: str, received_at: datetime, token: str = "tok123"):
        ingestion = WebhookIngestionService(db_session, clock=lambda: received_at)
        notification = ingestion.decode(
            Platform.ANDROID,
            android_envelope(
                android_subscription_notification(3, token=token, event_time=received_at),
                message_id=message_id,
            ),
        )
        result = await ingestion.ingest(notification)
        assert result.outcome == NotificationOutcome.PENDING

    @pytest.mark.asyncio
    async def test_old_pending_rows_are_discarded(self, db_session):
        await self.buffer(db_session, "msg-stale", NOW - timedelta(hours=3), token="never-seen")
        await self.buffer(db_session, "msg-fresh", NOW - timedelta(minutes=5), token="never-seen")

        result = await ScheduledJobService(db_session, clock=lambda: NOW).retry_pending_notifications()

        assert result["discarded"] == 1
        assert result["replayed"] == 0
        assert await receipt_outcome(db_session, "msg-stale") == NotificationOutcome.DISCARDED
        assert await receipt_outcome(db_session, "msg-fresh") == NotificationOutcome.PENDING

    @pytest.mark.asyncio
    async def test_pending_rows_replay_once_subscription_exists(self, db_session):
        await self.buffer(db_session, "msg-wait", NOW + timedelta(minutes=1))
        await subscribe(db_session)

        result = await ScheduledJobService(
            db_session, clock=lambda: NOW + timedelta(minutes=2)
        ).retry_pending_notifications()

        assert result["replayed"] == 1
        assert await receipt_outcome(db_session, "msg-wait") == NotificationOutcome.APPLIED
        sub = await SubscriptionRepository(db_session).get_by_user(USER_ID)
        assert sub.status == SubscriptionStatus.CANCELED


class TestUsageReset:
    """Tests for reset_usage_counters."""

    @pytest.mark.asyncio
    async def test_previous_month_counters_reset(self, db_session):
        tracker = UsageTracker(db_session, clock=lambda: NOW)
        await tracker.record_usage(USER_ID, "recipes_per_month")
        await db_session.commit()

        first_of_month = datetime(2026, 11, 1, 0, 0, tzinfo=timezone.utc)
        result = await ScheduledJobService(
            db_session, clock=lambda: first_of_month
        ).reset_usage_counters()

        assert result["job"] == "reset_usage_counters"
        assert result["reset"] == 1
        usage = await UsageTracker(db_session, clock=lambda: first_of_month).get_usage(USER_ID)
        assert usage.recipes_created == 0


class TestRunners:
    """Tests for the scheduler entry points."""

    @pytest.mark.asyncio
    async def test_runners_report_their_job(self, db_session):
        expiry = await run_expiration_check(db_session)
        pending = await run_pending_notification_retry(db_session)
        usage = await run_monthly_usage_reset(db_session)

        assert expiry["job"] == "expire_lapsed_subscriptions"
        assert expiry["processed"] == 0
        assert pending == {
            "job": "retry_pending_notifications",
            "replayed": 0,
            "discarded": 0,
            "run_at": pending["run_at"],
        }
        assert usage["reset"] == 0
