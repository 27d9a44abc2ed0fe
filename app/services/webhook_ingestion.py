"""
Webhook Ingestion
=================

Processes decoded store notifications:

    decode -> dedupe -> resolve token -> enrich -> reconcile -> record

Idempotency:
    A Redis marker per message is the fast path. The durable guard is the
    unique ``(platform, message_id)`` row in ``notification_receipts``,
    claimed in the same transaction as the state change. A message whose
    processing failed leaves no row, so the store's redelivery retries it.

Unmatched notifications:
    A notification for a token no subscription knows yet is stored as
    ``pending``. Pending rows are replayed when the synchronous verify path
    creates the record, or by the housekeeping job, and discarded after
    ``PENDING_NOTIFICATION_TTL_MINUTES``.
"""

import hmac
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes, PurchaseValidationError
from app.models.subscription import (
    NotificationOutcome,
    NotificationReceipt,
    Platform,
    Subscription,
    SubscriptionEventType,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.notification_decoder import NotificationEvent, RawBody, decode_notification
from app.services.reconciliation import ReconcileOutcome, ReconciliationEngine, SubscriptionEvent
from app.services.store_validation import AndroidPurchase, StoreValidators
from app.services.subscription_repository import (
    SubscriptionRepository,
    dialect_insert,
    repository_guard,
)
from app.services.user_notices import publish_notice
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Android notifications without an expiry that the Play API can fill in
_ENRICHABLE_KINDS = frozenset({
    SubscriptionEventType.RENEWAL,
    SubscriptionEventType.RECOVERED,
    SubscriptionEventType.GRACE_PERIOD,
})


@dataclass
class IngestResult:
    """Terminal outcome of one webhook delivery."""

    outcome: NotificationOutcome
    message_id: str
    notification_type: str
    user_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome == NotificationOutcome.DUPLICATE


def verify_ios_password(notification: NotificationEvent) -> None:
    """App Store notifications echo the shared secret; reject mismatches."""
    secret = settings.APPLE_SHARED_SECRET
    if not secret:
        return
    if not hmac.compare_digest(str(notification.password or ""), secret):
        logger.warning("App Store notification with wrong password rejected")
        raise AuthenticationError(
            code=ErrorCodes.SUB_WEBHOOK_UNAUTHORIZED,
            message="Invalid notification password",
        )


def _stored_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key != "password"}


class WebhookIngestionService:
    """Store notification processing for one request or job run."""

    def __init__(
        self,
        db: AsyncSession,
        validators: Optional[StoreValidators] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.repository = SubscriptionRepository(db)
        self.engine = ReconciliationEngine(self.repository, clock=clock)
        self.validators = validators
        self.clock = clock

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def decode(self, platform: Platform, body: RawBody) -> NotificationEvent:
        """Decode a raw body; raises NotificationDecodeError when malformed."""
        return decode_notification(platform, body, self.clock())

    async def ingest(self, notification: NotificationEvent) -> IngestResult:
        """
        Take one decoded notification to a committed terminal outcome.

        Raises whatever the repository raises; nothing is committed then and
        the store is expected to redeliver.
        """
        platform = notification.platform
        marker = CacheKeys.webhook_processed(platform.value, notification.message_id)

        if await CacheManager.exists(marker):
            logger.info("Duplicate %s notification %s (cache)", platform.value, notification.message_id)
            return self._duplicate(notification)

        if await self._get_receipt(platform, notification.message_id) is not None:
            logger.info("Duplicate %s notification %s", platform.value, notification.message_id)
            await self._mark_processed(marker)
            return self._duplicate(notification)

        subscription: Optional[Subscription] = None
        event = notification.event
        if notification.is_actionable:
            subscription = await self.repository.get_by_token(platform, notification.purchase_token)
            if subscription is not None:
                event = await self._enrich(notification, subscription)

        if not await self._claim(notification, event):
            logger.info("Notification %s claimed concurrently", notification.message_id)
            return self._duplicate(notification)

        result: Optional[ReconcileOutcome] = None
        if not notification.is_actionable:
            outcome = NotificationOutcome.IGNORED
            reason = f"{notification.notification_type} is not actionable"
            user_id = None
        elif subscription is None:
            outcome = NotificationOutcome.PENDING
            reason = "no subscription for purchase token yet"
            user_id = None
            logger.info(
                "Unmatched %s notification %s for token %s, buffered",
                platform.value,
                notification.message_id,
                notification.purchase_token,
            )
        else:
            user_id = subscription.user_id
            result = await self.engine.apply_event(user_id, event)
            outcome = result.outcome
            reason = result.reason

        await self._finish(notification.platform, notification.message_id, outcome, reason, user_id)
        await self.db.commit()

        await self._mark_processed(marker)
        if result is not None and result.applied:
            await CacheInvalidator.on_subscription_change(user_id)
            await publish_notice(
                user_id,
                result.notice,
                platform=platform.value,
                notification_type=notification.notification_type,
            )

        logger.info(
            "%s notification %s (%s) -> %s",
            platform.value,
            notification.message_id,
            notification.notification_type,
            outcome.value,
        )
        return IngestResult(
            outcome=outcome,
            message_id=notification.message_id,
            notification_type=notification.notification_type,
            user_id=user_id,
            reason=reason,
        )

    async def replay_pending(self, platform: Platform, purchase_token: str) -> list[ReconcileOutcome]:
        """
        Apply buffered notifications for a token that now has a subscription.

        Does not commit; the caller owns the transaction.
        """
        subscription = await self.repository.get_by_token(platform, purchase_token)
        if subscription is None:
            return []

        stmt = (
            select(NotificationReceipt)
            .where(
                NotificationReceipt.platform == platform,
                NotificationReceipt.purchase_token == purchase_token,
                NotificationReceipt.outcome == NotificationOutcome.PENDING,
            )
            .order_by(NotificationReceipt.event_time, NotificationReceipt.id)
        )
        async with repository_guard("list_pending"):
            rows = list((await self.db.execute(stmt)).scalars().all())

        outcomes = []
        for row in rows:
            result = await self.engine.apply_event(subscription.user_id, self._event_from_receipt(row))
            await self._finish(
                row.platform,
                row.message_id,
                result.outcome,
                result.reason,
                subscription.user_id,
                attempts=row.attempts + 1,
            )
            outcomes.append(result)
            logger.info(
                "Replayed pending notification %s for user %s -> %s",
                row.message_id,
                subscription.user_id,
                result.outcome.value,
            )
        return outcomes

    async def process_pending(self, limit: int = 200) -> dict[str, int]:
        """
        Housekeeping pass over the pending buffer.

        Replays rows whose subscription appeared and discards rows older
        than the pending TTL. Does not commit.
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=settings.PENDING_NOTIFICATION_TTL_MINUTES)

        stmt = (
            select(NotificationReceipt)
            .where(NotificationReceipt.outcome == NotificationOutcome.PENDING)
            .order_by(NotificationReceipt.received_at)
            .limit(limit)
        )
        async with repository_guard("list_pending"):
            rows = list((await self.db.execute(stmt)).scalars().all())

        replayed = 0
        discarded = 0
        seen: set[tuple[Platform, str]] = set()
        for row in rows:
            key = (row.platform, row.purchase_token)
            if key in seen:
                continue

            if await self.repository.get_by_token(row.platform, row.purchase_token) is not None:
                seen.add(key)
                replayed += len(await self.replay_pending(row.platform, row.purchase_token))
                continue

            if row.received_at < cutoff:
                await self._finish(
                    row.platform,
                    row.message_id,
                    NotificationOutcome.DISCARDED,
                    "no subscription appeared before the pending window closed",
                    None,
                    attempts=row.attempts + 1,
                )
                discarded += 1
                logger.info(
                    "Discarded pending %s notification %s",
                    row.platform.value,
                    row.message_id,
                )

        return {"replayed": replayed, "discarded": discarded}

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _enrich(
        self,
        notification: NotificationEvent,
        subscription: Subscription,
    ) -> SubscriptionEvent:
        """
        Fill in the expiry Play notifications leave out.

        A store failure is not fatal: the event is applied without a
        refreshed expiry.
        """
        event = notification.event
        if (
            notification.platform != Platform.ANDROID
            or self.validators is None
            or event.kind not in _ENRICHABLE_KINDS
            or event.expiry_date is not None
        ):
            return event

        artifact = AndroidPurchase(
            purchase_token=notification.purchase_token,
            product_id=notification.product_id or subscription.product_id,
            package_name=notification.package_name or subscription.package_name,
        )
        try:
            result = await self.validators.android.validate(artifact)
        except PurchaseValidationError as exc:
            logger.warning(
                "Could not refresh expiry for notification %s (%s): %s",
                notification.message_id,
                exc.reason,
                exc,
            )
            return event

        return replace(
            event,
            expiry_date=result.expiry_date,
            auto_renewing=result.auto_renewing if event.auto_renewing is None else event.auto_renewing,
        )

    async def _get_receipt(self, platform: Platform, message_id: str) -> Optional[NotificationReceipt]:
        stmt = select(NotificationReceipt).where(
            NotificationReceipt.platform == platform,
            NotificationReceipt.message_id == message_id,
        )
        async with repository_guard("get_receipt"):
            result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _claim(self, notification: NotificationEvent, event: SubscriptionEvent) -> bool:
        """Insert the ledger row; False if the message id is already taken."""
        table = NotificationReceipt.__table__
        stmt = (
            dialect_insert(self.db, table)
            .values(
                platform=notification.platform,
                message_id=notification.message_id,
                purchase_token=notification.purchase_token,
                notification_type=notification.notification_type,
                event_type=event.kind,
                event_time=event.event_time,
                expiry_date=event.expiry_date,
                auto_renewing=event.auto_renewing,
                product_id=notification.product_id,
                package_name=notification.package_name,
                payload=_stored_payload(notification.payload),
                outcome=NotificationOutcome.PENDING,
                attempts=1,
                received_at=self.clock(),
            )
            .on_conflict_do_nothing(index_elements=[table.c.platform, table.c.message_id])
        )
        async with repository_guard("claim_notification"):
            result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _finish(
        self,
        platform: Platform,
        message_id: str,
        outcome: NotificationOutcome,
        reason: Optional[str],
        user_id: Optional[str],
        attempts: Optional[int] = None,
    ) -> None:
        table = NotificationReceipt.__table__
        values: dict[str, Any] = {
            "outcome": outcome,
            "reason": reason[:255] if reason else None,
            "user_id": user_id,
        }
        if outcome != NotificationOutcome.PENDING:
            values["processed_at"] = self.clock()
        if attempts is not None:
            values["attempts"] = attempts

        stmt = (
            update(table)
            .where(table.c.platform == platform, table.c.message_id == message_id)
            .values(**values)
        )
        async with repository_guard("finish_notification"):
            await self.db.execute(stmt)

    @staticmethod
    def _event_from_receipt(row: NotificationReceipt) -> SubscriptionEvent:
        return SubscriptionEvent(
            kind=row.event_type,
            event_time=row.event_time,
            expiry_date=row.expiry_date,
            auto_renewing=row.auto_renewing,
            product_id=row.product_id,
        )

    async def _mark_processed(self, marker: str) -> None:
        await CacheManager.set(marker, "1", ttl=settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS)

    @staticmethod
    def _duplicate(notification: NotificationEvent) -> IngestResult:
        return IngestResult(
            outcome=NotificationOutcome.DUPLICATE,
            message_id=notification.message_id,
            notification_type=notification.notification_type,
            reason="message already processed",
        )
