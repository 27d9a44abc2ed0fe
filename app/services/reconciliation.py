"""
Reconciliation Engine
=====================

The subscription state machine. Both the synchronous path (a fresh store
validation) and the asynchronous path (a decoded store notification) end
up here as a ``SubscriptionEvent``.

Rules:
- an event older than the record's ``last_event_at`` is superseded and
  discarded (most recent event time wins, not arrival order)
- an event that leaves the state unchanged and is not newer than the
  watermark is a no-op, so redelivery is harmless
- every accepted transition writes through compare-and-swap and appends
  exactly one SubscriptionLog row
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Optional

from app.config import settings
from app.core.entitlements import tier_for_product
from app.core.errors import ConcurrentUpdateError, ReconciliationConflict
from app.models.subscription import (
    EventSource,
    NotificationOutcome,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionTier,
    grants_access,
)
from app.services.store_validation import ValidationResult
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Events and State
# =============================================================================

@dataclass(frozen=True)
class SubscriptionEvent:
    """
    A normalised fact about a subscription.

    ``expiry_date`` is the new end of the paid (or grace) period when the
    event carries one.
    """

    kind: SubscriptionEventType
    event_time: datetime
    expiry_date: Optional[datetime] = None
    auto_renewing: Optional[bool] = None
    product_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionState:
    """The part of a subscription the state machine owns."""

    status: SubscriptionStatus
    expiry_date: Optional[datetime]
    auto_renewing: bool
    product_id: str

    @property
    def tier(self) -> SubscriptionTier:
        return tier_for_product(self.product_id)

    @classmethod
    def of(cls, subscription: Subscription) -> "SubscriptionState":
        return cls(
            status=subscription.status,
            expiry_date=subscription.expiry_date,
            auto_renewing=subscription.auto_renewing,
            product_id=subscription.product_id,
        )


@dataclass
class ReconcileOutcome:
    """What the engine did with one event."""

    outcome: NotificationOutcome
    subscription: Optional[Subscription] = None
    previous_status: Optional[SubscriptionStatus] = None
    conflict: Optional[ReconciliationConflict] = None
    notice: Optional[str] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == NotificationOutcome.APPLIED


# =============================================================================
# Transitions
# =============================================================================

def status_from_expiry(expiry_date: Optional[datetime], now: datetime) -> SubscriptionStatus:
    if expiry_date is not None and expiry_date > now:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.EXPIRED


def next_state(
    current: SubscriptionState,
    event: SubscriptionEvent,
    now: datetime,
) -> SubscriptionState:
    """
    Compute the state after ``event``.

    Events that do not apply to the current status return ``current``
    unchanged.
    """
    kind = event.kind
    expiry = event.expiry_date or current.expiry_date
    product_id = event.product_id or current.product_id

    if kind == SubscriptionEventType.VALIDATION:
        return SubscriptionState(
            status=status_from_expiry(event.expiry_date, now),
            expiry_date=event.expiry_date,
            auto_renewing=bool(event.auto_renewing),
            product_id=product_id,
        )

    if kind in (SubscriptionEventType.RENEWAL, SubscriptionEventType.RECOVERED):
        return SubscriptionState(
            status=SubscriptionStatus.ACTIVE,
            expiry_date=expiry,
            auto_renewing=True if event.auto_renewing is None else event.auto_renewing,
            product_id=product_id,
        )

    if kind == SubscriptionEventType.CANCELED:
        if current.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD):
            return current
        # Access continues until the paid period ends
        return replace(current, status=SubscriptionStatus.CANCELED, auto_renewing=False, expiry_date=expiry)

    if kind in (SubscriptionEventType.BILLING_ISSUE, SubscriptionEventType.GRACE_PERIOD):
        if current.status != SubscriptionStatus.ACTIVE:
            return current
        # A grace period end, when present, becomes the access deadline
        return replace(current, status=SubscriptionStatus.GRACE_PERIOD, expiry_date=expiry)

    if kind == SubscriptionEventType.ON_HOLD:
        return replace(current, status=SubscriptionStatus.ON_HOLD, expiry_date=expiry)

    if kind == SubscriptionEventType.EXPIRED:
        return replace(current, status=SubscriptionStatus.EXPIRED, auto_renewing=False, expiry_date=expiry)

    if kind == SubscriptionEventType.REVOKED:
        ends = current.expiry_date
        if ends is None or ends > event.event_time:
            ends = event.event_time
        return replace(current, status=SubscriptionStatus.EXPIRED, auto_renewing=False, expiry_date=ends)

    return current


def notice_for(
    old_status: Optional[SubscriptionStatus],
    new_status: SubscriptionStatus,
) -> Optional[str]:
    """User-facing notice a status change calls for, if any."""
    if old_status == new_status:
        return None
    if new_status == SubscriptionStatus.ACTIVE:
        return "subscription_activated" if old_status is None else "subscription_recovered"
    return {
        SubscriptionStatus.CANCELED: "subscription_canceled",
        SubscriptionStatus.GRACE_PERIOD: "billing_issue",
        SubscriptionStatus.ON_HOLD: "subscription_on_hold",
        SubscriptionStatus.EXPIRED: "subscription_expired",
    }.get(new_status)


# =============================================================================
# Engine
# =============================================================================

class ReconciliationEngine:
    """
    Applies events to subscriptions.

    The repository is injected; the engine never commits. Callers commit
    the surrounding transaction once the outcome is known.
    """

    def __init__(
        self,
        repository,
        clock: Callable[[], datetime] = utc_now,
        max_retries: Optional[int] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.max_retries = max_retries or settings.RECONCILE_MAX_RETRIES

    async def apply_validation(
        self,
        user_id: str,
        result: ValidationResult,
    ) -> ReconcileOutcome:
        """Create or refresh a user's subscription from a store validation."""
        now = self.clock()
        event = SubscriptionEvent(
            kind=SubscriptionEventType.VALIDATION,
            event_time=now,
            expiry_date=result.expiry_date,
            auto_renewing=result.auto_renewing,
            product_id=result.canonical_product_id,
        )
        identity = {
            "platform": result.platform,
            "purchase_token": result.purchase_token,
            "package_name": result.package_name,
            "last_verified_at": now,
        }
        if result.latest_receipt is not None:
            identity["latest_receipt"] = result.latest_receipt

        return await self._reconcile(
            user_id,
            event,
            EventSource.VALIDATION,
            identity=identity,
        )

    async def apply_event(
        self,
        user_id: str,
        event: SubscriptionEvent,
        source: EventSource = EventSource.NOTIFICATION,
    ) -> ReconcileOutcome:
        """Apply a notification (or housekeeping) event to an existing record."""
        if event.kind == SubscriptionEventType.IGNORED:
            return ReconcileOutcome(NotificationOutcome.IGNORED, reason="event kind ignored")
        return await self._reconcile(user_id, event, source)

    async def _reconcile(
        self,
        user_id: str,
        event: SubscriptionEvent,
        source: EventSource,
        identity: Optional[dict[str, Any]] = None,
    ) -> ReconcileOutcome:
        # Derived events must not move the watermark past real store events
        advances_watermark = source != EventSource.HOUSEKEEPING

        for attempt in range(1, self.max_retries + 1):
            now = self.clock()
            current = await self.repository.get_by_user(user_id)

            if current is None:
                if identity is None:
                    return ReconcileOutcome(
                        NotificationOutcome.PENDING,
                        reason="no subscription for user",
                    )
                if await self._create(user_id, event, source, identity, now):
                    created = await self.repository.get_by_user(user_id)
                    return ReconcileOutcome(
                        NotificationOutcome.APPLIED,
                        subscription=created,
                        notice=notice_for(None, created.status),
                    )
                continue

            if event.event_time < current.last_event_at:
                conflict = ReconciliationConflict(user_id, event.event_time, current.last_event_at)
                logger.info(
                    "Superseded %s event for user %s: %s",
                    event.kind.value,
                    user_id,
                    conflict,
                )
                return ReconcileOutcome(
                    NotificationOutcome.SUPERSEDED,
                    subscription=current,
                    previous_status=current.status,
                    conflict=conflict,
                    reason=str(conflict),
                )

            before = SubscriptionState.of(current)
            after = next_state(before, event, now)
            newer = advances_watermark and event.event_time > current.last_event_at
            identity_changes = {
                key: value
                for key, value in (identity or {}).items()
                if getattr(current, key) != value
            }

            if after == before:
                if not newer and not identity_changes:
                    return ReconcileOutcome(
                        NotificationOutcome.UNCHANGED,
                        subscription=current,
                        previous_status=current.status,
                        reason="state unchanged",
                    )
                quiet = dict(identity_changes, updated_at=current.updated_at)
                if newer:
                    quiet["last_event_at"] = event.event_time
                if not await self.repository.compare_and_swap(user_id, current.version, quiet):
                    continue
                return ReconcileOutcome(
                    NotificationOutcome.UNCHANGED,
                    subscription=await self.repository.get_by_user(user_id),
                    previous_status=current.status,
                    reason="state unchanged",
                )

            values = {
                "status": after.status,
                "expiry_date": after.expiry_date,
                "auto_renewing": after.auto_renewing,
                "product_id": after.product_id,
                "tier": after.tier,
                "updated_at": now,
                **identity_changes,
            }
            if newer:
                values["last_event_at"] = event.event_time

            if not await self.repository.compare_and_swap(user_id, current.version, values):
                logger.info(
                    "Concurrent update for user %s, retrying (%d/%d)",
                    user_id,
                    attempt,
                    self.max_retries,
                )
                continue

            await self.repository.append_log(
                user_id=user_id,
                platform=identity_changes.get("platform", current.platform),
                product_id=after.product_id,
                old_status=before.status,
                new_status=after.status,
                old_tier=before.tier,
                new_tier=after.tier,
                event_type=event.kind,
                source=source,
                event_time=event.event_time,
                expiry_date=after.expiry_date,
            )
            logger.info(
                "Subscription for user %s: %s -> %s (%s via %s)",
                user_id,
                before.status.value,
                after.status.value,
                event.kind.value,
                source.value,
            )
            return ReconcileOutcome(
                NotificationOutcome.APPLIED,
                subscription=await self.repository.get_by_user(user_id),
                previous_status=before.status,
                notice=notice_for(before.status, after.status),
            )

        raise ConcurrentUpdateError(user_id, self.max_retries)

    async def _create(
        self,
        user_id: str,
        event: SubscriptionEvent,
        source: EventSource,
        identity: dict[str, Any],
        now: datetime,
    ) -> bool:
        status = status_from_expiry(event.expiry_date, now)
        product_id = event.product_id or ""
        tier = tier_for_product(product_id)

        created = await self.repository.create({
            "user_id": user_id,
            "product_id": product_id,
            "tier": tier,
            "status": status,
            "expiry_date": event.expiry_date,
            "auto_renewing": bool(event.auto_renewing),
            "last_event_at": event.event_time,
            **identity,
        })
        if not created:
            logger.info("Subscription for user %s created concurrently, retrying", user_id)
            return False

        await self.repository.append_log(
            user_id=user_id,
            platform=identity["platform"],
            product_id=product_id,
            old_status=None,
            new_status=status,
            old_tier=None,
            new_tier=tier,
            event_type=event.kind,
            source=source,
            event_time=event.event_time,
            expiry_date=event.expiry_date,
        )
        logger.info(
            "Subscription created for user %s: %s %s (%s)",
            user_id,
            tier.value,
            status.value,
            identity["platform"].value,
        )
        return True


def is_entitled(subscription: Optional[Subscription], now: datetime) -> bool:
    """True when ``subscription`` currently grants its tier."""
    if subscription is None:
        return False
    return grants_access(subscription.status, subscription.expiry_date, now)
