"""
Subscription Models
===================

SQLAlchemy models for store subscriptions, the append-only subscription
log and the webhook notification ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, BigIntegerPK, JSONType, TimestampMixin, UTCDateTime
from app.utils.helpers import utc_now


class SubscriptionTier(str, Enum):
    """Subscription tier levels."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    PROFESSIONAL = "professional"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"
    GRACE_PERIOD = "grace_period"
    ON_HOLD = "on_hold"


class Platform(str, Enum):
    """Purchase platform."""
    ANDROID = "android"
    IOS = "ios"


class SubscriptionEventType(str, Enum):
    """Normalised event kinds the reconciliation engine understands."""
    VALIDATION = "validation"
    RENEWAL = "renewal"
    RECOVERED = "recovered"
    CANCELED = "canceled"
    BILLING_ISSUE = "billing_issue"
    GRACE_PERIOD = "grace_period"
    ON_HOLD = "on_hold"
    EXPIRED = "expired"
    REVOKED = "revoked"
    IGNORED = "ignored"


class EventSource(str, Enum):
    """Where a subscription change came from."""
    VALIDATION = "validation"
    NOTIFICATION = "notification"
    HOUSEKEEPING = "housekeeping"


class NotificationOutcome(str, Enum):
    """Terminal outcome recorded for every received store notification."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"
    PENDING = "pending"
    DISCARDED = "discarded"


# Statuses that still grant access while expiry_date is in the future.
# CANCELED only stops renewal; GRACE_PERIOD keeps access while the store
# retries payment.
ACCESS_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.CANCELED,
})


def grants_access(
    status: SubscriptionStatus,
    expiry_date: Optional[datetime],
    now: datetime,
) -> bool:
    """Entitlement check: status allows access and the paid period has not ended."""
    return (
        status in ACCESS_STATUSES
        and expiry_date is not None
        and expiry_date > now
    )


class Subscription(Base, TimestampMixin):
    """
    Canonical store subscription, one row per user.

    Writes go through ``SubscriptionRepository.compare_and_swap`` which
    bumps ``version``; ``last_event_at`` is the event-time watermark used
    to discard superseded notifications.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    # Store identity
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    # Android purchase token / iOS original transaction id
    purchase_token: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    package_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    latest_receipt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # State
    tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier),
        default=SubscriptionTier.FREE,
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=False,
    )
    expiry_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    auto_renewing: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Concurrency
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    last_event_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Indexes
    __table_args__ = (
        Index("idx_subscription_platform_token", "platform", "purchase_token"),
        Index("idx_subscription_status_expiry", "status", "expiry_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, tier={self.tier}, "
            f"status={self.status}, version={self.version})>"
        )

    def is_active_at(self, now: datetime) -> bool:
        """Check whether the subscription grants access at ``now``."""
        return grants_access(self.status, self.expiry_date, now)


class SubscriptionLog(Base):
    """
    Append-only audit trail of subscription transitions.

    One row per accepted transition. Rows are never updated or deleted.
    """

    __tablename__ = "subscription_logs"

    id: Mapped[int] = mapped_column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    old_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=True,
    )
    new_status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=False,
    )
    old_tier: Mapped[Optional[SubscriptionTier]] = mapped_column(
        SQLEnum(SubscriptionTier),
        nullable=True,
    )
    new_tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier),
        nullable=False,
    )
    event_type: Mapped[SubscriptionEventType] = mapped_column(
        SQLEnum(SubscriptionEventType),
        nullable=False,
    )
    source: Mapped[EventSource] = mapped_column(
        SQLEnum(EventSource),
        nullable=False,
    )
    event_time: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    expiry_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_subscription_logs_user_time", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionLog(user_id={self.user_id}, "
            f"{self.old_status} -> {self.new_status})>"
        )


class NotificationReceipt(Base):
    """
    Durable ledger of received store notifications.

    ``(platform, message_id)`` is unique, which makes redelivery of the
    same message a no-op. Rows left in ``pending`` form the buffer of
    notifications that arrived before their subscription existed.
    """

    __tablename__ = "notification_receipts"

    id: Mapped[int] = mapped_column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform),
        nullable=False,
    )
    message_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    purchase_token: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
    )
    notification_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    event_type: Mapped[SubscriptionEventType] = mapped_column(
        SQLEnum(SubscriptionEventType),
        nullable=False,
    )
    event_time: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    expiry_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    package_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    auto_renewing: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
    )
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Processing result
    outcome: Mapped[NotificationOutcome] = mapped_column(
        SQLEnum(NotificationOutcome),
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("platform", "message_id", name="uq_notification_platform_message"),
        Index("idx_notification_outcome_received", "outcome", "received_at"),
        Index("idx_notification_platform_token", "platform", "purchase_token"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationReceipt(platform={self.platform}, "
            f"message_id={self.message_id}, outcome={self.outcome})>"
        )
