"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.subscription import (
    ACCESS_STATUSES,
    EventSource,
    NotificationOutcome,
    NotificationReceipt,
    Platform,
    Subscription,
    SubscriptionEventType,
    SubscriptionLog,
    SubscriptionStatus,
    SubscriptionTier,
    grants_access,
)
from app.models.usage import FeatureUsage, FeatureUsageHistory

__all__ = [
    # Subscription
    "ACCESS_STATUSES",
    "EventSource",
    "NotificationOutcome",
    "NotificationReceipt",
    "Platform",
    "Subscription",
    "SubscriptionEventType",
    "SubscriptionLog",
    "SubscriptionStatus",
    "SubscriptionTier",
    "grants_access",
    # Usage
    "FeatureUsage",
    "FeatureUsageHistory",
]
