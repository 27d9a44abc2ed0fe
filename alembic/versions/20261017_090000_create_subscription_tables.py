"""Create subscription, notification ledger and usage tables

Revision ID: 5d2e8c41b7a9
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5d2e8c41b7a9"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum labels are the Python member names
PLATFORM_VALUES = ("ANDROID", "IOS")
TIER_VALUES = ("FREE", "BASIC", "PREMIUM", "PROFESSIONAL")
STATUS_VALUES = ("ACTIVE", "EXPIRED", "CANCELED", "GRACE_PERIOD", "ON_HOLD")
EVENT_TYPE_VALUES = (
    "VALIDATION",
    "RENEWAL",
    "RECOVERED",
    "CANCELED",
    "BILLING_ISSUE",
    "GRACE_PERIOD",
    "ON_HOLD",
    "EXPIRED",
    "REVOKED",
    "IGNORED",
)
SOURCE_VALUES = ("VALIDATION", "NOTIFICATION", "HOUSEKEEPING")
OUTCOME_VALUES = (
    "APPLIED",
    "UNCHANGED",
    "DUPLICATE",
    "SUPERSEDED",
    "IGNORED",
    "PENDING",
    "DISCARDED",
)

ENUM_TYPES = (
    "platform",
    "subscriptiontier",
    "subscriptionstatus",
    "subscriptioneventtype",
    "eventsource",
    "notificationoutcome",
)


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    platform = sa.Enum(*PLATFORM_VALUES, name="platform")
    tier = sa.Enum(*TIER_VALUES, name="subscriptiontier")
    status = sa.Enum(*STATUS_VALUES, name="subscriptionstatus")
    event_type = sa.Enum(*EVENT_TYPE_VALUES, name="subscriptioneventtype")
    source = sa.Enum(*SOURCE_VALUES, name="eventsource")
    outcome = sa.Enum(*OUTCOME_VALUES, name="notificationoutcome")

    bind = op.get_bind()
    for enum in (platform, tier, status, event_type, source, outcome):
        enum.create(bind, checkfirst=True)

    # Columns reuse the types created above
    platform = postgresql.ENUM(*PLATFORM_VALUES, name="platform", create_type=False)
    tier = postgresql.ENUM(*TIER_VALUES, name="subscriptiontier", create_type=False)
    status = postgresql.ENUM(*STATUS_VALUES, name="subscriptionstatus", create_type=False)
    event_type = postgresql.ENUM(*EVENT_TYPE_VALUES, name="subscriptioneventtype", create_type=False)
    source = postgresql.ENUM(*SOURCE_VALUES, name="eventsource", create_type=False)
    outcome = postgresql.ENUM(*OUTCOME_VALUES, name="notificationoutcome", create_type=False)

    # ------------------------------------------------------------------
    # 2. subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_token", sa.String(length=512), nullable=False),
        sa.Column("package_name", sa.String(length=255), nullable=True),
        sa.Column("latest_receipt", sa.Text(), nullable=True),
        sa.Column("tier", tier, nullable=False),
        sa.Column("status", status, nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renewing", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index("idx_subscription_platform_token", "subscriptions", ["platform", "purchase_token"])
    op.create_index("idx_subscription_status_expiry", "subscriptions", ["status", "expiry_date"])

    # ------------------------------------------------------------------
    # 3. subscription_logs (append-only)
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("old_status", status, nullable=True),
        sa.Column("new_status", status, nullable=False),
        sa.Column("old_tier", tier, nullable=True),
        sa.Column("new_tier", tier, nullable=False),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("source", source, nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_subscription_logs_user_time", "subscription_logs", ["user_id", "timestamp"])

    # ------------------------------------------------------------------
    # 4. notification_receipts (webhook ledger + pending buffer)
    # ------------------------------------------------------------------
    op.create_table(
        "notification_receipts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("message_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_token", sa.String(length=512), nullable=True),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("package_name", sa.String(length=255), nullable=True),
        sa.Column("auto_renewing", sa.Boolean(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("outcome", outcome, nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("platform", "message_id", name="uq_notification_platform_message"),
    )
    op.create_index("idx_notification_outcome_received", "notification_receipts", ["outcome", "received_at"])
    op.create_index("idx_notification_platform_token", "notification_receipts", ["platform", "purchase_token"])

    # ------------------------------------------------------------------
    # 5. feature usage
    # ------------------------------------------------------------------
    op.create_table(
        "feature_usage",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("recipes_created", sa.Integer(), nullable=False),
        sa.Column("meal_plans_created", sa.Integer(), nullable=False),
        sa.Column("price_alerts_set", sa.Integer(), nullable=False),
        sa.Column("collections_created", sa.Integer(), nullable=False),
        sa.Column("last_reset", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "feature_usage_history",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recipes_created", sa.Integer(), nullable=False),
        sa.Column("meal_plans_created", sa.Integer(), nullable=False),
        sa.Column("price_alerts_set", sa.Integer(), nullable=False),
        sa.Column("collections_created", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_usage_history_user_period", "feature_usage_history", ["user_id", "period_start"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_usage_history_user_period", table_name="feature_usage_history")
    op.drop_table("feature_usage_history")
    op.drop_table("feature_usage")

    op.drop_index("idx_notification_platform_token", table_name="notification_receipts")
    op.drop_index("idx_notification_outcome_received", table_name="notification_receipts")
    op.drop_table("notification_receipts")

    op.drop_index("idx_subscription_logs_user_time", table_name="subscription_logs")
    op.drop_table("subscription_logs")

    op.drop_index("idx_subscription_status_expiry", table_name="subscriptions")
    op.drop_index("idx_subscription_platform_token", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    bind = op.get_bind()
    for name in ENUM_TYPES:
        sa.Enum(name=name).drop(bind, checkfirst=True)
