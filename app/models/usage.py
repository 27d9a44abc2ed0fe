"""
Feature Usage Models
====================

Per-user usage counters for metered features and the archive of
closed billing periods.
"""

from datetime import datetime

from sqlalchemy import Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, BigIntegerPK, TimestampMixin, UTCDateTime
from app.utils.helpers import utc_now


class FeatureUsage(Base, TimestampMixin):
    """Usage counters for the current billing period, one row per user."""

    __tablename__ = "feature_usage"

    user_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    recipes_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meal_plans_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_alerts_set: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    collections_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reset: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<FeatureUsage(user_id={self.user_id}, last_reset={self.last_reset})>"


class FeatureUsageHistory(Base):
    """Final counter values of a closed billing period."""

    __tablename__ = "feature_usage_history"

    id: Mapped[int] = mapped_column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recipes_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meal_plans_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_alerts_set: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    collections_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_usage_history_user_period", "user_id", "period_start"),
    )
