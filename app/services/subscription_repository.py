"""
Subscription Repository
=======================

Persistence for the canonical subscription record and its append-only
log.

Every write to ``subscriptions`` is either an insert that loses quietly to
a concurrent insert, or a compare-and-swap on ``version``. Callers read,
compute, then swap; a failed swap means someone else wrote first and the
caller must read again.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import RepositoryError
from app.models.subscription import (
    EventSource,
    Platform,
    Subscription,
    SubscriptionEventType,
    SubscriptionLog,
    SubscriptionStatus,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)


def dialect_insert(db: AsyncSession, table):
    """INSERT construct that supports ``on_conflict_do_nothing``."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RepositoryError(f"Unsupported database dialect: {dialect}")


@asynccontextmanager
async def repository_guard(operation: str) -> AsyncIterator[None]:
    """Surface driver and connection failures as ``RepositoryError``."""
    try:
        yield
    except (DBAPIError, OSError) as exc:
        logger.error("Repository operation %s failed: %s", operation, exc)
        raise RepositoryError(f"{operation} failed") from exc


class SubscriptionRepository:
    """Subscription and SubscriptionLog access for one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_by_user(self, user_id: str) -> Optional[Subscription]:
        """Current record for a user, always re-read from the database."""
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        async with repository_guard("get_by_user"):
            result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_token(
        self,
        platform: Platform,
        purchase_token: str,
    ) -> Optional[Subscription]:
        """Resolve a store purchase token / original transaction id."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.platform == platform,
                Subscription.purchase_token == purchase_token,
            )
            .order_by(Subscription.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        async with repository_guard("get_by_token"):
            result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_lapsed(
        self,
        now: datetime,
        statuses: Sequence[SubscriptionStatus],
        limit: int = 500,
    ) -> list[Subscription]:
        """Records in ``statuses`` whose paid period ended before ``now``."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status.in_(list(statuses)),
                Subscription.expiry_date < now,
            )
            .order_by(Subscription.expiry_date)
            .limit(limit)
        )
        async with repository_guard("list_lapsed"):
            result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, values: dict[str, Any]) -> bool:
        """
        Insert the first record for a user.

        Returns False when another writer created it first.
        """
        table = Subscription.__table__
        stmt = (
            dialect_insert(self.db, table)
            .values(version=1, **values)
            .on_conflict_do_nothing(index_elements=[table.c.user_id])
        )
        async with repository_guard("create"):
            result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def compare_and_swap(
        self,
        user_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        """
        Write ``values`` only if the record is still at ``expected_version``.

        Bumps ``version`` on success. Returns False when the record moved on.
        """
        table = Subscription.__table__
        stmt = (
            update(table)
            .where(
                table.c.user_id == user_id,
                table.c.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
        )
        async with repository_guard("compare_and_swap"):
            result = await self.db.execute(stmt)
        swapped = result.rowcount == 1
        if not swapped:
            logger.debug(
                "CAS lost for user %s at version %d", user_id, expected_version
            )
        return swapped

    async def append_log(
        self,
        *,
        user_id: str,
        platform: Platform,
        product_id: str,
        old_status: Optional[SubscriptionStatus],
        new_status: SubscriptionStatus,
        old_tier: Optional[SubscriptionTier],
        new_tier: SubscriptionTier,
        event_type: SubscriptionEventType,
        source: EventSource,
        event_time: datetime,
        expiry_date: Optional[datetime],
    ) -> SubscriptionLog:
        """Append one transition to the subscription log."""
        entry = SubscriptionLog(
            user_id=user_id,
            platform=platform,
            product_id=product_id,
            old_status=old_status,
            new_status=new_status,
            old_tier=old_tier,
            new_tier=new_tier,
            event_type=event_type,
            source=source,
            event_time=event_time,
            expiry_date=expiry_date,
        )
        self.db.add(entry)
        async with repository_guard("append_log"):
            await self.db.flush()
        return entry

    async def list_logs(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[SubscriptionLog]:
        """Log entries for a user, newest first, optionally within a time range."""
        stmt = select(SubscriptionLog).where(SubscriptionLog.user_id == user_id)
        if since is not None:
            stmt = stmt.where(SubscriptionLog.timestamp >= since)
        if until is not None:
            stmt = stmt.where(SubscriptionLog.timestamp < until)
        stmt = stmt.order_by(SubscriptionLog.id.desc()).limit(limit)

        async with repository_guard("list_logs"):
            result = await self.db.execute(stmt)
        return list(result.scalars().all())
