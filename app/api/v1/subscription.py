"""
Subscription API Endpoints
==========================

Purchase verification, subscription status, history, usage and feature
checks.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.entitlements import get_tier_limits
from app.core.rate_limit import create_rate_limit_dependency
from app.dependencies import CurrentUserId, DBSession, Validators
from app.schemas.common import ERROR_RESPONSES
from app.schemas.subscription import (
    AndroidVerifyRequest,
    FeatureCheckResponse,
    HistoryResponse,
    IosVerifyRequest,
    SubscriptionStatusResponse,
    UsageRecordResponse,
    UsageResponse,
    VerifyResponse,
)
from app.services.cache import CacheInvalidator
from app.services.reconciliation import ReconcileOutcome, is_entitled
from app.services.store_validation import AndroidPurchase, IosReceipt
from app.services.subscription_service import SubscriptionService, serialize_subscription
from app.services.usage_tracker import UsageTracker, usage_snapshot
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_response(outcome: ReconcileOutcome) -> VerifyResponse:
    subscription = outcome.subscription
    return VerifyResponse(
        success=True,
        data={
            "subscription": serialize_subscription(subscription),
            "outcome": outcome.outcome.value,
            "is_active": is_entitled(subscription, utc_now()),
        },
        message="Subscription verified",
    )


# =============================================================================
# Verification
# =============================================================================

@router.post(
    "/verify/android",
    response_model=VerifyResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(create_rate_limit_dependency("verify"))],
)
async def verify_android_purchase(
    purchase: AndroidVerifyRequest,
    user_id: CurrentUserId,
    db: DBSession,
    validators: Validators,
):
    """
    Verify a Google Play subscription purchase and update the user's
    subscription.

    400 when the purchase is not valid or Google Play could not confirm it;
    the stored subscription is left unchanged then.
    """
    service = SubscriptionService(db, validators)
    outcome = await service.verify_purchase(
        user_id,
        AndroidPurchase(
            purchase_token=purchase.purchase_token,
            product_id=purchase.product_id,
            package_name=purchase.package_name,
        ),
    )
    return _verify_response(outcome)


@router.post(
    "/verify/ios",
    response_model=VerifyResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(create_rate_limit_dependency("verify"))],
)
async def verify_ios_purchase(
    purchase: IosVerifyRequest,
    user_id: CurrentUserId,
    db: DBSession,
    validators: Validators,
):
    """
    Verify an App Store receipt and update the user's subscription.

    Sandbox receipts sent to production are retried against the sandbox
    endpoint automatically.
    """
    service = SubscriptionService(db, validators)
    outcome = await service.verify_purchase(
        user_id,
        IosReceipt(receipt=purchase.receipt, product_id=purchase.product_id),
    )
    return _verify_response(outcome)


# =============================================================================
# Status & History
# =============================================================================

@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: CurrentUserId,
    db: DBSession,
):
    """
    Get the current entitlement picture: access, effective tier, limits
    and this month's usage.
    """
    details = await SubscriptionService(db).get_status(user_id)
    return SubscriptionStatusResponse(success=True, data=details)


@router.get("/history", response_model=HistoryResponse)
async def get_subscription_history(
    user_id: CurrentUserId,
    db: DBSession,
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    """Subscription state changes, newest first."""
    entries = await SubscriptionService(db).get_history(user_id, since=since, until=until, limit=limit)
    return HistoryResponse(
        success=True,
        data={"entries": entries, "count": len(entries)},
    )


# =============================================================================
# Usage & Features
# =============================================================================

@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    user_id: CurrentUserId,
    db: DBSession,
):
    """This month's usage counters with the limits of the current tier."""
    tracker = UsageTracker(db)
    tier = await tracker.resolve_tier(user_id)
    usage = await tracker.get_usage(user_id)

    return UsageResponse(
        success=True,
        data={
            "tier": tier.value,
            "limits": dict(get_tier_limits(tier)),
            "usage": usage_snapshot(usage),
        },
    )


@router.post(
    "/usage/{feature}",
    response_model=UsageRecordResponse,
    dependencies=[Depends(create_rate_limit_dependency("usage"))],
)
async def record_usage(
    feature: str,
    user_id: CurrentUserId,
    db: DBSession,
):
    """
    Count one use of a metered feature.

    403 ``FEATURE_LIMIT_REACHED`` when the tier's monthly limit is used up.
    """
    tracker = UsageTracker(db)
    record = await tracker.record_usage(user_id, feature)
    await db.commit()

    await CacheInvalidator.on_usage_change(user_id)
    return UsageRecordResponse(success=True, data=record)


@router.get("/features/check", response_model=FeatureCheckResponse)
async def check_feature(
    user_id: CurrentUserId,
    db: DBSession,
    feature: str = Query(..., min_length=1),
):
    """Whether the user may use ``feature`` now, without counting a use."""
    result = await UsageTracker(db).check_feature(user_id, feature)
    return FeatureCheckResponse(success=True, data=result)
