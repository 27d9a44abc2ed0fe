"""
Subscription Schemas
====================

Pydantic schemas for purchase verification, entitlement and webhook
endpoints.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.common import BaseResponse


# ─── Verification Requests ───────────────────────────────────────────────────


class AndroidVerifyRequest(BaseModel):
    """Google Play purchase submitted by the client after buying."""

    model_config = ConfigDict(populate_by_name=True)

    purchase_token: str = Field(alias="purchaseToken", min_length=1, max_length=512)
    product_id: str = Field(alias="productId", min_length=1, max_length=255)
    package_name: Optional[str] = Field(default=None, alias="packageName", max_length=255)


class IosVerifyRequest(BaseModel):
    """Base64 App Store receipt submitted by the client after buying."""

    model_config = ConfigDict(populate_by_name=True)

    receipt: str = Field(min_length=1)
    product_id: Optional[str] = Field(default=None, alias="productId", max_length=255)


# ─── Subscription Data ───────────────────────────────────────────────────────


class SubscriptionData(BaseModel):
    """Stored subscription record."""

    user_id: str
    platform: str
    product_id: str
    tier: str
    status: str
    expiry_date: Optional[str] = None
    auto_renewing: bool
    last_verified_at: Optional[str] = None
    updated_at: Optional[str] = None


class VerifyData(BaseModel):
    subscription: SubscriptionData
    outcome: str
    is_active: bool


class UsageCounters(BaseModel):
    recipes_created: int = 0
    meal_plans_created: int = 0
    price_alerts_set: int = 0
    collections_created: int = 0
    last_reset: Optional[str] = None


class TierLimitsData(BaseModel):
    recipes_per_month: int
    meal_plans: int
    price_alerts: int
    collections: int
    advanced_search: bool
    ad_free: bool


class SubscriptionDetails(BaseModel):
    """
    Entitlement picture for the current user.

    ``tier`` is what the user can use now: the subscription tier while
    active, ``free`` otherwise. ``subscription_tier`` is what they bought.
    """

    is_active: bool
    tier: str
    subscription_tier: Optional[str] = None
    status: Optional[str] = None
    platform: Optional[str] = None
    product_id: Optional[str] = None
    expiry_date: Optional[str] = None
    auto_renewing: bool = False
    limits: TierLimitsData
    usage: UsageCounters


class HistoryEntry(BaseModel):
    id: int
    platform: str
    product_id: str
    old_status: Optional[str] = None
    new_status: str
    old_tier: Optional[str] = None
    new_tier: str
    event_type: str
    source: str
    event_time: Optional[str] = None
    expiry_date: Optional[str] = None
    timestamp: Optional[str] = None


class HistoryData(BaseModel):
    entries: list[HistoryEntry]
    count: int


# ─── Usage & Features ────────────────────────────────────────────────────────


class UsageRecordData(BaseModel):
    feature: str
    tier: str
    limit: int
    used: int
    remaining: Optional[int] = None


class FeatureCheckData(BaseModel):
    feature: str
    allowed: bool
    tier: str
    limit: int | bool
    used: Optional[int] = None
    remaining: Optional[int] = None
    required_tier: str


class UsageData(BaseModel):
    tier: str
    limits: TierLimitsData
    usage: UsageCounters


# ─── Webhooks ────────────────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    """Acknowledgement returned to the store once the outcome is committed."""

    received: bool = True
    outcome: str
    duplicate: bool = False


# ─── Response Wrappers ───────────────────────────────────────────────────────


VerifyResponse = BaseResponse[VerifyData]
SubscriptionStatusResponse = BaseResponse[SubscriptionDetails]
HistoryResponse = BaseResponse[HistoryData]
UsageResponse = BaseResponse[UsageData]
UsageRecordResponse = BaseResponse[UsageRecordData]
FeatureCheckResponse = BaseResponse[FeatureCheckData]
