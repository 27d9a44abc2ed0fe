"""
Entitlements
============

Static tier limits, product-to-tier mapping and the feature gate.

Limits are read-only and shared across requests; ``-1`` means unlimited.
"""

from types import MappingProxyType
from typing import Mapping, Optional, Union

from app.models.subscription import SubscriptionTier

UNLIMITED = -1

LimitValue = Union[int, bool]


# Feature limits by subscription tier
TIER_LIMITS: Mapping[SubscriptionTier, Mapping[str, LimitValue]] = MappingProxyType({
    SubscriptionTier.FREE: MappingProxyType({
        "recipes_per_month": 5,
        "meal_plans": 1,
        "price_alerts": 3,
        "collections": 2,
        "advanced_search": False,
        "ad_free": False,
    }),
    SubscriptionTier.BASIC: MappingProxyType({
        "recipes_per_month": 20,
        "meal_plans": 3,
        "price_alerts": 10,
        "collections": 5,
        "advanced_search": True,
        "ad_free": False,
    }),
    SubscriptionTier.PREMIUM: MappingProxyType({
        "recipes_per_month": 100,
        "meal_plans": 10,
        "price_alerts": 50,
        "collections": 20,
        "advanced_search": True,
        "ad_free": True,
    }),
    SubscriptionTier.PROFESSIONAL: MappingProxyType({
        "recipes_per_month": UNLIMITED,
        "meal_plans": UNLIMITED,
        "price_alerts": UNLIMITED,
        "collections": UNLIMITED,
        "advanced_search": True,
        "ad_free": True,
    }),
})

# Metered features and the FeatureUsage counter that tracks each one
METERED_FEATURES: Mapping[str, str] = MappingProxyType({
    "recipes_per_month": "recipes_created",
    "meal_plans": "meal_plans_created",
    "price_alerts": "price_alerts_set",
    "collections": "collections_created",
})

BOOLEAN_FEATURES = frozenset({"advanced_search", "ad_free"})

ALL_FEATURES = frozenset(METERED_FEATURES) | BOOLEAN_FEATURES

# Tier order, lowest first
TIER_ORDER = (
    SubscriptionTier.FREE,
    SubscriptionTier.BASIC,
    SubscriptionTier.PREMIUM,
    SubscriptionTier.PROFESSIONAL,
)

# Store product identifiers
PRODUCT_TIERS: Mapping[str, SubscriptionTier] = MappingProxyType({
    "com.app.basic": SubscriptionTier.BASIC,
    "com.app.premium": SubscriptionTier.PREMIUM,
    "com.app.professional": SubscriptionTier.PROFESSIONAL,
    "com.rezepta.basic": SubscriptionTier.BASIC,
    "com.rezepta.premium": SubscriptionTier.PREMIUM,
    "com.rezepta.professional": SubscriptionTier.PROFESSIONAL,
    # Google Play subscription ids
    "basic_monthly": SubscriptionTier.BASIC,
    "basic_yearly": SubscriptionTier.BASIC,
    "premium_monthly": SubscriptionTier.PREMIUM,
    "premium_yearly": SubscriptionTier.PREMIUM,
    "professional_monthly": SubscriptionTier.PROFESSIONAL,
    "professional_yearly": SubscriptionTier.PROFESSIONAL,
    # App Store product ids
    "com.rezepta.basic.monthly": SubscriptionTier.BASIC,
    "com.rezepta.basic.yearly": SubscriptionTier.BASIC,
    "com.rezepta.premium.monthly": SubscriptionTier.PREMIUM,
    "com.rezepta.premium.yearly": SubscriptionTier.PREMIUM,
    "com.rezepta.professional.monthly": SubscriptionTier.PROFESSIONAL,
    "com.rezepta.professional.yearly": SubscriptionTier.PROFESSIONAL,
})


def tier_for_product(product_id: Optional[str]) -> SubscriptionTier:
    """
    Map a store product identifier to a subscription tier.

    Exact catalog matches win; otherwise the highest tier keyword found in
    the identifier is used. Unknown products grant nothing.
    """
    if not product_id:
        return SubscriptionTier.FREE

    tier = PRODUCT_TIERS.get(product_id)
    if tier is not None:
        return tier

    lowered = product_id.lower()
    for candidate in reversed(TIER_ORDER[1:]):
        if candidate.value in lowered:
            return candidate
    return SubscriptionTier.FREE


def get_tier_limits(tier: SubscriptionTier) -> Mapping[str, LimitValue]:
    """Get feature limits for a subscription tier."""
    return TIER_LIMITS.get(tier, TIER_LIMITS[SubscriptionTier.FREE])


def get_limit(tier: SubscriptionTier, feature: str) -> LimitValue:
    """Limit for a single feature; unknown features are closed."""
    return get_tier_limits(tier).get(feature, False)


def is_unlimited(limit: LimitValue) -> bool:
    """True for counted limits that never block."""
    return not isinstance(limit, bool) and limit == UNLIMITED


def allows_usage(limit: LimitValue, used: int) -> bool:
    """Check whether one more use of a feature fits inside ``limit``."""
    if isinstance(limit, bool):
        return limit
    if limit == UNLIMITED:
        return True
    return used < limit


def get_required_tier_for_feature(feature: str) -> SubscriptionTier:
    """Get the minimum tier that has any access to a feature."""
    for tier in TIER_ORDER:
        limit = TIER_LIMITS[tier].get(feature, False)
        if limit is True or (not isinstance(limit, bool) and limit != 0):
            return tier
    return SubscriptionTier.PROFESSIONAL

