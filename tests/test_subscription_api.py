"""
Subscription API Tests
======================

Purchase verification, status, history, usage and feature checks over
HTTP.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.errors import ErrorCodes, PurchaseValidationError
from app.models.subscription import Platform, Subscription
from app.services.cache import CacheKeys
from tests.conftest import USER_ID, make_result

BASE = "/api/v1/subscriptions"


async def verify_android(client, product_id: str = "com.app.premium"):
    return await client.post(
        f"{BASE}/verify/android",
        json={"purchaseToken": "tok123", "productId": product_id},
    )


async def load_subscription(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Subscription).where(Subscription.user_id == USER_ID))
        return result.scalar_one_or_none()


class TestVerify:
    """Tests for purchase verification."""

    @pytest.mark.asyncio
    async def test_android_purchase_activates_premium(self, client, android_validator, fake_redis):
        response = await verify_android(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["outcome"] == "applied"
        assert data["is_active"] is True
        assert data["subscription"]["tier"] == "premium"
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["platform"] == "android"

        artifact = android_validator.calls[0]
        assert artifact.purchase_token == "tok123"
        assert artifact.product_id == "com.app.premium"

        notices = fake_redis.streams[CacheKeys.user_notice_stream()]
        assert notices[-1]["notice"] == "subscription_activated"
        assert notices[-1]["user_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_ios_receipt(self, client, ios_validator):
        response = await client.post(f"{BASE}/verify/ios", json={"receipt": "cmVjZWlwdA=="})

        assert response.status_code == 200
        assert response.json()["data"]["subscription"]["platform"] == "ios"
        assert ios_validator.calls[0].receipt == "cmVjZWlwdA=="

    @pytest.mark.asyncio
    async def test_reverify_is_unchanged(self, client):
        await verify_android(client)

        response = await verify_android(client)

        assert response.status_code == 200
        assert response.json()["data"]["outcome"] == "unchanged"

    @pytest.mark.asyncio
    async def test_invalid_purchase_leaves_subscription_untouched(
        self, client, session_factory, android_validator
    ):
        await verify_android(client)
        android_validator.result = make_result(
            expiry=datetime.now(timezone.utc) - timedelta(days=1),
            is_valid=False,
        )

        response = await verify_android(client)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == ErrorCodes.SUB_VALIDATION_FAILED
        assert error["reason"] == PurchaseValidationError.REJECTED
        sub = await load_subscription(session_factory)
        assert sub.version == 1
        assert sub.expiry_date > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client, session_factory, android_validator):
        android_validator.error = PurchaseValidationError(
            "Could not reach the store",
            reason=PurchaseValidationError.UNAVAILABLE,
            platform=Platform.ANDROID.value,
        )

        response = await verify_android(client)

        assert response.status_code == 400
        assert response.json()["error"]["reason"] == PurchaseValidationError.UNAVAILABLE
        assert await load_subscription(session_factory) is None

    @pytest.mark.asyncio
    async def test_missing_token_is_422(self, client):
        response = await client.post(f"{BASE}/verify/android", json={"productId": "com.app.premium"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == ErrorCodes.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_verify_is_rate_limited(self, client):
        for _ in range(10):
            await verify_android(client)

        response = await verify_android(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == ErrorCodes.RATE_LIMIT_EXCEEDED
        assert "retry-after" in response.headers


class TestStatus:
    """Tests for status and history."""

    @pytest.mark.asyncio
    async def test_status_without_subscription(self, client):
        response = await client.get(f"{BASE}/status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_active"] is False
        assert data["tier"] == "free"

    @pytest.mark.asyncio
    async def test_status_after_verify(self, client, fake_redis):
        await verify_android(client)

        response = await client.get(f"{BASE}/status")

        data = response.json()["data"]
        assert data["is_active"] is True
        assert data["tier"] == "premium"
        assert data["limits"]["recipes_per_month"] == 100
        assert await fake_redis.exists(CacheKeys.subscription_details(USER_ID))

    @pytest.mark.asyncio
    async def test_verify_invalidates_cached_status(self, client):
        await client.get(f"{BASE}/status")
        await verify_android(client)

        response = await client.get(f"{BASE}/status")

        assert response.json()["data"]["tier"] == "premium"

    @pytest.mark.asyncio
    async def test_history(self, client):
        await verify_android(client)

        response = await client.get(f"{BASE}/history")

        data = response.json()["data"]
        assert data["count"] == 1
        entry = data["entries"][0]
        assert entry["old_status"] is None
        assert entry["new_status"] == "active"
        assert entry["new_tier"] == "premium"
        assert entry["source"] == "validation"

    @pytest.mark.asyncio
    async def test_history_time_range(self, client):
        await verify_android(client)
        since = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()

        response = await client.get(f"{BASE}/history", params={"since": since})

        assert response.json()["data"]["count"] == 0


class TestUsage:
    """Tests for usage and feature endpoints."""

    @pytest.mark.asyncio
    async def test_record_usage_until_limit(self, client):
        for _ in range(3):
            response = await client.post(f"{BASE}/usage/price_alerts")
            assert response.status_code == 200

        response = await client.post(f"{BASE}/usage/price_alerts")

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == ErrorCodes.FEATURE_LIMIT_REACHED
        assert error["limit"] == 3
        assert error["current_tier"] == "free"

    @pytest.mark.asyncio
    async def test_usage_endpoint(self, client):
        await client.post(f"{BASE}/usage/collections")

        response = await client.get(f"{BASE}/usage")

        data = response.json()["data"]
        assert data["tier"] == "free"
        assert data["usage"]["collections_created"] == 1
        assert data["limits"]["collections"] == 2

    @pytest.mark.asyncio
    async def test_unknown_feature_is_400(self, client):
        response = await client.post(f"{BASE}/usage/teleportation")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCodes.FEATURE_UNKNOWN

    @pytest.mark.asyncio
    async def test_feature_check(self, client):
        await verify_android(client)

        response = await client.get(f"{BASE}/features/check", params={"feature": "ad_free"})

        data = response.json()["data"]
        assert data["allowed"] is True
        assert data["tier"] == "premium"
