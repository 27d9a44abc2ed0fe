"""
Store Validator Tests
=====================

Google Play and App Store validators against mocked store endpoints.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core.errors import PurchaseValidationError
from app.models.subscription import Platform
from app.services.app_store import IosValidator
from app.services.play_store import AndroidValidator
from app.services.store_validation import (
    AndroidPurchase,
    IosReceipt,
    TransientStoreError,
    backoff_delay,
    call_with_retry,
)
from tests.conftest import ms

PROD_URL = "https://buy.itunes.test/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.test/verifyReceipt"
PLAY_URL = "https://play.test/androidpublisher/v3"

NO_BACKOFF = {"attempts": 3, "backoff": 0, "max_backoff": 0}


async def fake_token() -> str:
    return "access-token"


def ios_payload(expiry: datetime, status: int = 0, **latest) -> dict:
    entry = {
        "product_id": "com.rezepta.premium.monthly",
        "original_transaction_id": "1000000123456789",
        "purchase_date_ms": ms(expiry - timedelta(days=30)),
        "expires_date_ms": ms(expiry),
    }
    entry.update(latest)
    return {
        "status": status,
        "environment": "Production",
        "latest_receipt": "bGF0ZXN0",
        "latest_receipt_info": [entry],
        "pending_renewal_info": [
            {"original_transaction_id": "1000000123456789", "auto_renew_status": "1"},
        ],
    }


def make_ios_validator(handler) -> IosValidator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IosValidator(
        client,
        shared_secret="secret",
        production_url=PROD_URL,
        sandbox_url=SANDBOX_URL,
        **NO_BACKOFF,
    )


def make_android_validator(handler) -> AndroidValidator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AndroidValidator(
        client,
        fake_token,
        package_name="com.rezepta.app",
        base_url=PLAY_URL,
        **NO_BACKOFF,
    )


class TestRetry:
    """Tests for the shared retry helper."""

    def test_backoff_is_exponential_and_capped(self):
        assert backoff_delay(1, 0.5, 4.0) == 0.5
        assert backoff_delay(2, 0.5, 4.0) == 1.0
        assert backoff_delay(10, 0.5, 4.0) == 4.0

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientStoreError("timeout")
            return "ok"

        result = await call_with_retry(flaky, platform=Platform.IOS, **NO_BACKOFF)

        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_unavailable(self):
        async def down():
            raise TransientStoreError("503")

        with pytest.raises(PurchaseValidationError) as exc_info:
            await call_with_retry(down, platform=Platform.ANDROID, **NO_BACKOFF)

        assert exc_info.value.reason == PurchaseValidationError.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_rejections_are_not_retried(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise PurchaseValidationError("no", reason=PurchaseValidationError.REJECTED)

        with pytest.raises(PurchaseValidationError):
            await call_with_retry(rejected, platform=Platform.IOS, **NO_BACKOFF)

        assert len(calls) == 1


class TestIosValidator:
    """Tests for App Store receipt validation."""

    @pytest.mark.asyncio
    async def test_valid_receipt(self):
        expiry = datetime.now(timezone.utc) + timedelta(days=20)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=ios_payload(expiry))

        result = await make_ios_validator(handler).validate(IosReceipt(receipt="cmVjZWlwdA=="))

        assert result.is_valid
        assert result.platform == Platform.IOS
        assert result.purchase_token == "1000000123456789"
        assert result.canonical_product_id == "com.rezepta.premium.monthly"
        assert result.auto_renewing is True
        assert result.latest_receipt == "bGF0ZXN0"
        assert abs((result.expiry_date - expiry).total_seconds()) < 1

    @pytest.mark.asyncio
    async def test_sandbox_receipt_is_retried_against_sandbox_once(self):
        expiry = datetime.now(timezone.utc) + timedelta(days=3)
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if str(request.url) == PROD_URL:
                return httpx.Response(200, json={"status": 21007})
            return httpx.Response(200, json=ios_payload(expiry))

        result = await make_ios_validator(handler).validate(IosReceipt(receipt="cmVjZWlwdA=="))

        assert result.is_valid
        assert seen == [PROD_URL, SANDBOX_URL]

    @pytest.mark.asyncio
    async def test_rejected_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": 21003})

        with pytest.raises(PurchaseValidationError) as exc_info:
            await make_ios_validator(handler).validate(IosReceipt(receipt="bad"))

        assert exc_info.value.reason == PurchaseValidationError.REJECTED
        assert exc_info.value.store_status == 21003

    @pytest.mark.asyncio
    async def test_server_errors_retry_then_unavailable(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503)

        with pytest.raises(PurchaseValidationError) as exc_info:
            await make_ios_validator(handler).validate(IosReceipt(receipt="cmVjZWlwdA=="))

        assert exc_info.value.reason == PurchaseValidationError.UNAVAILABLE
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_refunded_transaction_is_invalid(self):
        expiry = datetime.now(timezone.utc) + timedelta(days=20)
        payload = ios_payload(expiry, cancellation_date_ms=ms(datetime.now(timezone.utc)))

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=payload)

        result = await make_ios_validator(handler).validate(IosReceipt(receipt="cmVjZWlwdA=="))

        assert not result.is_valid


class TestAndroidValidator:
    """Tests for Google Play token validation."""

    @pytest.mark.asyncio
    async def test_paid_purchase_is_valid(self):
        expiry = datetime.now(timezone.utc) + timedelta(days=30)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer access-token"
            assert request.url.path.endswith(
                "/applications/com.rezepta.app/purchases/subscriptions/com.app.premium/tokens/tok123"
            )
            return httpx.Response(
                200,
                json={
                    "expiryTimeMillis": ms(expiry),
                    "startTimeMillis": ms(expiry - timedelta(days=30)),
                    "autoRenewing": True,
                    "paymentState": 1,
                },
            )

        result = await make_android_validator(handler).validate(
            AndroidPurchase(purchase_token="tok123", product_id="com.app.premium")
        )

        assert result.is_valid
        assert result.auto_renewing
        assert result.purchase_token == "tok123"
        assert result.package_name == "com.rezepta.app"

    @pytest.mark.asyncio
    async def test_pending_payment_is_invalid(self):
        expiry = datetime.now(timezone.utc) + timedelta(days=30)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"expiryTimeMillis": ms(expiry), "paymentState": 0})

        result = await make_android_validator(handler).validate(
            AndroidPurchase(purchase_token="tok123", product_id="com.app.premium")
        )

        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_unknown_token_is_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": {"code": 404}})

        with pytest.raises(PurchaseValidationError) as exc_info:
            await make_android_validator(handler).validate(
                AndroidPurchase(purchase_token="nope", product_id="com.app.premium")
            )

        assert exc_info.value.reason == PurchaseValidationError.REJECTED

    @pytest.mark.asyncio
    async def test_network_failure_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PurchaseValidationError) as exc_info:
            await make_android_validator(handler).validate(
                AndroidPurchase(purchase_token="tok123", product_id="com.app.premium")
            )

        assert exc_info.value.is_unavailable
