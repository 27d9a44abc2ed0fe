"""
Google Play Validator
=====================

Validates subscription purchase tokens against the Google Play
Developer API (``purchases.subscriptions.get``).

Authentication uses a service account with the androidpublisher scope.
google-auth refreshes tokens with a blocking ``requests`` call, so the
refresh runs in a worker thread.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from app.config import settings
from app.core.errors import PurchaseValidationError
from app.models.subscription import Platform
from app.services.store_validation import (
    AndroidPurchase,
    TransientStoreError,
    ValidationResult,
    call_with_retry,
    classify_response,
)
from app.utils.helpers import ms_to_datetime

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# purchases.subscriptions paymentState
PAYMENT_PENDING = 0
PAYMENT_RECEIVED = 1
PAYMENT_FREE_TRIAL = 2
PAYMENT_DEFERRED = 3

TokenProvider = Callable[[], Awaitable[str]]


class ServiceAccountTokenProvider:
    """Hands out a valid OAuth access token for the Play Developer API."""

    def __init__(self, credentials_file: Optional[str]):
        self._credentials_file = credentials_file
        self._credentials: Optional[service_account.Credentials] = None
        self._lock = asyncio.Lock()

    async def __call__(self) -> str:
        async with self._lock:
            if self._credentials is None:
                if not self._credentials_file:
                    raise PurchaseValidationError(
                        "Google Play service account is not configured",
                        reason=PurchaseValidationError.UNAVAILABLE,
                        platform=Platform.ANDROID.value,
                    )
                self._credentials = service_account.Credentials.from_service_account_file(
                    self._credentials_file,
                    scopes=[ANDROID_PUBLISHER_SCOPE],
                )

            if not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except google_auth_exceptions.TransportError as exc:
                    raise TransientStoreError(f"token refresh failed: {exc}") from exc
                except google_auth_exceptions.RefreshError as exc:
                    logger.error("Google Play service account refresh rejected: %s", exc)
                    raise PurchaseValidationError(
                        "Google Play credentials were rejected",
                        reason=PurchaseValidationError.UNAVAILABLE,
                        platform=Platform.ANDROID.value,
                    ) from exc

            return self._credentials.token


class AndroidValidator:
    """Validator for Google Play subscription purchases."""

    platform = Platform.ANDROID

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_provider: TokenProvider,
        package_name: Optional[str] = None,
        base_url: Optional[str] = None,
        **retry_options,
    ):
        self.client = client
        self.token_provider = token_provider
        self.package_name = package_name or settings.GOOGLE_PLAY_PACKAGE_NAME
        self.base_url = (base_url or settings.GOOGLE_PLAY_API_BASE_URL).rstrip("/")
        self.retry_options = retry_options

    def _subscription_url(self, package_name: str, product_id: str, token: str) -> str:
        return (
            f"{self.base_url}/applications/{quote(package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}"
            f"/tokens/{quote(token, safe='')}"
        )

    async def validate(self, artifact: AndroidPurchase) -> ValidationResult:
        """
        Look the purchase token up and report its payment state.

        Raises:
            PurchaseValidationError: rejected when Google does not know the
                token, unavailable when Google could not be asked.
        """
        package_name = artifact.package_name or self.package_name
        url = self._subscription_url(package_name, artifact.product_id, artifact.purchase_token)

        async def attempt() -> dict[str, Any]:
            access_token = await self.token_provider()
            try:
                response = await self.client.get(
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.TransportError as exc:
                raise TransientStoreError(f"{type(exc).__name__}: {exc}") from exc

            if response.status_code in (400, 404, 410):
                raise PurchaseValidationError(
                    "Google Play does not recognise this purchase",
                    reason=PurchaseValidationError.REJECTED,
                    platform=self.platform.value,
                    store_status=response.status_code,
                )
            classify_response(response, self.platform)

            try:
                return response.json()
            except ValueError as exc:
                raise TransientStoreError("unparseable Google Play response") from exc

        data = await call_with_retry(attempt, platform=self.platform, **self.retry_options)
        return self._build_result(artifact, package_name, data)

    def _build_result(
        self,
        artifact: AndroidPurchase,
        package_name: str,
        data: dict[str, Any],
    ) -> ValidationResult:
        expiry_date = ms_to_datetime(data.get("expiryTimeMillis"))
        if expiry_date is None:
            raise PurchaseValidationError(
                "Google Play response has no expiry time",
                reason=PurchaseValidationError.UNAVAILABLE,
                platform=self.platform.value,
            )

        payment_state = data.get("paymentState")
        is_valid = payment_state == PAYMENT_RECEIVED
        if not is_valid:
            logger.info(
                "Play purchase for %s not paid (paymentState=%s)",
                artifact.product_id,
                payment_state,
            )

        return ValidationResult(
            platform=self.platform,
            is_valid=is_valid,
            expiry_date=expiry_date,
            auto_renewing=bool(data.get("autoRenewing", False)),
            canonical_product_id=artifact.product_id,
            purchase_token=artifact.purchase_token,
            package_name=package_name,
            start_date=ms_to_datetime(data.get("startTimeMillis")),
            raw_status=payment_state,
        )
