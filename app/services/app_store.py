"""
App Store Validator
===================

Validates auto-renewable subscription receipts with Apple's
``verifyReceipt`` endpoint.

A receipt from the sandbox sent to production answers status 21007; the
receipt is then sent to the sandbox endpoint once and that answer is the
result.
"""

import logging
from typing import Any, Optional

import httpx

from app.config import settings
from app.core.errors import PurchaseValidationError
from app.models.subscription import Platform
from app.services.store_validation import (
    IosReceipt,
    TransientStoreError,
    ValidationResult,
    call_with_retry,
    classify_response,
)
from app.utils.helpers import ms_to_datetime

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007
# Apple asks to retry these
STATUS_SERVER_UNAVAILABLE = 21005
INTERNAL_ERROR_RANGE = range(21100, 21200)


def is_retryable_status(data: dict[str, Any]) -> bool:
    """Apple statuses that describe its own trouble rather than the receipt's."""
    status = data.get("status")
    return (
        bool(data.get("is_retryable"))
        or status == STATUS_SERVER_UNAVAILABLE
        or status in INTERNAL_ERROR_RANGE
    )


def latest_transaction(entries: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Entry with the furthest expiry; entries without one sort first."""
    if not entries:
        return None

    def expires_ms(entry: dict[str, Any]) -> int:
        try:
            return int(entry.get("expires_date_ms") or 0)
        except (TypeError, ValueError):
            return 0

    return max(entries, key=expires_ms)


def renewal_flag(
    data: dict[str, Any],
    original_transaction_id: str,
    latest: dict[str, Any],
) -> bool:
    """auto_renew_status for the subscription group the transaction belongs to."""
    for info in data.get("pending_renewal_info") or []:
        if str(info.get("original_transaction_id")) == original_transaction_id:
            return str(info.get("auto_renew_status")) == "1"
    return str(latest.get("auto_renew_status", "0")) == "1"


class IosValidator:
    """Validator for App Store receipts."""

    platform = Platform.IOS

    def __init__(
        self,
        client: httpx.AsyncClient,
        shared_secret: Optional[str] = None,
        production_url: Optional[str] = None,
        sandbox_url: Optional[str] = None,
        **retry_options,
    ):
        self.client = client
        self.shared_secret = (
            settings.APPLE_SHARED_SECRET if shared_secret is None else shared_secret
        )
        self.production_url = production_url or settings.APPLE_VERIFY_RECEIPT_URL
        self.sandbox_url = sandbox_url or settings.APPLE_SANDBOX_VERIFY_RECEIPT_URL
        self.retry_options = retry_options

    async def validate(self, artifact: IosReceipt) -> ValidationResult:
        """
        Verify a receipt and summarise its latest transaction.

        Raises:
            PurchaseValidationError: rejected for any non-zero status other
                than the sandbox redirect, unavailable when Apple could not
                be reached.
        """
        body = {
            "receipt-data": artifact.receipt,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }

        data = await self._verify(self.production_url, body)
        if data.get("status") == STATUS_SANDBOX_RECEIPT:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            data = await self._verify(self.sandbox_url, body)

        status = data.get("status")
        if status != STATUS_OK:
            logger.info("App Store rejected receipt with status %s", status)
            raise PurchaseValidationError(
                f"App Store rejected the receipt (status {status})",
                reason=PurchaseValidationError.REJECTED,
                platform=self.platform.value,
                store_status=status,
            )

        return self._build_result(artifact, data)

    async def _verify(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            try:
                response = await self.client.post(url, json=body)
            except httpx.TransportError as exc:
                raise TransientStoreError(f"{type(exc).__name__}: {exc}") from exc

            classify_response(response, self.platform)

            try:
                data = response.json()
            except ValueError as exc:
                raise TransientStoreError("unparseable App Store response") from exc
            if not isinstance(data, dict) or "status" not in data:
                raise TransientStoreError("App Store response has no status")
            if is_retryable_status(data):
                raise TransientStoreError(f"App Store status {data.get('status')}")
            return data

        return await call_with_retry(attempt, platform=self.platform, **self.retry_options)

    def _build_result(self, artifact: IosReceipt, data: dict[str, Any]) -> ValidationResult:
        entries = data.get("latest_receipt_info")
        if not entries:
            entries = (data.get("receipt") or {}).get("in_app") or []

        latest = latest_transaction(entries)
        if latest is None or not latest.get("original_transaction_id"):
            raise PurchaseValidationError(
                "Receipt contains no subscription transactions",
                reason=PurchaseValidationError.REJECTED,
                platform=self.platform.value,
                store_status=data.get("status"),
            )

        original_transaction_id = str(latest["original_transaction_id"])
        expiry_date = ms_to_datetime(latest.get("expires_date_ms"))
        refunded = bool(latest.get("cancellation_date_ms"))
        if refunded:
            logger.info("Latest transaction %s was refunded", original_transaction_id)

        return ValidationResult(
            platform=self.platform,
            is_valid=expiry_date is not None and not refunded,
            expiry_date=expiry_date,
            auto_renewing=renewal_flag(data, original_transaction_id, latest),
            canonical_product_id=latest.get("product_id") or artifact.product_id or "",
            purchase_token=original_transaction_id,
            start_date=ms_to_datetime(latest.get("purchase_date_ms")),
            latest_receipt=data.get("latest_receipt") or artifact.receipt,
            environment=data.get("environment"),
            raw_status=data.get("status"),
        )
