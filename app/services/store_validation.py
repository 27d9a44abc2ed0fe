"""
Store Validation
================

Shared pieces of the Google Play and App Store purchase validators:

- ``AndroidPurchase`` / ``IosReceipt``: the purchase artifact a client
  submits, one variant per platform
- ``ValidationResult``: what a store told us about an artifact
- ``call_with_retry``: bounded exponential backoff for transient store
  failures
- the shared ``httpx.AsyncClient`` used for store calls
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, ClassVar, Optional, Protocol, TypeVar, Union

import httpx

from app.config import settings
from app.core.errors import PurchaseValidationError
from app.models.subscription import Platform

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


# =============================================================================
# Artifacts and Results
# =============================================================================

@dataclass(frozen=True)
class AndroidPurchase:
    """Google Play subscription purchase token."""

    purchase_token: str
    product_id: str
    package_name: Optional[str] = None

    platform: ClassVar[Platform] = Platform.ANDROID


@dataclass(frozen=True)
class IosReceipt:
    """Base64 App Store receipt blob."""

    receipt: str
    product_id: Optional[str] = None

    platform: ClassVar[Platform] = Platform.IOS


PurchaseArtifact = Union[AndroidPurchase, IosReceipt]


@dataclass(frozen=True)
class ValidationResult:
    """
    Store answer for a purchase artifact.

    ``is_valid`` is the store confirming the purchase is genuine and paid.
    Whether it is still current is decided from ``expiry_date``.
    ``purchase_token`` is the key store notifications refer to: the Play
    purchase token, or the App Store original transaction id.
    """

    platform: Platform
    is_valid: bool
    expiry_date: Optional[datetime]
    auto_renewing: bool
    canonical_product_id: str
    purchase_token: str
    package_name: Optional[str] = None
    start_date: Optional[datetime] = None
    latest_receipt: Optional[str] = None
    environment: Optional[str] = None
    raw_status: Optional[int] = field(default=None, compare=False)


class StoreValidator(Protocol):
    """Anything that can validate an artifact for one platform."""

    async def validate(self, artifact) -> ValidationResult:
        ...


class StoreValidators:
    """Dispatches an artifact to the validator for its platform."""

    def __init__(self, android: StoreValidator, ios: StoreValidator):
        self._validators = {
            Platform.ANDROID: android,
            Platform.IOS: ios,
        }

    def for_platform(self, platform: Platform) -> StoreValidator:
        return self._validators[platform]

    @property
    def android(self) -> StoreValidator:
        return self._validators[Platform.ANDROID]

    @property
    def ios(self) -> StoreValidator:
        return self._validators[Platform.IOS]

    async def validate(self, artifact: PurchaseArtifact) -> ValidationResult:
        return await self.for_platform(artifact.platform).validate(artifact)


# =============================================================================
# Retry
# =============================================================================

class TransientStoreError(Exception):
    """One attempt failed in a way that may succeed if repeated."""


def classify_response(response: httpx.Response, platform: Platform) -> None:
    """
    Raise for store responses that are not a usable answer.

    Retryable statuses raise ``TransientStoreError``; anything else that
    is not 2xx means the store could not confirm the purchase.
    """
    if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
        raise TransientStoreError(f"store returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise PurchaseValidationError(
            f"Store request failed with HTTP {response.status_code}",
            reason=PurchaseValidationError.UNAVAILABLE,
            platform=platform.value,
            store_status=response.status_code,
        )


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(base * (2 ** (attempt - 1)), ceiling)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    platform: Platform,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    max_backoff: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or attempts run out.

    Only ``TransientStoreError`` is retried. When every attempt failed the
    result is a ``PurchaseValidationError`` with reason ``unavailable``,
    never an "invalid" answer.
    """
    attempts = attempts or settings.STORE_RETRY_ATTEMPTS
    backoff = settings.STORE_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    max_backoff = (
        settings.STORE_RETRY_BACKOFF_MAX_SECONDS if max_backoff is None else max_backoff
    )

    last_error: Optional[TransientStoreError] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = backoff_delay(attempt, backoff, max_backoff)
            logger.warning(
                "%s store call failed (attempt %d/%d): %s; retrying in %.2fs",
                platform.value,
                attempt,
                attempts,
                exc,
                delay,
            )
            if delay > 0:
                await sleep(delay)

    logger.error(
        "%s store call gave up after %d attempts: %s",
        platform.value,
        attempts,
        last_error,
    )
    raise PurchaseValidationError(
        "Could not reach the store to confirm the purchase",
        reason=PurchaseValidationError.UNAVAILABLE,
        platform=platform.value,
    ) from last_error


# =============================================================================
# Shared HTTP client
# =============================================================================

_http_client: Optional[httpx.AsyncClient] = None


def get_store_http_client() -> httpx.AsyncClient:
    """Get the shared client for store API calls, creating it on first use."""
    global _http_client

    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.STORE_HTTP_TIMEOUT_SECONDS),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
    return _http_client


async def close_store_http_client() -> None:
    """Close the shared store client."""
    global _http_client

    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
