"""
Store Notification Decoding
===========================

Turns raw webhook bodies into ``NotificationEvent`` objects.

Google Play real-time developer notifications arrive as a Pub/Sub push:
``{"message": {"data": <base64 JSON>, "messageId": ..., "publishTime": ...}}``.

App Store server notifications (v1) are plain JSON with
``notification_type`` and the ``unified_receipt``.

Anything that cannot be decoded raises ``NotificationDecodeError``.
"""

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Optional, Union

from app.core.errors import NotificationDecodeError
from app.models.subscription import Platform, SubscriptionEventType
from app.services.app_store import latest_transaction
from app.services.reconciliation import SubscriptionEvent
from app.utils.helpers import ms_to_datetime, parse_date

RawBody = Union[bytes, str, dict]


@dataclass(frozen=True)
class NotificationEvent:
    """A decoded store notification."""

    platform: Platform
    message_id: str
    notification_type: str
    event: SubscriptionEvent
    purchase_token: Optional[str] = None
    product_id: Optional[str] = None
    package_name: Optional[str] = None
    latest_receipt: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    payload: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def kind(self) -> SubscriptionEventType:
        return self.event.kind

    @property
    def is_actionable(self) -> bool:
        return self.kind != SubscriptionEventType.IGNORED and bool(self.purchase_token)


# =============================================================================
# Helpers
# =============================================================================

def _load_json(body: RawBody) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise NotificationDecodeError(f"Body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise NotificationDecodeError("Body must be a JSON object")
    return data


def payload_digest(payload: dict[str, Any]) -> str:
    """Stable id for payloads that carry none."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _timestamp(value: Any, name: str) -> Optional[datetime]:
    """Store epoch millis, or None when absent. Garbage is malformed."""
    if value is None or value == "":
        return None
    moment = ms_to_datetime(value)
    if moment is None:
        raise NotificationDecodeError(f"{name} is not a valid timestamp: {value!r}")
    return moment


def _structural_errors(decoder: Callable[..., NotificationEvent]) -> Callable[..., NotificationEvent]:
    """Report a payload of the wrong shape as malformed."""

    @wraps(decoder)
    def wrapper(body: RawBody, received_at: datetime) -> NotificationEvent:
        try:
            return decoder(body, received_at)
        except NotificationDecodeError:
            raise
        except (TypeError, ValueError, AttributeError, KeyError) as exc:
            raise NotificationDecodeError(f"Unexpected payload structure: {exc}") from exc

    return wrapper


def _flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true")


# =============================================================================
# Google Play
# =============================================================================

# subscriptionNotification.notificationType
ANDROID_NOTIFICATION_TYPES: dict[int, tuple[str, SubscriptionEventType]] = {
    1: ("SUBSCRIPTION_RECOVERED", SubscriptionEventType.RECOVERED),
    2: ("SUBSCRIPTION_RENEWED", SubscriptionEventType.RENEWAL),
    3: ("SUBSCRIPTION_CANCELED", SubscriptionEventType.CANCELED),
    4: ("SUBSCRIPTION_PURCHASED", SubscriptionEventType.RENEWAL),
    5: ("SUBSCRIPTION_ON_HOLD", SubscriptionEventType.ON_HOLD),
    6: ("SUBSCRIPTION_IN_GRACE_PERIOD", SubscriptionEventType.GRACE_PERIOD),
    7: ("SUBSCRIPTION_RESTARTED", SubscriptionEventType.RENEWAL),
    8: ("SUBSCRIPTION_PRICE_CHANGE_CONFIRMED", SubscriptionEventType.IGNORED),
    9: ("SUBSCRIPTION_DEFERRED", SubscriptionEventType.IGNORED),
    10: ("SUBSCRIPTION_PAUSED", SubscriptionEventType.ON_HOLD),
    11: ("SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED", SubscriptionEventType.IGNORED),
    12: ("SUBSCRIPTION_REVOKED", SubscriptionEventType.REVOKED),
    13: ("SUBSCRIPTION_EXPIRED", SubscriptionEventType.EXPIRED),
    20: ("SUBSCRIPTION_PENDING_PURCHASE_CANCELED", SubscriptionEventType.IGNORED),
}

# voidedPurchaseNotification.productType
VOIDED_SUBSCRIPTION = 1


@_structural_errors
def decode_android(body: RawBody, received_at: datetime) -> NotificationEvent:
    """Decode a Google Play Pub/Sub push envelope."""
    envelope = _load_json(body)

    message = envelope.get("message")
    if not isinstance(message, dict):
        raise NotificationDecodeError("Envelope has no message object")

    data = message.get("data")
    if not isinstance(data, str) or not data:
        raise NotificationDecodeError("Message has no data")

    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise NotificationDecodeError(f"Message data is not base64: {exc}") from exc
    inner = _load_json(decoded)

    message_id = message.get("messageId") or message.get("message_id") or payload_digest(inner)
    event_time = _timestamp(inner.get("eventTimeMillis"), "eventTimeMillis")
    if event_time is None and message.get("publishTime"):
        try:
            event_time = parse_date(str(message["publishTime"]))
        except ValueError as exc:
            raise NotificationDecodeError(f"Bad publishTime: {exc}") from exc
    event_time = event_time or received_at

    package_name = inner.get("packageName")
    base = dict(
        platform=Platform.ANDROID,
        message_id=str(message_id),
        package_name=package_name,
        payload=inner,
    )

    if "testNotification" in inner:
        return NotificationEvent(
            notification_type="TEST_NOTIFICATION",
            event=SubscriptionEvent(SubscriptionEventType.IGNORED, event_time),
            **base,
        )

    voided = inner.get("voidedPurchaseNotification")
    if isinstance(voided, dict):
        token = voided.get("purchaseToken")
        if not isinstance(token, str) or not token:
            raise NotificationDecodeError("Voided purchase has no purchaseToken")
        kind = (
            SubscriptionEventType.REVOKED
            if voided.get("productType") == VOIDED_SUBSCRIPTION
            else SubscriptionEventType.IGNORED
        )
        return NotificationEvent(
            notification_type="VOIDED_PURCHASE",
            event=SubscriptionEvent(kind, event_time),
            purchase_token=token,
            **base,
        )

    notification = inner.get("subscriptionNotification")
    if not isinstance(notification, dict):
        return NotificationEvent(
            notification_type="UNSUPPORTED",
            event=SubscriptionEvent(SubscriptionEventType.IGNORED, event_time),
            **base,
        )

    try:
        code = int(notification.get("notificationType"))
    except (TypeError, ValueError) as exc:
        raise NotificationDecodeError("notificationType is not an integer") from exc

    token = notification.get("purchaseToken")
    if not isinstance(token, str) or not token:
        raise NotificationDecodeError("Subscription notification has no purchaseToken")

    type_name, kind = ANDROID_NOTIFICATION_TYPES.get(
        code, (f"UNKNOWN_{code}", SubscriptionEventType.IGNORED)
    )
    auto_renewing = False if kind == SubscriptionEventType.CANCELED else None
    product_id = notification.get("subscriptionId")

    return NotificationEvent(
        notification_type=type_name,
        event=SubscriptionEvent(
            kind,
            event_time,
            auto_renewing=auto_renewing,
            product_id=product_id,
        ),
        purchase_token=token,
        product_id=product_id,
        **base,
    )


# =============================================================================
# App Store
# =============================================================================

IOS_RENEWAL_TYPES = frozenset({"INITIAL_BUY", "DID_RENEW", "INTERACTIVE_RENEWAL"})
IOS_REVOKE_TYPES = frozenset({"CANCEL", "REFUND", "REVOKE"})


def _ios_kind(notification_type: str, auto_renew: Optional[bool], grace_end) -> SubscriptionEventType:
    if notification_type in IOS_RENEWAL_TYPES:
        return SubscriptionEventType.RENEWAL
    if notification_type == "DID_RECOVER":
        return SubscriptionEventType.RECOVERED
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        if auto_renew is False:
            return SubscriptionEventType.CANCELED
        if auto_renew is True:
            return SubscriptionEventType.RENEWAL
        return SubscriptionEventType.IGNORED
    if notification_type == "DID_FAIL_TO_RENEW":
        if grace_end is not None:
            return SubscriptionEventType.GRACE_PERIOD
        return SubscriptionEventType.BILLING_ISSUE
    if notification_type in IOS_REVOKE_TYPES:
        return SubscriptionEventType.REVOKED
    if notification_type == "EXPIRED":
        return SubscriptionEventType.EXPIRED
    return SubscriptionEventType.IGNORED


@_structural_errors
def decode_ios(body: RawBody, received_at: datetime) -> NotificationEvent:
    """Decode an App Store server notification."""
    payload = _load_json(body)

    notification_type = payload.get("notification_type")
    if not isinstance(notification_type, str) or not notification_type:
        raise NotificationDecodeError("Missing notification_type")
    notification_type = notification_type.upper()

    unified = payload.get("unified_receipt") or {}
    if not isinstance(unified, dict):
        raise NotificationDecodeError("unified_receipt must be an object")

    entries = unified.get("latest_receipt_info") or payload.get("latest_receipt_info") or []
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise NotificationDecodeError("latest_receipt_info must be a list of objects")
    latest = latest_transaction(entries) or {}

    token = latest.get("original_transaction_id") or payload.get("original_transaction_id")
    token = str(token) if token else None

    renewal_infos = unified.get("pending_renewal_info") or []
    if isinstance(renewal_infos, dict):
        renewal_infos = [renewal_infos]
    if not isinstance(renewal_infos, list):
        raise NotificationDecodeError("pending_renewal_info must be a list of objects")

    renewal_info = {}
    for info in renewal_infos:
        if isinstance(info, dict) and (token is None or str(info.get("original_transaction_id")) == token):
            renewal_info = info
            break

    auto_renew = _flag(payload.get("auto_renew_status"))
    if auto_renew is None:
        auto_renew = _flag(renewal_info.get("auto_renew_status"))
    grace_end = _timestamp(renewal_info.get("grace_period_expires_date_ms"), "grace_period_expires_date_ms")

    kind = _ios_kind(notification_type, auto_renew, grace_end)
    if kind != SubscriptionEventType.IGNORED and not token:
        raise NotificationDecodeError(
            f"{notification_type} notification has no original_transaction_id"
        )

    latest_expiry = _timestamp(latest.get("expires_date_ms"), "expires_date_ms")
    expiry = None
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        # The toggle itself is the fact, whichever way it went
        expiry = latest_expiry
        event_time = _timestamp(
            payload.get("auto_renew_status_change_date_ms"), "auto_renew_status_change_date_ms"
        )
    elif kind in (SubscriptionEventType.RENEWAL, SubscriptionEventType.RECOVERED):
        expiry = latest_expiry
        event_time = _timestamp(latest.get("purchase_date_ms"), "purchase_date_ms")
    elif kind in (
        SubscriptionEventType.BILLING_ISSUE,
        SubscriptionEventType.GRACE_PERIOD,
        SubscriptionEventType.EXPIRED,
    ):
        # Renewal is attempted when the period ends; never later than now
        if kind == SubscriptionEventType.GRACE_PERIOD:
            expiry = grace_end
        event_time = min(latest_expiry, received_at) if latest_expiry else None
    elif kind == SubscriptionEventType.REVOKED:
        event_time = _timestamp(
            latest.get("cancellation_date_ms") or payload.get("cancellation_date_ms"),
            "cancellation_date_ms",
        )
    else:
        event_time = None

    product_id = latest.get("product_id") or payload.get("auto_renew_product_id")

    return NotificationEvent(
        platform=Platform.IOS,
        message_id=str(payload.get("notification_uuid") or payload_digest(payload)),
        notification_type=notification_type,
        event=SubscriptionEvent(
            kind,
            event_time or received_at,
            expiry_date=expiry,
            auto_renewing=auto_renew,
            product_id=product_id,
        ),
        purchase_token=token,
        product_id=product_id,
        latest_receipt=unified.get("latest_receipt") or payload.get("latest_receipt"),
        password=payload.get("password"),
        payload=payload,
    )


def decode_notification(platform: Platform, body: RawBody, received_at: datetime) -> NotificationEvent:
    """Decode a webhook body for ``platform``."""
    if platform == Platform.ANDROID:
        return decode_android(body, received_at)
    return decode_ios(body, received_at)
