"""
Webhooks API Endpoints
======================

Store server notifications:

- ``POST /webhook/android``: Google Play real-time developer notifications
  (Pub/Sub push)
- ``POST /webhook/ios``: App Store server notifications

Acknowledgement:
    200 only once the notification's outcome (and any state change) is
    committed. Unmatched, ignored and duplicate notifications are also 200.
    Malformed payloads get 400 so the store stops redelivering them.
    Anything unexpected returns 500 so the store retries.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from app.dependencies import DBSession, Validators
from app.models.subscription import Platform
from app.schemas.subscription import WebhookAck
from app.services.webhook_ingestion import WebhookIngestionService, verify_ios_password

logger = logging.getLogger(__name__)

router = APIRouter()


async def _handle_notification(
    platform: Platform,
    request: Request,
    db: DBSession,
    validators: Validators,
) -> WebhookAck:
    service = WebhookIngestionService(db, validators)

    # ── Parse payload (NotificationDecodeError -> 400) ────────────────────
    body = await request.body()
    notification = service.decode(platform, body)

    if platform == Platform.IOS:
        verify_ios_password(notification)

    logger.info(
        "Webhook received: platform=%s type=%s message_id=%s",
        platform.value,
        notification.notification_type,
        notification.message_id,
    )

    # ── Process notification ──────────────────────────────────────────────
    try:
        result = await service.ingest(notification)
    except Exception:
        logger.exception(
            "Webhook processing error: platform=%s type=%s message_id=%s",
            platform.value,
            notification.notification_type,
            notification.message_id,
        )
        await db.rollback()
        # Return 500 so the store will retry
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing webhook",
        )

    return WebhookAck(
        received=True,
        outcome=result.outcome.value,
        duplicate=result.duplicate,
    )


@router.post("/webhook/android", response_model=WebhookAck)
async def android_webhook(
    request: Request,
    db: DBSession,
    validators: Validators,
):
    """
    Handle a Google Play real-time developer notification.

    Body: the Pub/Sub push envelope, ``message.data`` holding the base64
    encoded DeveloperNotification.
    """
    return await _handle_notification(Platform.ANDROID, request, db, validators)


@router.post("/webhook/ios", response_model=WebhookAck)
async def ios_webhook(
    request: Request,
    db: DBSession,
    validators: Validators,
):
    """
    Handle an App Store server notification.

    The ``password`` field must match ``APPLE_SHARED_SECRET`` when one is
    configured.
    """
    return await _handle_notification(Platform.IOS, request, db, validators)
