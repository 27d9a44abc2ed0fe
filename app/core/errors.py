"""
Error Handling
==============

Standardized error codes, the subscription domain errors and the
exception handlers that turn both into the API error envelope.
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_TOKEN_EXPIRED = "AUTH_002"
    AUTH_INVALID_TOKEN = "AUTH_005"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Subscription (SUB_001 - SUB_010)
    SUB_VALIDATION_FAILED = "SUB_001"
    SUB_STORE_UNAVAILABLE = "SUB_002"
    SUB_MALFORMED_NOTIFICATION = "SUB_003"
    SUB_WEBHOOK_UNAUTHORIZED = "SUB_004"
    SUB_CONCURRENT_UPDATE = "SUB_005"

    # Feature (FEATURE_001 - FEATURE_010)
    FEATURE_LIMIT_REACHED = "FEATURE_001"
    FEATURE_UNKNOWN = "FEATURE_002"

    # Rate Limit
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Subscription Domain Errors
# =============================================================================

class SubscriptionError(Exception):
    """Base class for errors raised by the subscription core."""


class PurchaseValidationError(SubscriptionError):
    """
    The store rejected a purchase, or its validity could not be confirmed.

    ``reason`` keeps the two apart: ``rejected`` means the store answered
    and said no, ``unavailable`` means we never got a usable answer.
    Neither changes a stored subscription.
    """

    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"

    def __init__(
        self,
        message: str,
        reason: str = REJECTED,
        platform: Optional[str] = None,
        store_status: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.platform = platform
        self.store_status = store_status

    @property
    def is_unavailable(self) -> bool:
        return self.reason == self.UNAVAILABLE


class RepositoryError(SubscriptionError):
    """Persistence is unavailable; the caller is expected to retry."""


class ConcurrentUpdateError(RepositoryError):
    """Compare-and-swap kept losing to concurrent writers."""

    def __init__(self, user_id: str, attempts: int, resource: str = "Subscription"):
        super().__init__(
            f"{resource} for user {user_id} changed concurrently "
            f"{attempts} times"
        )
        self.user_id = user_id
        self.attempts = attempts


class NotificationDecodeError(SubscriptionError):
    """A store notification payload is malformed and can never be processed."""


class ReconciliationConflict(SubscriptionError):
    """
    An event older than the subscription's watermark.

    Informational: the event is discarded and this is reported as an
    outcome, never propagated to the sender.
    """

    def __init__(self, user_id: str, event_time, watermark):
        super().__init__(
            f"Event at {event_time.isoformat()} superseded by "
            f"{watermark.isoformat()} for user {user_id}"
        )
        self.user_id = user_id
        self.event_time = event_time
        self.watermark = watermark


class FeatureLimitReached(SubscriptionError):
    """The user's tier does not allow another use of a metered feature."""

    def __init__(self, feature: str, tier, limit, used: int):
        super().__init__(f"Limit reached for {feature}: {used}/{limit}")
        self.feature = feature
        self.tier = tier
        self.limit = limit
        self.used = used


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    response = _error_response(exc.status_code, exc.detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    response = _error_response(exc.status_code, error)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def purchase_validation_handler(
    request: Request,
    exc: PurchaseValidationError,
) -> JSONResponse:
    """Verification failures are a clear rejection to the client."""
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        {
            "code": ErrorCodes.SUB_VALIDATION_FAILED,
            "message": exc.message,
            "reason": exc.reason,
            "platform": exc.platform,
        },
    )


async def decode_error_handler(
    request: Request,
    exc: NotificationDecodeError,
) -> JSONResponse:
    """Malformed store payloads get a 4xx so the store stops redelivering."""
    logger.warning("Rejected malformed notification on %s: %s", request.url.path, exc)
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        {
            "code": ErrorCodes.SUB_MALFORMED_NOTIFICATION,
            "message": str(exc),
        },
    )


async def feature_limit_handler(
    request: Request,
    exc: FeatureLimitReached,
) -> JSONResponse:
    """Handler for exhausted usage limits."""
    tier = getattr(exc.tier, "value", exc.tier)
    return _error_response(
        status.HTTP_403_FORBIDDEN,
        {
            "code": ErrorCodes.FEATURE_LIMIT_REACHED,
            "message": f"Monthly limit reached for {exc.feature}",
            "feature": exc.feature,
            "limit": exc.limit,
            "used": exc.used,
            "current_tier": tier,
        },
    )


async def repository_error_handler(
    request: Request,
    exc: RepositoryError,
) -> JSONResponse:
    """Persistence failures surface as retryable 503s."""
    logger.error("Repository failure on %s: %s", request.url.path, exc)
    code = (
        ErrorCodes.SUB_CONCURRENT_UPDATE
        if isinstance(exc, ConcurrentUpdateError)
        else ErrorCodes.SUB_STORE_UNAVAILABLE
    )
    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        {
            "code": code,
            "message": "Subscription store temporarily unavailable",
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        {
            "code": ErrorCodes.VALIDATION_ERROR,
            "message": message,
            "field": field,
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s", request.url.path, exc_info=exc)

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {
            "code": ErrorCodes.INTERNAL_ERROR,
            "message": "An unexpected error occurred",
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(PurchaseValidationError, purchase_validation_handler)
    app.add_exception_handler(NotificationDecodeError, decode_error_handler)
    app.add_exception_handler(FeatureLimitReached, feature_limit_handler)
    app.add_exception_handler(RepositoryError, repository_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
