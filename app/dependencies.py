"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.core.security import TokenExpired, decode_token, token_subject
from app.db.session import get_db
from app.services.app_store import IosValidator
from app.services.play_store import AndroidValidator, ServiceAccountTokenProvider
from app.services.store_validation import StoreValidators, get_store_http_client

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

_validators: Optional[StoreValidators] = None


# =============================================================================
# User resolution
# =============================================================================

async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    Get the authenticated user's id from the bearer token.

    Raises 401 if not authenticated or token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user id.
    """
    if settings.auth_disabled:
        return settings.DEV_USER_ID

    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.UNAUTHORIZED,
            message="Not authenticated",
        )

    try:
        payload = decode_token(credentials.credentials)
    except TokenExpired:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_EXPIRED,
            message="Token has expired",
        )

    user_id = token_subject(payload) if payload else None
    if user_id is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid token",
        )

    return user_id


# Type alias for authenticated user dependency
CurrentUserId = Annotated[str, Depends(get_current_user_id)]


# =============================================================================
# Store validators
# =============================================================================

def get_store_validators() -> StoreValidators:
    """Process-wide validators sharing the store HTTP client."""
    global _validators

    if _validators is None:
        client = get_store_http_client()
        _validators = StoreValidators(
            android=AndroidValidator(
                client,
                ServiceAccountTokenProvider(settings.GOOGLE_PLAY_SERVICE_ACCOUNT_FILE),
            ),
            ios=IosValidator(client),
        )

    return _validators


def reset_store_validators() -> None:
    """Drop the cached validators (after the HTTP client is closed)."""
    global _validators
    _validators = None


Validators = Annotated[StoreValidators, Depends(get_store_validators)]
