"""
Security Module
===============

Bearer token validation. Tokens are issued by the identity service; this
service only checks the signature and reads the subject.
"""

from typing import Any, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings


class TokenExpired(Exception):
    """The token was valid once but its ``exp`` has passed."""


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise

    Raises:
        TokenExpired: signature is fine but the token has expired
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError as exc:
        raise TokenExpired(str(exc)) from exc
    except JWTError:
        return None


def token_subject(payload: dict[str, Any]) -> Optional[str]:
    """The user id carried by an access token, if it is one."""
    if payload.get("type", "access") != "access":
        return None
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        return None
    return subject
