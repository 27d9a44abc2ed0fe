"""
Rate Limiting
=============

Redis-based fixed window rate limiting for API endpoints.
"""

import logging
from typing import Optional

from fastapi import Request, status

from app.core.errors import AppException, ErrorCodes
from app.dependencies import CurrentUserId
from app.services.cache import get_redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed window rate limiter using Redis.

    Rate limits are applied per user.

    Default limits:
        - Purchase verification: 10 requests/minute (each one calls a store)
        - Usage recording: 120 requests/minute
        - Read endpoints: 100 requests/minute
    """

    # Limit configurations
    LIMITS = {
        "verify": {"max_requests": 10, "window_seconds": 60},
        "usage": {"max_requests": 120, "window_seconds": 60},
        "read": {"max_requests": 100, "window_seconds": 60},
    }

    @staticmethod
    def _get_key(identifier: str, action: str) -> str:
        """Generate rate limit key."""
        return f"ratelimit:{action}:{identifier}"

    @staticmethod
    async def check_rate_limit(
        identifier: str,
        action: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> dict:
        """
        Count a request and report whether it is within the limit.

        Returns:
            Dict with 'allowed', 'remaining', 'reset_in' keys
        """
        limits = RateLimiter.LIMITS.get(action, RateLimiter.LIMITS["read"])
        max_req = max_requests or limits["max_requests"]
        window = window_seconds or limits["window_seconds"]

        key = RateLimiter._get_key(identifier, action)

        try:
            client = await get_redis()

            count = await client.incr(key)
            if count == 1:
                await client.expire(key, window)
            ttl = await client.ttl(key)
            reset_in = ttl if ttl and ttl > 0 else window

            return {
                "allowed": count <= max_req,
                "remaining": max(max_req - count, 0),
                "reset_in": reset_in,
            }

        except Exception as e:
            # Fail open: Redis trouble must not block purchases
            logger.warning("Rate limit check error for %s: %s", key, e)
            return {
                "allowed": True,
                "remaining": max_req,
                "reset_in": window,
            }


def create_rate_limit_dependency(action: str = "read"):
    """
    Factory for per-user rate limit dependencies.

    Usage:
        @router.post("/endpoint", dependencies=[Depends(create_rate_limit_dependency("verify"))])
        async def endpoint():
            ...
    """
    async def dependency(request: Request, user_id: CurrentUserId) -> None:
        result = await RateLimiter.check_rate_limit(user_id, action)

        if not result["allowed"]:
            logger.info("Rate limit hit: user=%s action=%s path=%s", user_id, action, request.url.path)
            max_requests = RateLimiter.LIMITS.get(action, RateLimiter.LIMITS["read"])["max_requests"]
            exc = AppException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                code=ErrorCodes.RATE_LIMIT_EXCEEDED,
                message=f"Rate limit exceeded. Try again in {result['reset_in']} seconds.",
            )
            exc.headers = {
                "X-RateLimit-Limit": str(max_requests),
                "X-RateLimit-Remaining": str(result["remaining"]),
                "X-RateLimit-Reset": str(result["reset_in"]),
                "Retry-After": str(result["reset_in"]),
            }
            raise exc

    return dependency
