"""
User Notices
============

The subscription core decides *that* a user should hear about a change
(billing problem, cancellation, expiry, ...). Delivery by email or push
belongs to another service, which reads the notices from a Redis Stream.

Publishing is best effort: a lost notice never blocks a state change.
"""

import logging
from typing import Optional

from app.services.cache import CacheKeys, get_redis
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Trim the stream to roughly this many entries
_STREAM_MAXLEN = 100_000


async def publish_notice(
    user_id: str,
    notice: Optional[str],
    **fields: Optional[str],
) -> bool:
    """
    Append a notice for ``user_id`` to the notice stream.

    Returns False when there was nothing to publish or Redis failed.
    """
    if not notice:
        return False

    entry = {
        "user_id": user_id,
        "notice": notice,
        "created_at": utc_now().isoformat(),
    }
    entry.update({key: str(value) for key, value in fields.items() if value is not None})

    try:
        client = await get_redis()
        await client.xadd(
            CacheKeys.user_notice_stream(),
            entry,
            maxlen=_STREAM_MAXLEN,
            approximate=True,
        )
    except Exception as exc:
        logger.warning("Failed to publish %s notice for user %s: %s", notice, user_id, exc)
        return False

    logger.info("Published %s notice for user %s", notice, user_id)
    return True
